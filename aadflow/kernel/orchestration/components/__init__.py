"""Orchestrator components: scheduling, sessions, escalations and checkpoints."""

from aadflow.kernel.orchestration.components.checkpoint_store import CheckpointStore
from aadflow.kernel.orchestration.components.escalation_manager import (
    EscalationManager,
    SplitPlan,
)
from aadflow.kernel.orchestration.components.session_registry import (
    SessionRegistry,
    SessionReport,
)
from aadflow.kernel.orchestration.components.wave_scheduler import WaveScheduler

__all__ = [
    "CheckpointStore",
    "EscalationManager",
    "SessionRegistry",
    "SessionReport",
    "SplitPlan",
    "WaveScheduler",
]
