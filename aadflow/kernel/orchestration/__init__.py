"""Orchestration: the coordinator loop, its components, events and state models."""

from aadflow.kernel.orchestration.models import (
    CHECKPOINT_VERSION,
    Checkpoint,
    OrchestratorState,
    RunSummary,
)
from aadflow.kernel.orchestration.orchestrator import Observer, Orchestrator

__all__ = [
    "CHECKPOINT_VERSION",
    "Checkpoint",
    "Observer",
    "Orchestrator",
    "OrchestratorState",
    "RunSummary",
]
