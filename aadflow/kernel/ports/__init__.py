"""Port protocols consumed by the orchestrator."""

from aadflow.kernel.ports.escalation_sink import EscalationSink
from aadflow.kernel.ports.runner import (
    EscalationRequest,
    ReportStatus,
    Runner,
    RunnerReport,
    RunRequest,
)

__all__ = [
    "EscalationRequest",
    "EscalationSink",
    "ReportStatus",
    "RunRequest",
    "Runner",
    "RunnerReport",
]
