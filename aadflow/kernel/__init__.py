"""aadflow kernel: the public API of the engine.

Adapters and the CLI import from here rather than from kernel submodules.
"""

from aadflow.kernel.config import (
    AadflowConfig,
    LoggingConfig,
    OrchestratorConfig,
    RunnerConfig,
    load_config,
)
from aadflow.kernel.domain import (
    DependencyGraph,
    EscalationKind,
    EscalationLevel,
    EscalationRecord,
    EscalationStatus,
    Phase,
    Resolution,
    Session,
    SessionMode,
    WorkDeclaration,
    WorkItem,
    WorkItemStatus,
)
from aadflow.kernel.exceptions import (
    AadflowError,
    CheckpointCorruptionError,
    ConfigurationError,
    CycleError,
    EscalationStateError,
    EscalationTimeout,
    InvalidTransitionError,
    OrchestratorError,
    RunnerError,
    ValidationError,
)
from aadflow.kernel.logging import configure_logging, get_logger
from aadflow.kernel.orchestration import (
    Checkpoint,
    Orchestrator,
    OrchestratorState,
    RunSummary,
)
from aadflow.kernel.orchestration.components import CheckpointStore
from aadflow.kernel.ports import EscalationSink, ReportStatus, Runner, RunnerReport, RunRequest

__all__ = [
    "AadflowConfig",
    "AadflowError",
    "Checkpoint",
    "CheckpointCorruptionError",
    "CheckpointStore",
    "ConfigurationError",
    "CycleError",
    "DependencyGraph",
    "EscalationKind",
    "EscalationLevel",
    "EscalationRecord",
    "EscalationSink",
    "EscalationStateError",
    "EscalationStatus",
    "EscalationTimeout",
    "InvalidTransitionError",
    "LoggingConfig",
    "Orchestrator",
    "OrchestratorConfig",
    "OrchestratorError",
    "OrchestratorState",
    "Phase",
    "ReportStatus",
    "Resolution",
    "RunRequest",
    "RunSummary",
    "Runner",
    "RunnerConfig",
    "RunnerError",
    "RunnerReport",
    "Session",
    "SessionMode",
    "ValidationError",
    "WorkDeclaration",
    "WorkItem",
    "WorkItemStatus",
    "configure_logging",
    "get_logger",
    "load_config",
]
