"""aadflow: orchestration and escalation engine for AI-assisted development sessions.

Work items form a dependency graph; the orchestrator runs each one as a session
through a pluggable runner, retries failures, pauses on escalations and
checkpoints every transition so a run can resume after a crash.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("aadflow")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for development checkouts

from aadflow.kernel import (
    Orchestrator,
    OrchestratorConfig,
    RunnerReport,
    RunSummary,
    WorkDeclaration,
)

__all__ = [
    "Orchestrator",
    "OrchestratorConfig",
    "RunSummary",
    "RunnerReport",
    "WorkDeclaration",
    "__version__",
]
