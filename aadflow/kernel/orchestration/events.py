"""Simple event data classes emitted by the orchestrator.

Observers are plain callables receiving each event. They run inside the
coordinator loop and must not block.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from aadflow.kernel.domain.escalation import EscalationRecord
    from aadflow.kernel.orchestration.models import RunSummary


@dataclass(slots=True)
class Event:
    """Base class for all events - provides timestamp."""

    timestamp: datetime = field(default_factory=datetime.now, init=False)

    def log_message(self) -> str:
        """Get a formatted log message for this event.

        Override in subclasses to provide custom formatting.
        """
        return f"{self.__class__.__name__} at {self.timestamp.isoformat()}"


# Run events
@dataclass(slots=True)
class RunStarted(Event):
    """A run started (fresh or resumed)."""

    run_id: str
    total_items: int
    resumed: bool = False

    def log_message(self) -> str:
        mode = "Resumed" if self.resumed else "Started"
        return f"{mode} run '{self.run_id}' with {self.total_items} work items"


@dataclass(slots=True)
class RunCompleted(Event):
    """The coordinator loop stopped."""

    run_id: str
    summary: RunSummary

    def log_message(self) -> str:
        return f"Run '{self.run_id}' finished: {self.summary.describe()}"


@dataclass(slots=True)
class WaveStarted(Event):
    """A batch of ready items was handed sessions in one scheduling pass."""

    wave_index: int
    item_ids: list[str]

    def log_message(self) -> str:
        return f"Wave {self.wave_index} started: {', '.join(self.item_ids)}"


# Session and work item events
@dataclass(slots=True)
class SessionStarted(Event):
    """A session started for a work item."""

    work_item_id: str
    session_id: str
    attempt: int
    mode: str

    def log_message(self) -> str:
        return (
            f"Session '{self.session_id}' started for '{self.work_item_id}' "
            f"(attempt {self.attempt}, {self.mode})"
        )


@dataclass(slots=True)
class WorkItemCompleted(Event):
    """A work item completed its final phase."""

    work_item_id: str

    def log_message(self) -> str:
        return f"Work item '{self.work_item_id}' completed"


@dataclass(slots=True)
class WorkItemFailed(Event):
    """A work item failed permanently."""

    work_item_id: str
    reason: str | None = None

    def log_message(self) -> str:
        return f"Work item '{self.work_item_id}' failed: {self.reason or 'unknown'}"


@dataclass(slots=True)
class WorkItemSkipped(Event):
    """A work item will never run."""

    work_item_id: str
    reason: str | None = None

    def log_message(self) -> str:
        return f"Work item '{self.work_item_id}' skipped: {self.reason or 'unknown'}"


@dataclass(slots=True)
class WorkItemBlocked(Event):
    """A work item is waiting for an escalation decision."""

    work_item_id: str
    record: EscalationRecord

    def log_message(self) -> str:
        return (
            f"{self.record.level.log_prefix} Work item '{self.work_item_id}' blocked on "
            f"'{self.record.block_id}' ({self.record.kind}): {self.record.reason}"
        )


@dataclass(slots=True)
class EscalationResolved(Event):
    """An escalation was decided."""

    record: EscalationRecord

    def log_message(self) -> str:
        return f"Escalation '{self.record.block_id}' {self.record.status}"


@dataclass(slots=True)
class ProgressUpdate(Event):
    """Progress after a state transition."""

    completed: int
    total: int
    running: int
    blocked: int

    @property
    def progress_percent(self) -> float:
        return 100.0 * self.completed / self.total if self.total else 100.0

    def log_message(self) -> str:
        return (
            f"Progress {self.completed}/{self.total} ({self.progress_percent:.0f}%), "
            f"{self.running} running, {self.blocked} blocked"
        )


__all__ = [
    "EscalationResolved",
    "Event",
    "ProgressUpdate",
    "RunCompleted",
    "RunStarted",
    "SessionStarted",
    "WaveStarted",
    "WorkItemBlocked",
    "WorkItemCompleted",
    "WorkItemFailed",
    "WorkItemSkipped",
]
