"""Data models for orchestration: the coordinator state, checkpoints and run summaries."""

from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from aadflow.kernel.domain.dag import DependencyGraph
from aadflow.kernel.domain.escalation import EscalationLevel, EscalationRecord
from aadflow.kernel.domain.session import Session
from aadflow.kernel.domain.work_item import WorkItem, WorkItemStatus

CHECKPOINT_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(UTC)


class OrchestratorState(BaseModel):
    """The single mutable state object owned by the coordinator loop.

    The dependency graph is derived from the items' ``dependencies`` and is
    rebuilt on load, so the items are the only source of truth for edges.

    Attributes
    ----------
    run_id : str
        Identifier of the run, tagged on every log record
    items : dict[str, WorkItem]
        Every work item ever registered, keyed by id (never deleted)
    sessions : dict[str, Session]
        Active sessions keyed by session id
    escalations : dict[str, EscalationRecord]
        Every escalation raised in this run, keyed by block id
    next_seq : int
        Registration counter for FIFO ordering
    session_generations : dict[str, int]
        Sessions started per item, for unique session ids
    escalation_counts : dict[str, int]
        Escalations raised per item, for deterministic block ids
    wave_index : int
        Scheduling passes that started at least one session
    """

    run_id: str
    items: dict[str, WorkItem] = Field(default_factory=dict)
    sessions: dict[str, Session] = Field(default_factory=dict)
    escalations: dict[str, EscalationRecord] = Field(default_factory=dict)
    next_seq: int = 0
    session_generations: dict[str, int] = Field(default_factory=dict)
    escalation_counts: dict[str, int] = Field(default_factory=dict)
    wave_index: int = 0
    started_at: datetime = Field(default_factory=utcnow)

    def build_graph(self) -> DependencyGraph:
        """Rebuild the dependency graph from the items."""
        return DependencyGraph.from_declarations(
            {item_id: item.dependencies for item_id, item in self.items.items()}
        )

    def items_with_status(self, *statuses: WorkItemStatus) -> list[WorkItem]:
        return sorted(
            (item for item in self.items.values() if item.status in statuses),
            key=lambda item: item.seq,
        )

    def count(self, status: WorkItemStatus) -> int:
        return sum(1 for item in self.items.values() if item.status == status)

    def pending_escalations(self) -> list[EscalationRecord]:
        return sorted(
            (record for record in self.escalations.values() if record.is_pending),
            key=lambda record: record.raised_at,
        )

    @property
    def critical_pending(self) -> bool:
        return any(r.level == EscalationLevel.CRITICAL for r in self.pending_escalations())

    @property
    def progress_percent(self) -> float:
        total = len(self.items)
        if not total:
            return 100.0
        done = sum(
            1
            for item in self.items.values()
            if item.status == WorkItemStatus.COMPLETED or item.superseded
        )
        return round(100.0 * done / total, 1)


class Checkpoint(BaseModel):
    """Immutable, timestamped, versioned snapshot of orchestrator state."""

    model_config = ConfigDict(frozen=True)

    version: int = CHECKPOINT_VERSION
    created_at: datetime = Field(default_factory=utcnow)
    progress_percent: float = 0.0
    state: OrchestratorState

    @classmethod
    def of(cls, state: OrchestratorState) -> Checkpoint:
        return cls(
            state=state.model_copy(deep=True),
            progress_percent=state.progress_percent,
        )


class RunSummary(BaseModel):
    """Final (or current) outcome of a run, for reporting and exit codes.

    Attributes
    ----------
    statuses : dict[str, WorkItemStatus]
        Final status of every item, in registration order
    counts : dict[str, int]
        Number of items per status
    superseded : list[str]
        Skipped items replaced by a split, which count as done
    errors : dict[str, str]
        Last error of each failed item
    unresolved : list[EscalationRecord]
        Escalations still pending
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    statuses: dict[str, WorkItemStatus]
    counts: dict[str, int]
    superseded: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    unresolved: list[EscalationRecord] = Field(default_factory=list)
    progress_percent: float = 0.0

    @classmethod
    def from_state(cls, state: OrchestratorState) -> RunSummary:
        ordered = sorted(state.items.values(), key=lambda item: item.seq)
        counts = Counter(item.status.value for item in ordered)
        return cls(
            run_id=state.run_id,
            statuses={item.id: item.status for item in ordered},
            counts={status.value: counts.get(status.value, 0) for status in WorkItemStatus},
            superseded=[item.id for item in ordered if item.superseded],
            errors={
                item.id: item.last_error
                for item in ordered
                if item.status == WorkItemStatus.FAILED and item.last_error
            },
            unresolved=[r.model_copy(deep=True) for r in state.pending_escalations()],
            progress_percent=state.progress_percent,
        )

    @property
    def succeeded(self) -> bool:
        """Every item completed (or was superseded) and nothing awaits a decision."""
        superseded = set(self.superseded)
        return not self.unresolved and all(
            status == WorkItemStatus.COMPLETED or item_id in superseded
            for item_id, status in self.statuses.items()
        )

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def describe(self) -> str:
        parts = [f"{count} {status}" for status, count in self.counts.items() if count]
        if self.unresolved:
            parts.append(f"{len(self.unresolved)} unresolved escalation(s)")
        return ", ".join(parts) or "no work items"
