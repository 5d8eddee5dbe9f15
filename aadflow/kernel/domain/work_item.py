"""Work items, their lifecycle statuses and the workflow phases they run through.

Example::

    item = WorkItem(id="B", dependencies={"A"}, seq=1)
    item.transition(WorkItemStatus.READY)
    item.transition(WorkItemStatus.RUNNING)
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from aadflow.kernel.exceptions import InvalidTransitionError, ValidationError


class WorkItemStatus(StrEnum):
    """Lifecycle status of a work item."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.SKIPPED}
)

# Allowed status moves; anything else raises InvalidTransitionError
TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.PENDING: frozenset({WorkItemStatus.READY, WorkItemStatus.SKIPPED}),
    WorkItemStatus.READY: frozenset(
        {WorkItemStatus.RUNNING, WorkItemStatus.PENDING, WorkItemStatus.SKIPPED}
    ),
    WorkItemStatus.RUNNING: frozenset(
        {
            WorkItemStatus.COMPLETED,
            WorkItemStatus.FAILED,
            WorkItemStatus.BLOCKED,
            WorkItemStatus.READY,  # retry, next phase, or reset on resume
        }
    ),
    WorkItemStatus.BLOCKED: frozenset(
        {WorkItemStatus.READY, WorkItemStatus.FAILED, WorkItemStatus.SKIPPED}
    ),
    WorkItemStatus.COMPLETED: frozenset(),
    WorkItemStatus.FAILED: frozenset(),
    WorkItemStatus.SKIPPED: frozenset(),
}


class Phase(StrEnum):
    """Workflow phases, in execution order."""

    SPEC = "spec"
    TASKS = "tasks"
    TDD = "tdd"
    REVIEW = "review"
    RETRO = "retro"
    MERGE = "merge"

    def next(self) -> Phase | None:
        """Following phase, or None after MERGE.

        >>> Phase.TDD.next()
        <Phase.REVIEW: 'review'>
        """
        order = list(Phase)
        index = order.index(self)
        return order[index + 1] if index + 1 < len(order) else None

    @property
    def order(self) -> int:
        return list(Phase).index(self)


def can_transition(from_phase: Phase, to_phase: Phase) -> bool:
    """Whether a workflow may move from ``from_phase`` to ``to_phase``.

    Only the immediate next phase is allowed; staying in place is a no-op.
    """
    return from_phase == to_phase or from_phase.next() == to_phase


def next_phase(current: Phase) -> Phase | None:
    return current.next()


class WorkItem(BaseModel):
    """A schedulable unit of work (a Spec or a Task).

    Owned exclusively by the orchestrator. Status changes go through
    :meth:`transition`, which enforces :data:`TRANSITIONS`.

    Attributes
    ----------
    id : str
        Unique item id
    dependencies : set[str]
        Ids of items that must complete before this one may run
    status : WorkItemStatus
        Current lifecycle status
    retry_count : int
        Failed attempts in the current phase
    seq : int
        Registration order, used as the FIFO tie-break
    phase, final_phase : Phase
        The item runs every phase from ``phase`` through ``final_phase``
    constraints : list[str]
        Constraints granted by permission approvals, passed to every later run
    replaced_by : list[str]
        Replacement items when a split proposal superseded this item
    skip_reason : str | None
        Why the item was skipped
    last_error : str | None
        Detail of the most recent failed attempt
    not_before : datetime | None
        Earliest time the next attempt may start (retry backoff)
    resume_from : str | None
        Block id of the decided escalation the next session resumes from
    """

    model_config = ConfigDict(use_enum_values=False)

    id: str
    dependencies: set[str] = Field(default_factory=set)
    status: WorkItemStatus = WorkItemStatus.PENDING
    retry_count: int = 0
    seq: int = 0
    phase: Phase = Phase.TDD
    final_phase: Phase = Phase.TDD
    constraints: list[str] = Field(default_factory=list)
    replaced_by: list[str] = Field(default_factory=list)
    skip_reason: str | None = None
    last_error: str | None = None
    not_before: datetime | None = None
    resume_from: str | None = None

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("work item id cannot be empty")
        return value

    @field_serializer("dependencies")
    def _sorted_dependencies(self, value: set[str]) -> list[str]:
        return sorted(value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def superseded(self) -> bool:
        """Skipped because a split replaced it; counts as done."""
        return self.status == WorkItemStatus.SKIPPED and bool(self.replaced_by)

    @property
    def in_final_phase(self) -> bool:
        return self.phase == self.final_phase

    def transition(self, to_status: WorkItemStatus) -> WorkItemStatus:
        """Move to ``to_status`` and return the previous status.

        Raises
        ------
        InvalidTransitionError
            If the lifecycle does not allow the move
        """
        previous = self.status
        if to_status not in TRANSITIONS[previous]:
            raise InvalidTransitionError(self.id, previous.value, to_status.value)
        self.status = to_status
        return previous

    def advance_phase(self) -> Phase:
        """Move to the next phase with a fresh retry budget."""
        following = self.phase.next()
        if following is None or self.in_final_phase:
            raise ValidationError("phase", f"'{self.id}' has no phase after", self.phase.value)
        self.phase = following
        self.retry_count = 0
        self.not_before = None
        self.last_error = None
        return following


class WorkDeclaration(BaseModel):
    """Declared work as accepted from the CLI or a plan file.

    Examples
    --------
    >>> WorkDeclaration.parse("B:A,C").dependencies
    ['A', 'C']
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    dependencies: list[str] = Field(default_factory=list)
    phase: Phase | None = None
    final_phase: Phase | None = None

    @field_validator("id")
    @classmethod
    def _valid_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("work item id cannot be empty")
        if ":" in value or "," in value:
            raise ValueError(f"work item id cannot contain ':' or ',': {value!r}")
        return value

    @field_validator("dependencies")
    @classmethod
    def _clean_dependencies(cls, value: list[str]) -> list[str]:
        return [dep.strip() for dep in value if dep.strip()]

    @classmethod
    def parse(cls, spec: str) -> Self:
        """Parse the ``ID`` or ``ID:DEP1,DEP2`` command line form."""
        item_id, _, deps = spec.partition(":")
        return cls(id=item_id, dependencies=deps.split(",") if deps else [])

    def to_work_item(self, seq: int) -> WorkItem:
        phase = self.phase or Phase.TDD
        final_phase = self.final_phase or max(phase, Phase.TDD, key=lambda p: p.order)
        if final_phase.order < phase.order:
            raise ValidationError(
                "final_phase", f"'{self.id}' ends before it starts", final_phase.value
            )
        return WorkItem(
            id=self.id,
            dependencies=set(self.dependencies),
            seq=seq,
            phase=phase,
            final_phase=final_phase,
        )
