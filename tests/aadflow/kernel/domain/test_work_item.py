"""Tests for work items, statuses and phases."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from aadflow.kernel.domain.session import make_session_id
from aadflow.kernel.domain.work_item import (
    Phase,
    WorkDeclaration,
    WorkItem,
    WorkItemStatus,
    can_transition,
    next_phase,
)
from aadflow.kernel.exceptions import InvalidTransitionError, ValidationError


class TestStatusTransitions:
    """Tests for the work item lifecycle."""

    def test_happy_path(self) -> None:
        """pending -> ready -> running -> completed is allowed."""
        item = WorkItem(id="A")

        assert item.transition(WorkItemStatus.READY) == WorkItemStatus.PENDING
        assert item.transition(WorkItemStatus.RUNNING) == WorkItemStatus.READY
        assert item.transition(WorkItemStatus.COMPLETED) == WorkItemStatus.RUNNING
        assert item.is_terminal

    def test_blocked_can_resume(self) -> None:
        """A blocked item goes back to ready once decided."""
        item = WorkItem(id="A", status=WorkItemStatus.RUNNING)

        item.transition(WorkItemStatus.BLOCKED)
        item.transition(WorkItemStatus.READY)

        assert item.status == WorkItemStatus.READY

    def test_pending_cannot_run(self) -> None:
        """An item must be ready before it runs."""
        item = WorkItem(id="A")

        with pytest.raises(InvalidTransitionError) as exc_info:
            item.transition(WorkItemStatus.RUNNING)

        assert exc_info.value.from_status == "pending"
        assert exc_info.value.to_status == "running"
        assert item.status == WorkItemStatus.PENDING

    @pytest.mark.parametrize(
        "terminal", [WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.SKIPPED]
    )
    def test_terminal_statuses_are_final(self, terminal: WorkItemStatus) -> None:
        """Nothing leaves a terminal status."""
        item = WorkItem(id="A", status=terminal)

        for target in WorkItemStatus:
            with pytest.raises(InvalidTransitionError):
                item.transition(target)

    def test_superseded_requires_replacement(self) -> None:
        """Only a skipped item with replacements counts as superseded."""
        skipped = WorkItem(id="A", status=WorkItemStatus.SKIPPED)
        split = WorkItem(id="B", status=WorkItemStatus.SKIPPED, replaced_by=["B1", "B2"])

        assert not skipped.superseded
        assert split.superseded

    def test_dependencies_serialize_sorted(self) -> None:
        """Dependencies are dumped in a stable order."""
        item = WorkItem(id="A", dependencies={"C", "B"})

        assert item.model_dump()["dependencies"] == ["B", "C"]


class TestPhases:
    """Tests for the multi-phase workflow."""

    def test_order(self) -> None:
        """Phases run spec through merge."""
        assert [p.value for p in Phase] == ["spec", "tasks", "tdd", "review", "retro", "merge"]
        assert next_phase(Phase.SPEC) == Phase.TASKS
        assert next_phase(Phase.MERGE) is None

    def test_can_transition(self) -> None:
        """Only the next phase, or staying put, is allowed."""
        assert can_transition(Phase.TDD, Phase.REVIEW)
        assert can_transition(Phase.TDD, Phase.TDD)
        assert not can_transition(Phase.TDD, Phase.MERGE)
        assert not can_transition(Phase.REVIEW, Phase.TDD)

    def test_advance_phase_resets_retry_budget(self) -> None:
        """Advancing starts the next phase fresh."""
        item = WorkItem(
            id="A", phase=Phase.TDD, final_phase=Phase.REVIEW, retry_count=2, last_error="x"
        )

        assert item.advance_phase() == Phase.REVIEW
        assert item.retry_count == 0
        assert item.last_error is None
        assert item.in_final_phase

    def test_cannot_advance_past_final_phase(self) -> None:
        """The final phase has no successor for the item."""
        item = WorkItem(id="A")

        with pytest.raises(ValidationError):
            item.advance_phase()


class TestWorkDeclaration:
    """Tests for declaration parsing."""

    def test_parse_plain_id(self) -> None:
        """An id without colon has no dependencies."""
        declaration = WorkDeclaration.parse("A")

        assert declaration.id == "A"
        assert declaration.dependencies == []

    def test_parse_dependencies(self) -> None:
        """ID:DEP1,DEP2 lists dependencies."""
        declaration = WorkDeclaration.parse("C:A, B")

        assert declaration.id == "C"
        assert declaration.dependencies == ["A", "B"]

    def test_rejects_empty_id(self) -> None:
        """An empty id is invalid."""
        with pytest.raises(PydanticValidationError):
            WorkDeclaration.parse(":A")

    def test_rejects_unknown_fields(self) -> None:
        """Raw documents with extra keys are refused."""
        with pytest.raises(PydanticValidationError):
            WorkDeclaration.model_validate({"id": "A", "priority": 3})

    def test_to_work_item_defaults(self) -> None:
        """Items default to the single TDD phase."""
        item = WorkDeclaration.parse("B:A").to_work_item(seq=4)

        assert item.phase == Phase.TDD
        assert item.final_phase == Phase.TDD
        assert item.dependencies == {"A"}
        assert item.seq == 4
        assert item.status == WorkItemStatus.PENDING

    def test_late_start_phase_extends_final_phase(self) -> None:
        """Starting after TDD ends in the starting phase by default."""
        item = WorkDeclaration(id="A", phase=Phase.REVIEW).to_work_item(seq=0)

        assert item.final_phase == Phase.REVIEW

    def test_final_before_start_is_invalid(self) -> None:
        """A declaration cannot end before it starts."""
        declaration = WorkDeclaration(id="A", phase=Phase.REVIEW, final_phase=Phase.SPEC)

        with pytest.raises(ValidationError):
            declaration.to_work_item(seq=0)


class TestSessionIds:
    """Tests for deterministic session ids."""

    def test_format(self) -> None:
        """Session ids encode item, phase, attempt and generation."""
        assert make_session_id("A", Phase.REVIEW, 2, 5) == "A.review.2.5"
