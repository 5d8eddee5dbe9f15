"""Sessions: one active run of a work item."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from aadflow.kernel.domain.work_item import Phase


class SessionMode(StrEnum):
    """How the runner should start the work."""

    FRESH = "fresh"
    RESUME = "resume"


class Session(BaseModel):
    """Execution context bound to one active run of a work item.

    A resumed run is a new session seeded with the previous session's partial
    state and the escalation decision; the old execution context is gone.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    work_item_id: str
    started_at: datetime
    deadline: datetime
    attempt: int = 1
    mode: SessionMode = SessionMode.FRESH
    phase: Phase = Phase.TDD

    def expired(self, now: datetime) -> bool:
        return now >= self.deadline


def make_session_id(work_item_id: str, phase: Phase, attempt: int, generation: int) -> str:
    """Deterministic session id.

    ``generation`` counts every session ever started for the item, so retries,
    resumes and later phases never reuse an id.

    >>> make_session_id("A", Phase.TDD, 1, 0)
    'A.tdd.1.0'
    """
    return f"{work_item_id}.{phase.value}.{attempt}.{generation}"
