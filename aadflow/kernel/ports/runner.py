"""Port interface for worker runners.

A runner executes one session of one work item and reports the outcome. The
orchestrator never inspects how the work is done; it only consumes the
:class:`RunnerReport`. Resuming after an escalation is a new ``arun`` call in
``resume`` mode, seeded with the partial state and the decision.
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, model_validator

from aadflow.kernel.domain.escalation import EscalationLevel, EscalationPayload
from aadflow.kernel.domain.session import Session, SessionMode
from aadflow.kernel.domain.work_item import Phase


class ReportStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATE = "escalate"


class RunRequest(BaseModel):
    """Everything a runner needs to execute one session.

    Attributes
    ----------
    work_item_id : str
        Item being worked on
    session_id : str
        Id of the session bound to this run
    attempt : int
        1-based attempt number within the current phase
    mode : SessionMode
        ``fresh`` for a new start, ``resume`` after an escalation decision
    phase : Phase
        Workflow phase to execute
    constraints : list[str]
        Constraints granted by permission approvals
    partial_state : dict[str, Any] | None
        State saved when the item escalated (resume only)
    resolution_payload : dict[str, Any] | None
        The external decision (resume only)
    deadline : datetime
        Hard deadline of the session
    """

    model_config = ConfigDict(frozen=True)

    work_item_id: str
    session_id: str
    attempt: int = 1
    mode: SessionMode = SessionMode.FRESH
    phase: Phase = Phase.TDD
    constraints: list[str] = Field(default_factory=list)
    partial_state: dict[str, Any] | None = None
    resolution_payload: dict[str, Any] | None = None
    deadline: datetime


class EscalationRequest(BaseModel):
    """Escalation raised by a session, decoded into its typed payload.

    Runners may send the kind next to the payload::

        {"kind": "question", "payload": {"question": "Which DB?"}}
    """

    model_config = ConfigDict(frozen=True)

    payload: EscalationPayload
    level: EscalationLevel = EscalationLevel.WARNING

    @model_validator(mode="before")
    @classmethod
    def _lift_kind(cls, data: Any) -> Any:
        if isinstance(data, dict) and "kind" in data and isinstance(data.get("payload"), dict):
            data = dict(data)
            data["payload"] = {**data["payload"], "kind": data.pop("kind")}
        return data


class RunnerReport(BaseModel):
    """Outcome of one session.

    Attributes
    ----------
    status : ReportStatus
        ``completed``, ``failed`` or ``escalate``
    reason : str | None
        Machine readable failure reason (``timeout``, ``cancelled``, ``crash``)
    detail : str | None
        Free-form detail for logs and the run summary
    partial_state : dict[str, Any] | None
        Work saved so far, kept with an escalation for resume
    escalation : EscalationRequest | None
        Present exactly when ``status`` is ``escalate``
    """

    model_config = ConfigDict(frozen=True)

    status: ReportStatus
    reason: str | None = None
    detail: str | None = None
    partial_state: dict[str, Any] | None = None
    escalation: EscalationRequest | None = None

    @model_validator(mode="after")
    def _escalation_matches_status(self) -> RunnerReport:
        if (self.status == ReportStatus.ESCALATE) != (self.escalation is not None):
            raise ValueError("an escalation is required exactly when status is 'escalate'")
        return self

    @classmethod
    def completed(cls, detail: str | None = None) -> RunnerReport:
        return cls(status=ReportStatus.COMPLETED, detail=detail)

    @classmethod
    def failed(cls, reason: str, detail: str | None = None) -> RunnerReport:
        return cls(status=ReportStatus.FAILED, reason=reason, detail=detail)


@runtime_checkable
class Runner(Protocol):
    """Port interface for executing work item sessions.

    Implementations:

    - **SubprocessRunner**: runs an external worker command per session
    - **ScriptedRunner**: replays scripted outcomes in memory

    Optional Methods
    ----------------
    Adapters may optionally implement:
    - arecover(session): last known report of a session that was running when
      the orchestrator stopped
    """

    @abstractmethod
    async def arun(self, request: RunRequest) -> RunnerReport:
        """Execute one session and return its report.

        Runners should return a ``failed`` report rather than raise for
        ordinary work failures. Exceptions are treated as crashes.
        Cancellation of the surrounding task must be honoured promptly.

        Parameters
        ----------
        request : RunRequest
            Session parameters

        Returns
        -------
        RunnerReport
            The session outcome
        """
        ...

    async def arecover(self, session: Session) -> RunnerReport | None:
        """Return the final report of an interrupted session, if one survived.

        Returns None when nothing is known; the item is then restarted.
        """
        return None


__all__ = ["EscalationRequest", "ReportStatus", "RunRequest", "Runner", "RunnerReport"]
