"""Escalation records and their typed payloads.

An escalation is a blocking condition raised by a session that needs an
external decision before its work item can proceed. Payloads form a tagged
union keyed on ``kind`` and are decoded once, when a runner report enters the
system.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from aadflow.kernel.domain.work_item import Phase
from aadflow.kernel.exceptions import ValidationError


class EscalationKind(StrEnum):
    QUESTION = "question"
    PERMISSION_REQUEST = "permission_request"
    SPLIT_PROPOSAL = "split_proposal"


class EscalationLevel(StrEnum):
    """Severity of an escalation. A pending critical one pauses new sessions."""

    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def log_prefix(self) -> str:
        """Prefix used in log lines.

        >>> EscalationLevel.CRITICAL.log_prefix
        '[ESCALATION:CRITICAL]'
        """
        return f"[ESCALATION:{self.name}]"

    @property
    def emoji(self) -> str:
        return {"warning": "🟡", "error": "🔴", "critical": "⛔"}[self.value]


class EscalationStatus(StrEnum):
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"


# ============================================================================
# Payload variants
# ============================================================================


class QuestionPayload(BaseModel):
    """The worker needs an answer before it can continue."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["question"] = "question"
    question: str
    options: list[str] = Field(default_factory=list)


class PermissionRequestPayload(BaseModel):
    """The worker wants to perform an action that needs approval."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["permission_request"] = "permission_request"
    action: str
    reason: str = ""


class SplitItem(BaseModel):
    """One replacement work item in a split proposal."""

    model_config = ConfigDict(frozen=True)

    id: str
    dependencies: list[str] = Field(default_factory=list)


class SplitProposalPayload(BaseModel):
    """The worker proposes replacing its item with smaller ones."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["split_proposal"] = "split_proposal"
    items: list[SplitItem] = Field(min_length=1)
    reason: str = ""


EscalationPayload = Annotated[
    QuestionPayload | PermissionRequestPayload | SplitProposalPayload,
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[EscalationPayload] = TypeAdapter(EscalationPayload)


def decode_payload(kind: str, raw: dict[str, Any]) -> EscalationPayload:
    """Decode a raw payload dictionary into its typed variant.

    Raises
    ------
    ValidationError
        If the kind is unknown or the payload does not match its shape
    """
    try:
        return _payload_adapter.validate_python({**raw, "kind": kind})
    except PydanticValidationError as e:
        raise ValidationError("escalation.payload", str(e), kind) from e


# ============================================================================
# Records
# ============================================================================


class EscalationRecord(BaseModel):
    """A raised escalation and, once decided, its resolution.

    Status moves ``pending -> resolved | rejected`` exactly once.
    """

    block_id: str
    work_item_id: str
    session_id: str
    kind: EscalationKind
    payload: EscalationPayload
    level: EscalationLevel = EscalationLevel.WARNING
    phase: Phase = Phase.TDD
    status: EscalationStatus = EscalationStatus.PENDING
    partial_state: dict[str, Any] | None = None
    resolution_payload: dict[str, Any] | None = None
    raised_at: datetime
    resolved_at: datetime | None = None
    timeout_notified: bool = False

    @model_validator(mode="after")
    def _kind_matches_payload(self) -> EscalationRecord:
        if self.payload.kind != self.kind.value:
            raise ValueError(f"payload kind {self.payload.kind!r} does not match {self.kind!r}")
        return self

    @property
    def is_pending(self) -> bool:
        return self.status == EscalationStatus.PENDING

    @property
    def reason(self) -> str:
        """One line human description."""
        match self.payload:
            case QuestionPayload(question=question):
                return question
            case PermissionRequestPayload(action=action, reason=reason):
                return f"{action}: {reason}" if reason else action
            case SplitProposalPayload(items=items):
                return f"split into {', '.join(item.id for item in items)}"
        return self.kind.value


class Resolution(BaseModel):
    """An external decision for a pending escalation."""

    model_config = ConfigDict(frozen=True)

    block_id: str
    resolution_payload: dict[str, Any] = Field(default_factory=dict)
    approved: bool = True


def make_block_id(work_item_id: str, sequence: int) -> str:
    """Deterministic escalation id: the item's ``sequence``-th escalation.

    >>> make_block_id("A", 1)
    'A-esc-001'
    """
    return f"{work_item_id}-esc-{sequence:03d}"
