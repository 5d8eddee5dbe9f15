"""Domain types: dependency graph, work items, sessions and escalations."""

from aadflow.kernel.domain.dag import DependencyGraph
from aadflow.kernel.domain.escalation import (
    EscalationKind,
    EscalationLevel,
    EscalationPayload,
    EscalationRecord,
    EscalationStatus,
    PermissionRequestPayload,
    QuestionPayload,
    Resolution,
    SplitItem,
    SplitProposalPayload,
)
from aadflow.kernel.domain.session import Session, SessionMode
from aadflow.kernel.domain.work_item import (
    Phase,
    WorkDeclaration,
    WorkItem,
    WorkItemStatus,
    can_transition,
    next_phase,
)

__all__ = [
    "DependencyGraph",
    "EscalationKind",
    "EscalationLevel",
    "EscalationPayload",
    "EscalationRecord",
    "EscalationStatus",
    "PermissionRequestPayload",
    "Phase",
    "QuestionPayload",
    "Resolution",
    "Session",
    "SessionMode",
    "SplitItem",
    "SplitProposalPayload",
    "WorkDeclaration",
    "WorkItem",
    "WorkItemStatus",
    "can_transition",
    "next_phase",
]
