"""Escalation manager: raises, decides and times out escalations.

Each record follows ``pending -> resolved | rejected`` and is decided exactly
once. The manager validates decisions and computes their consequences; the
orchestrator applies them to work item statuses.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from aadflow.kernel.domain.dag import DependencyGraph
from aadflow.kernel.domain.escalation import (
    EscalationKind,
    EscalationRecord,
    EscalationStatus,
    SplitItem,
    SplitProposalPayload,
    make_block_id,
)
from aadflow.kernel.domain.session import Session
from aadflow.kernel.domain.work_item import WorkItem
from aadflow.kernel.exceptions import (
    EscalationStateError,
    EscalationTimeout,
    OrchestratorError,
    ValidationError,
)
from aadflow.kernel.logging import get_logger
from aadflow.kernel.orchestration.models import OrchestratorState
from aadflow.kernel.ports.runner import ReportStatus, RunnerReport

__all__ = ["EscalationManager", "SplitPlan"]

logger = get_logger(__name__)


@dataclass(slots=True)
class SplitPlan:
    """Validated consequences of an accepted split proposal.

    Attributes
    ----------
    original_id : str
        Item being replaced
    replacements : list[WorkItem]
        New items, not yet registered
    rewired : dict[str, set[str]]
        New dependency sets of the original's dependents
    graph : DependencyGraph
        Graph with replacements inserted and dependents rewired
    """

    original_id: str
    replacements: list[WorkItem]
    rewired: dict[str, set[str]] = field(default_factory=dict)
    graph: DependencyGraph = field(default_factory=DependencyGraph)

    @property
    def replacement_ids(self) -> list[str]:
        return [item.id for item in self.replacements]


class EscalationManager:
    """Per-record escalation state machine.

    Parameters
    ----------
    state : OrchestratorState
        The coordinator's state; records live in ``state.escalations``
    escalation_timeout : float
        Seconds a record may stay pending before the operator is notified
    """

    def __init__(self, state: OrchestratorState, escalation_timeout: float = 1800.0) -> None:
        self.state = state
        self.escalation_timeout = escalation_timeout

    def get(self, block_id: str) -> EscalationRecord:
        try:
            return self.state.escalations[block_id]
        except KeyError:
            raise EscalationStateError(f"Unknown escalation '{block_id}'") from None

    def pending(self) -> list[EscalationRecord]:
        return self.state.pending_escalations()

    @property
    def paused(self) -> bool:
        """True while a critical escalation awaits a decision."""
        return self.state.critical_pending

    # ========================================================================
    # Raising
    # ========================================================================

    def raise_escalation(
        self, item: WorkItem, session: Session, report: RunnerReport, now: datetime
    ) -> EscalationRecord:
        """Create a pending record for an ``escalate`` report.

        The session's partial state is stored in the record so a later
        resume can be seeded with it.

        Raises
        ------
        OrchestratorError
            If the report is not an escalation
        """
        if report.status != ReportStatus.ESCALATE or report.escalation is None:
            raise OrchestratorError(f"Report for '{item.id}' is not an escalation")

        sequence = self.state.escalation_counts.get(item.id, 0) + 1
        self.state.escalation_counts[item.id] = sequence
        escalation = report.escalation

        record = EscalationRecord(
            block_id=make_block_id(item.id, sequence),
            work_item_id=item.id,
            session_id=session.session_id,
            kind=EscalationKind(escalation.payload.kind),
            payload=escalation.payload,
            level=escalation.level,
            phase=session.phase,
            partial_state=report.partial_state,
            raised_at=now,
        )
        self.state.escalations[record.block_id] = record

        logger.log(
            record.level.name,
            "{prefix} '{item}' raised {kind} '{block}': {reason}",
            prefix=record.level.log_prefix,
            item=item.id,
            kind=record.kind.value,
            block=record.block_id,
            reason=record.reason,
        )
        return record

    # ========================================================================
    # Deciding
    # ========================================================================

    def resolve(
        self,
        block_id: str,
        resolution_payload: dict[str, Any] | None,
        approved: bool,
        now: datetime,
        graph: DependencyGraph | None = None,
    ) -> tuple[EscalationRecord, SplitPlan | None]:
        """Decide a pending escalation.

        Parameters
        ----------
        block_id : str
            Record to decide
        resolution_payload : dict[str, Any] | None
            The decision: ``{"answer": ...}`` for questions,
            ``{"constraints": [...]}`` for permissions, an optional
            ``{"items": [...]}`` override for splits
        approved : bool
            False rejects the escalation
        now : datetime
            Decision time
        graph : DependencyGraph | None
            Live graph, required to plan an approved split

        Returns
        -------
        tuple[EscalationRecord, SplitPlan | None]
            The decided record and, for an approved split, its plan

        Raises
        ------
        EscalationStateError
            If the record is unknown or already decided
        ValidationError
            If the decision is malformed; the record stays pending
        """
        record = self.get(block_id)
        if not record.is_pending:
            raise EscalationStateError(f"Escalation '{block_id}' is already {record.status.value}")

        payload = dict(resolution_payload or {})
        plan: SplitPlan | None = None

        if approved:
            match record.kind:
                case EscalationKind.QUESTION:
                    if not payload:
                        raise ValidationError("resolution_payload", "an answer is required")
                case EscalationKind.PERMISSION_REQUEST:
                    payload["constraints"] = _coerce_constraints(payload.get("constraints"))
                case EscalationKind.SPLIT_PROPOSAL:
                    if graph is None:
                        raise OrchestratorError("A split needs the live dependency graph")
                    plan = self.plan_split(record, payload, graph)

        record.status = EscalationStatus.RESOLVED if approved else EscalationStatus.REJECTED
        record.resolution_payload = payload
        record.resolved_at = now

        logger.info(
            "{prefix} Escalation '{block}' {status}",
            prefix=record.level.log_prefix,
            block=block_id,
            status=record.status.value,
        )
        return record, plan

    def plan_split(
        self, record: EscalationRecord, resolution_payload: dict[str, Any], graph: DependencyGraph
    ) -> SplitPlan:
        """Validate a split and compute its effect on a copy of the graph.

        Replacements inherit the original's dependencies. Dependents of the
        original are rewired onto the replacements' exit items (those no
        other replacement depends on).

        Raises
        ------
        ValidationError
            Duplicate or unknown ids, or a cycle in the resulting graph
        """
        items = self.state.items
        original = items[record.work_item_id]
        split_items = _split_items(record, resolution_payload)

        new_ids = [split.id for split in split_items]
        if len(set(new_ids)) != len(new_ids):
            raise ValidationError("split.items", "duplicate replacement id", new_ids)
        if clash := sorted(set(new_ids) & set(items)):
            raise ValidationError("split.items", "replacement id already exists", clash)

        known = set(items) | set(new_ids)
        for split in split_items:
            if unknown := sorted(set(split.dependencies) - known):
                raise ValidationError(
                    "split.items", f"'{split.id}' depends on unknown items", unknown
                )
            if original.id in split.dependencies:
                raise ValidationError(
                    "split.items", f"'{split.id}' cannot depend on the item it replaces"
                )

        new_graph = graph.copy()
        next_seq = self.state.next_seq
        replacements: list[WorkItem] = []
        for offset, split in enumerate(split_items):
            deps = set(split.dependencies) | set(original.dependencies)
            replacements.append(
                WorkItem(
                    id=split.id,
                    dependencies=deps,
                    seq=next_seq + offset,
                    phase=original.phase,
                    final_phase=original.final_phase,
                    constraints=list(original.constraints),
                )
            )
            new_graph.add_node(split.id)
        new_graph.add_many(
            (item.id, dep) for item in replacements for dep in sorted(item.dependencies)
        )

        exits = new_graph.exit_items(new_ids)
        rewired: dict[str, set[str]] = {}
        for dependent in sorted(graph.dependents(original.id)):
            new_graph.remove_edge(dependent, original.id)
            new_graph.add_many((dependent, exit_id) for exit_id in exits)
            rewired[dependent] = (set(items[dependent].dependencies) - {original.id}) | set(exits)

        return SplitPlan(
            original_id=original.id, replacements=replacements, rewired=rewired, graph=new_graph
        )

    # ========================================================================
    # Timeouts
    # ========================================================================

    def check_timeouts(self, now: datetime) -> list[EscalationRecord]:
        """Records pending longer than the timeout, each surfaced only once.

        The work items stay blocked; nothing is decided on the operator's
        behalf.
        """
        timed_out = []
        for record in self.pending():
            waited = (now - record.raised_at).total_seconds()
            if record.timeout_notified or waited < self.escalation_timeout:
                continue
            record.timeout_notified = True
            error = EscalationTimeout(record.block_id, record.work_item_id, waited)
            logger.error("{prefix} {error}", prefix=record.level.log_prefix, error=error)
            timed_out.append(record)
        return timed_out


def _split_items(
    record: EscalationRecord, resolution_payload: Mapping[str, Any]
) -> list[SplitItem]:
    """Proposed replacements, or the decision's ``items`` override."""
    if "items" not in resolution_payload:
        if not isinstance(record.payload, SplitProposalPayload):
            raise OrchestratorError(f"Escalation '{record.block_id}' is not a split proposal")
        return list(record.payload.items)
    try:
        override = SplitProposalPayload(items=resolution_payload["items"])
    except PydanticValidationError as e:
        raise ValidationError("split.items", str(e)) from e
    return list(override.items)


def _coerce_constraints(raw: object) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, list) and all(isinstance(c, str) for c in raw):
        return list(raw)
    raise ValidationError("constraints", "must be a list of strings", raw)
