"""Orchestrator: the coordinator loop driving work items to completion.

A single coroutine owns and mutates all state. Sessions run as asyncio tasks
that only post reports to a queue; external decisions are queued too and
applied by the loop, so every transition happens in one place and is
checkpointed right after it happens.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from aadflow.kernel.config.models import OrchestratorConfig
from aadflow.kernel.domain.dag import DependencyGraph
from aadflow.kernel.domain.escalation import (
    EscalationKind,
    EscalationRecord,
    EscalationStatus,
    Resolution,
)
from aadflow.kernel.domain.session import Session, SessionMode, make_session_id
from aadflow.kernel.domain.work_item import WorkDeclaration, WorkItem, WorkItemStatus
from aadflow.kernel.exceptions import (
    EscalationStateError,
    OrchestratorError,
    ValidationError,
)
from aadflow.kernel.logging import get_logger, reset_run_id, set_run_id
from aadflow.kernel.orchestration.components import (
    CheckpointStore,
    EscalationManager,
    SessionRegistry,
    SessionReport,
    SplitPlan,
    WaveScheduler,
)
from aadflow.kernel.orchestration.events import (
    EscalationResolved,
    Event,
    ProgressUpdate,
    RunCompleted,
    RunStarted,
    SessionStarted,
    WaveStarted,
    WorkItemBlocked,
    WorkItemCompleted,
    WorkItemFailed,
    WorkItemSkipped,
)
from aadflow.kernel.orchestration.models import OrchestratorState, RunSummary, utcnow
from aadflow.kernel.ports.escalation_sink import EscalationSink
from aadflow.kernel.ports.runner import ReportStatus, Runner, RunnerReport, RunRequest

__all__ = ["Observer", "Orchestrator"]

logger = get_logger(__name__)

Observer = Callable[[Event], None]

CANCELLED = "cancelled"
TIMEOUT = "timeout"


def _has_async_lifecycle(obj: Any, method_name: str) -> bool:
    """Check if object has an async lifecycle method."""
    return hasattr(obj, method_name) and asyncio.iscoroutinefunction(getattr(obj, method_name))


def new_run_id() -> str:
    return f"run-{utcnow():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


class Orchestrator:
    """Schedules work items, runs sessions and handles escalations.

    The orchestrator:

    1. Registers work declarations into an acyclic dependency graph
    2. Starts sessions for ready items, never more than ``max_concurrent``
    3. Applies each session report: completion, bounded retry, or escalation
    4. Applies external escalation decisions and resumes blocked items
    5. Checkpoints after every transition so a run can resume

    Parameters
    ----------
    runner : Runner
        Executes sessions
    config : OrchestratorConfig | None
        Limits and timing knobs (defaults when None)
    checkpoint_store : CheckpointStore | None
        Where state is persisted; None disables checkpointing
    escalation_sink : EscalationSink | None
        Operator channel for escalations; None keeps them in state only
    observers : Iterable[Observer]
        Callables receiving every event
    clock : Callable[[], datetime]
        Time source, injectable for tests
    run_id : str | None
        Run identifier (generated when None)

    Examples
    --------
    Basic usage::

        orchestrator = Orchestrator(runner, config=OrchestratorConfig(max_concurrent=2))
        orchestrator.register([WorkDeclaration.parse("A"), WorkDeclaration.parse("B:A")])
        summary = await orchestrator.arun()
    """

    def __init__(
        self,
        runner: Runner,
        config: OrchestratorConfig | None = None,
        checkpoint_store: CheckpointStore | None = None,
        escalation_sink: EscalationSink | None = None,
        observers: Iterable[Observer] = (),
        clock: Callable[[], datetime] = utcnow,
        run_id: str | None = None,
    ) -> None:
        self.runner = runner
        self.config = config or OrchestratorConfig()
        self.checkpoint_store = checkpoint_store
        self.escalation_sink = escalation_sink
        self.observers: list[Observer] = list(observers)
        self.clock = clock

        self._state = OrchestratorState(run_id=run_id or new_run_id(), started_at=clock())
        self._graph = DependencyGraph()
        self._scheduler = WaveScheduler(self.config.max_concurrent)
        self._sessions = SessionRegistry(runner, self.config.session_timeout, clock)
        self._escalations = EscalationManager(self._state, self.config.escalation_timeout)
        self._resolutions: deque[tuple[Resolution, asyncio.Future[EscalationRecord] | None]] = (
            deque()
        )
        self._resumed = False

    @classmethod
    def from_checkpoint(
        cls,
        runner: Runner,
        checkpoint_store: CheckpointStore,
        config: OrchestratorConfig | None = None,
        escalation_sink: EscalationSink | None = None,
        observers: Iterable[Observer] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> Orchestrator:
        """Rebuild an orchestrator from the last checkpoint.

        Items that were running are re-verified when the run starts.

        Raises
        ------
        CheckpointCorruptionError
            If the checkpoint cannot be trusted
        """
        checkpoint = checkpoint_store.load()
        orchestrator = cls(
            runner,
            config=config,
            checkpoint_store=checkpoint_store,
            escalation_sink=escalation_sink,
            observers=observers,
            clock=clock,
            run_id=checkpoint.state.run_id,
        )
        orchestrator._adopt_state(checkpoint.state.model_copy(deep=True))
        orchestrator._resumed = True
        return orchestrator

    def _adopt_state(self, state: OrchestratorState) -> None:
        self._graph = state.build_graph()
        self._state = state
        self._escalations = EscalationManager(state, self.config.escalation_timeout)

    # ========================================================================
    # Read-only views
    # ========================================================================

    @property
    def run_id(self) -> str:
        return self._state.run_id

    def snapshot(self) -> OrchestratorState:
        """Deep copy of the current state; never a live reference."""
        return self._state.model_copy(deep=True)

    def graph(self) -> DependencyGraph:
        return self._graph.copy()

    def summary(self) -> RunSummary:
        return RunSummary.from_state(self._state)

    def plan(self) -> list[list[str]]:
        """Wave plan of the remaining items, for a dry run."""
        return self._scheduler.plan(self._graph, self._state.items)

    # ========================================================================
    # Registration
    # ========================================================================

    def register(self, declarations: Iterable[WorkDeclaration]) -> list[WorkItem]:
        """Register declared work, all or nothing.

        A dependency on an item that a split superseded is moved onto the
        replacements' exit items. New items depending on a failed or skipped
        item are skipped at once, together with their own dependents.

        Raises
        ------
        ValidationError
            Duplicate ids or unknown dependencies; no state is created
        CycleError
            If the declarations contain a cycle, naming the exact cycle
        """
        declared = list(declarations)
        ids = [d.id for d in declared]
        if duplicates := sorted({i for i in ids if ids.count(i) > 1}):
            raise ValidationError("id", "duplicate work item ids", duplicates)
        if existing := sorted(set(ids) & set(self._state.items)):
            raise ValidationError("id", "work items already registered", existing)

        known = set(ids) | set(self._state.items)
        for declaration in declared:
            if unknown := sorted(set(declaration.dependencies) - known):
                raise ValidationError(
                    "dependencies", f"'{declaration.id}' depends on unknown items", unknown
                )

        items = [
            declaration.to_work_item(seq=self._state.next_seq + offset)
            for offset, declaration in enumerate(declared)
        ]
        for item in items:
            item.dependencies = self._live_dependencies(item.dependencies)

        graph = self._graph.copy()
        for item_id in ids:
            graph.add_node(item_id)
        graph.add_many((item.id, dep) for item in items for dep in sorted(item.dependencies))

        self._graph = graph
        for item in items:
            self._state.items[item.id] = item
        self._state.next_seq += len(items)
        logger.info("Registered {count} work items", count=len(items))

        for item in items:
            if item.is_terminal:
                continue
            if reason := self._dead_dependency_reason(item):
                item.skip_reason = reason
                self._transition(item, WorkItemStatus.SKIPPED)
                self._emit(WorkItemSkipped(item.id, reason))
                self._skip_dependents(item.id, f"dependency '{item.id}' was skipped")

        return [item.model_copy(deep=True) for item in items]

    def _live_dependencies(self, dependencies: Iterable[str]) -> set[str]:
        """Replace superseded items with the exit items of their replacements."""
        resolved: set[str] = set()
        queue = deque(dependencies)
        while queue:
            dep = queue.popleft()
            item = self._state.items.get(dep)
            if item is not None and item.superseded:
                queue.extend(self._graph.exit_items(item.replaced_by))
            else:
                resolved.add(dep)
        return resolved

    def _dead_dependency_reason(self, item: WorkItem) -> str | None:
        for dep in sorted(item.dependencies):
            dependency = self._state.items[dep]
            if dependency.status == WorkItemStatus.FAILED:
                return f"dependency '{dep}' failed"
            if dependency.status == WorkItemStatus.SKIPPED:
                return f"dependency '{dep}' was skipped"
        return None

    # ========================================================================
    # External control (queued, applied by the loop)
    # ========================================================================

    def resolve(
        self,
        block_id: str,
        resolution_payload: dict[str, Any] | None = None,
        approved: bool = True,
    ) -> asyncio.Future[EscalationRecord]:
        """Queue a decision for a pending escalation.

        Must be called from the event loop running :meth:`arun`. The returned
        future resolves with the decided record once the loop has applied
        it, or raises ``EscalationStateError`` / ``ValidationError``.
        """
        future: asyncio.Future[EscalationRecord] = asyncio.get_running_loop().create_future()
        resolution = Resolution(
            block_id=block_id,
            resolution_payload=resolution_payload or {},
            approved=approved,
        )
        self._resolutions.append((resolution, future))
        return future

    def cancel(self, work_item_id: str) -> bool:
        """Cooperatively cancel the running session of an item.

        The item then fails without retry and its dependents are skipped.
        """
        session = self._sessions.session_for(work_item_id)
        return self._sessions.cancel(session.session_id) if session else False

    # ========================================================================
    # Main loop
    # ========================================================================

    async def arun(self) -> RunSummary:
        """Run until every item is terminal, or only undecided work remains.

        Returns
        -------
        RunSummary
            Final status of every item plus unresolved escalations
        """
        # Worker tasks copy this context, so their records carry the run id too
        token = set_run_id(self.run_id)
        try:
            self._emit(RunStarted(self.run_id, len(self._state.items), resumed=self._resumed))

            if _has_async_lifecycle(self.runner, "asetup"):
                await self.runner.asetup()
            try:
                if self._resumed:
                    await self._recover_running()
                self._checkpoint()
                await self._loop()
            finally:
                await self._sessions.close()
                if _has_async_lifecycle(self.runner, "aclose"):
                    try:
                        await self.runner.aclose()
                    except Exception as e:
                        logger.warning("Runner cleanup failed: {}", e)

            summary = self.summary()
            self._emit(RunCompleted(self.run_id, summary))
            return summary
        finally:
            reset_run_id(token)

    async def _loop(self) -> None:
        waiting_since: datetime | None = None

        while True:
            now = self.clock()
            await self._apply_resolutions(now)
            await self._sweep_expired(now)
            await self._check_escalation_timeouts(now)
            self._schedule(now)

            if self._all_terminal():
                logger.info("All work items reached a final status")
                return

            if self._stalled():
                if not self._escalations.pending():
                    raise OrchestratorError("No runnable work left but items are not final")
                if waiting_since is None:
                    waiting_since = now
                    pending = ", ".join(r.block_id for r in self._escalations.pending())
                    logger.info("Waiting for escalation decisions: {pending}", pending=pending)
                grace = self.config.blocked_grace_period
                if grace is not None and (now - waiting_since).total_seconds() >= grace:
                    logger.warning(
                        "No decision within {grace}s; stopping with blocked work", grace=grace
                    )
                    return
            else:
                waiting_since = None

            report = await self._sessions.poll(self._poll_timeout(now))
            reports = ([report] if report else []) + self._sessions.drain()
            for session_report in reports:
                await self._process_report(session_report)

    def _poll_timeout(self, now: datetime) -> float:
        timeout = self.config.poll_interval
        if (wakeup := self._scheduler.next_wakeup(self._state.items)) is not None:
            timeout = min(timeout, max(0.0, (wakeup - now).total_seconds()))
        return timeout

    def _all_terminal(self) -> bool:
        return all(item.is_terminal for item in self._state.items.values())

    def _stalled(self) -> bool:
        """Nothing runs, nothing is queued and nothing can start on its own.

        Ready items still waiting out a retry backoff are not stalled.
        """
        if self._sessions.running_count or self._resolutions:
            return False
        if self._escalations.paused:
            return True
        return not any(
            item.status == WorkItemStatus.READY for item in self._state.items.values()
        )

    # ========================================================================
    # Scheduling
    # ========================================================================

    def _schedule(self, now: datetime) -> None:
        for item in self._scheduler.promote_ready(self._graph, self._state.items):
            self._checkpoint()
            logger.debug("Work item '{item}' promoted to ready", item=item.id)

        batch = self._scheduler.next_wave(
            self._graph,
            self._state.items,
            self._sessions.running_count,
            now,
            paused=self._escalations.paused,
        )
        if not batch:
            return

        self._state.wave_index += 1
        self._emit(WaveStarted(self._state.wave_index, [item.id for item in batch]))
        for item in batch:
            self._start_session(item, now)

    def _start_session(self, item: WorkItem, now: datetime) -> Session:
        if not self._scheduler.dependencies_met(self._graph, self._state.items, item.id):
            raise OrchestratorError(f"'{item.id}' cannot run before its dependencies complete")

        generation = self._state.session_generations.get(item.id, 0)
        self._state.session_generations[item.id] = generation + 1
        attempt = item.retry_count + 1

        mode = SessionMode.FRESH
        partial_state = resolution_payload = None
        if item.resume_from is not None:
            record = self._state.escalations[item.resume_from]
            mode = SessionMode.RESUME
            partial_state = record.partial_state
            resolution_payload = record.resolution_payload

        request = RunRequest(
            work_item_id=item.id,
            session_id=make_session_id(item.id, item.phase, attempt, generation),
            attempt=attempt,
            mode=mode,
            phase=item.phase,
            constraints=list(item.constraints),
            partial_state=partial_state,
            resolution_payload=resolution_payload,
            deadline=self._sessions.deadline(now),
        )
        session = self._sessions.start(item, request)
        self._state.sessions[session.session_id] = session
        item.resume_from = None
        item.not_before = None
        self._transition(item, WorkItemStatus.RUNNING)
        self._emit(SessionStarted(item.id, session.session_id, attempt, mode.value))
        return session

    # ========================================================================
    # Reports
    # ========================================================================

    async def _process_report(self, session_report: SessionReport) -> None:
        session = self._sessions.active().get(session_report.session_id)
        if session is None:
            self._sessions.on_report(session_report)  # logs the stale report
            return

        item = self._state.items[session.work_item_id]
        report = session_report.report

        if report.status == ReportStatus.ESCALATE:
            # Block and checkpoint before the session is torn down
            record = self._escalations.raise_escalation(item, session, report, self.clock())
            self._transition(item, WorkItemStatus.BLOCKED)
            self._finish_session(session_report)
            self._emit(WorkItemBlocked(item.id, record))
            if self.escalation_sink is not None:
                await self.escalation_sink.apublish(record.model_copy(deep=True))
        else:
            self._finish_session(session_report)
            self._apply_outcome(item, report)

        self._emit_progress()

    def _finish_session(self, session_report: SessionReport) -> None:
        self._sessions.on_report(session_report)
        self._state.sessions.pop(session_report.session_id, None)
        self._checkpoint()

    def _apply_outcome(self, item: WorkItem, report: RunnerReport) -> None:
        if report.status == ReportStatus.COMPLETED:
            if item.in_final_phase:
                self._transition(item, WorkItemStatus.COMPLETED)
                self._emit(WorkItemCompleted(item.id))
            else:
                phase = item.advance_phase()
                logger.info("Work item '{item}' advances to {phase}", item=item.id, phase=phase)
                self._transition(item, WorkItemStatus.READY)
        else:
            self._handle_failure(item, report)

    def _handle_failure(self, item: WorkItem, report: RunnerReport) -> None:
        reason = report.reason or "failed"
        item.last_error = f"{reason}: {report.detail}" if report.detail else reason
        item.retry_count += 1

        if reason != CANCELLED and item.retry_count < self.config.max_attempts:
            delay = self.config.backoff_for(item.retry_count)
            item.not_before = self.clock() + timedelta(seconds=delay)
            logger.warning(
                "Work item '{item}' attempt {attempt}/{max} failed ({error}), retrying in {delay}s",
                item=item.id,
                attempt=item.retry_count,
                max=self.config.max_attempts,
                error=item.last_error,
                delay=delay,
            )
            self._transition(item, WorkItemStatus.READY)
            return

        self._fail(item, item.last_error)

    def _fail(self, item: WorkItem, reason: str) -> None:
        self._transition(item, WorkItemStatus.FAILED)
        self._emit(WorkItemFailed(item.id, reason))
        self._skip_dependents(item.id, f"dependency '{item.id}' failed")

    def _skip_dependents(self, item_id: str, reason: str) -> None:
        for dependent_id in self._graph.transitive_dependents(item_id):
            dependent = self._state.items[dependent_id]
            if dependent.is_terminal:
                continue
            if dependent.status == WorkItemStatus.RUNNING:
                raise OrchestratorError(f"'{dependent_id}' is running with unfinished dependencies")
            dependent.skip_reason = reason
            self._transition(dependent, WorkItemStatus.SKIPPED)
            self._emit(WorkItemSkipped(dependent_id, reason))

    # ========================================================================
    # Escalation decisions
    # ========================================================================

    async def _apply_resolutions(self, now: datetime) -> None:
        if self.escalation_sink is not None:
            for resolution in await self.escalation_sink.apoll_resolutions():
                self._resolutions.append((resolution, None))

        while self._resolutions:
            resolution, future = self._resolutions.popleft()
            try:
                record = await self._apply_resolution(resolution, now)
            except (EscalationStateError, ValidationError) as e:
                logger.warning(
                    "Rejected decision for '{block}': {error}", block=resolution.block_id, error=e
                )
                if future is not None and not future.done():
                    future.set_exception(e)
                continue
            if future is not None and not future.done():
                future.set_result(record)

    async def _apply_resolution(self, resolution: Resolution, now: datetime) -> EscalationRecord:
        record, plan = self._escalations.resolve(
            resolution.block_id,
            resolution.resolution_payload,
            resolution.approved,
            now,
            graph=self._graph,
        )
        item = self._state.items[record.work_item_id]

        if record.status == EscalationStatus.REJECTED:
            item.last_error = f"escalation '{record.block_id}' rejected"
            self._fail(item, item.last_error)
        elif plan is not None:
            self._commit_split(item, plan)
        else:
            if record.kind == EscalationKind.PERMISSION_REQUEST:
                granted = (record.resolution_payload or {}).get("constraints", [])
                item.constraints.extend(c for c in granted if c not in item.constraints)
            item.resume_from = record.block_id
            self._transition(item, WorkItemStatus.READY)

        self._emit(EscalationResolved(record.model_copy(deep=True)))
        if self.escalation_sink is not None:
            await self.escalation_sink.apublish(record.model_copy(deep=True))
        self._emit_progress()
        return record.model_copy(deep=True)

    def _commit_split(self, original: WorkItem, plan: SplitPlan) -> None:
        self._graph = plan.graph
        for replacement in plan.replacements:
            self._state.items[replacement.id] = replacement
        self._state.next_seq += len(plan.replacements)

        for dependent_id, dependencies in plan.rewired.items():
            dependent = self._state.items[dependent_id]
            dependent.dependencies = set(dependencies)
            if dependent.status == WorkItemStatus.READY and not self._scheduler.dependencies_met(
                self._graph, self._state.items, dependent_id
            ):
                self._transition(dependent, WorkItemStatus.PENDING)

        original.replaced_by = plan.replacement_ids
        original.skip_reason = f"split into {', '.join(plan.replacement_ids)}"
        self._transition(original, WorkItemStatus.SKIPPED)
        self._emit(WorkItemSkipped(original.id, original.skip_reason))

    async def _check_escalation_timeouts(self, now: datetime) -> None:
        timed_out = self._escalations.check_timeouts(now)
        for record in timed_out:
            if self.escalation_sink is not None:
                await self.escalation_sink.anotify_timeout(record.model_copy(deep=True))
        if timed_out:
            self._checkpoint()

    # ========================================================================
    # Deadlines and recovery
    # ========================================================================

    async def _sweep_expired(self, now: datetime) -> None:
        """Fail sessions past their deadline whose worker did not report."""
        for session in self._sessions.expired(now):
            logger.warning(
                "Session '{session}' passed its deadline without reporting",
                session=session.session_id,
            )
            self._sessions.cancel(session.session_id)
            detail = f"no report by {session.deadline.isoformat()}"
            await self._process_report(
                SessionReport(
                    session.session_id,
                    session.work_item_id,
                    RunnerReport.failed(TIMEOUT, detail),
                )
            )

    async def _recover_running(self) -> None:
        """Re-verify items that were running when the last run stopped.

        A recovered report is applied as if the session had just reported.
        Otherwise the item is restarted from scratch; it is never marked
        completed without a report.
        """
        sessions = dict(self._state.sessions)
        self._state.sessions.clear()
        by_item = {s.work_item_id: s for s in sessions.values()}

        for item in self._state.items_with_status(WorkItemStatus.RUNNING):
            session = by_item.get(item.id)
            report = None
            if session is not None and _has_async_lifecycle(self.runner, "arecover"):
                report = await self.runner.arecover(session)

            if report is None or session is None:
                logger.info("Restarting '{item}' from scratch after resume", item=item.id)
                self._transition(item, WorkItemStatus.READY)
                continue

            logger.info(
                "Recovered {status} report for '{item}'", status=report.status.value, item=item.id
            )
            if report.status == ReportStatus.ESCALATE:
                record = self._escalations.raise_escalation(item, session, report, self.clock())
                self._transition(item, WorkItemStatus.BLOCKED)
                self._emit(WorkItemBlocked(item.id, record))
                if self.escalation_sink is not None:
                    await self.escalation_sink.apublish(record.model_copy(deep=True))
            else:
                self._apply_outcome(item, report)

    # ========================================================================
    # Transitions, checkpoints and events
    # ========================================================================

    def _transition(self, item: WorkItem, to_status: WorkItemStatus) -> None:
        previous = item.transition(to_status)
        logger.info(
            "Work item '{item}': {old} -> {new}",
            item=item.id,
            old=previous.value,
            new=to_status.value,
        )
        self._checkpoint()

    def _checkpoint(self) -> None:
        if self.checkpoint_store is not None:
            self.checkpoint_store.persist(self._state)

    def _emit_progress(self) -> None:
        state = self._state
        done = sum(
            1
            for item in state.items.values()
            if item.status == WorkItemStatus.COMPLETED or item.superseded
        )
        self._emit(
            ProgressUpdate(
                completed=done,
                total=len(state.items),
                running=state.count(WorkItemStatus.RUNNING),
                blocked=state.count(WorkItemStatus.BLOCKED),
            )
        )

    def _emit(self, event: Event) -> None:
        logger.debug(event.log_message())
        for observer in self.observers:
            try:
                observer(event)
            except Exception as e:
                logger.opt(exception=e).warning(
                    "Observer failed on {event}", event=type(event).__name__
                )
