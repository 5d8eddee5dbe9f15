"""Tests for the orchestrator coordinator loop."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from aadflow.adapters.escalation import InMemoryEscalationSink
from aadflow.adapters.runners import ScriptedRunner
from aadflow.kernel.config import OrchestratorConfig
from aadflow.kernel.domain.escalation import EscalationStatus
from aadflow.kernel.domain.session import Session, SessionMode
from aadflow.kernel.domain.work_item import Phase, WorkDeclaration, WorkItem, WorkItemStatus
from aadflow.kernel.exceptions import (
    CheckpointCorruptionError,
    CycleError,
    EscalationStateError,
    ValidationError,
)
from aadflow.kernel.orchestration import Orchestrator, OrchestratorState, RunSummary
from aadflow.kernel.orchestration.components import CheckpointStore
from aadflow.kernel.orchestration.events import (
    EscalationResolved,
    Event,
    SessionStarted,
    WaveStarted,
    WorkItemBlocked,
    WorkItemCompleted,
)
from aadflow.kernel.ports.runner import RunnerReport, RunRequest

ConfigFactory = Callable[..., OrchestratorConfig]


def declare(*specs: str) -> list[WorkDeclaration]:
    return [WorkDeclaration.parse(spec) for spec in specs]


def escalate(kind: str, payload: dict[str, Any], level: str = "warning") -> RunnerReport:
    return RunnerReport.model_validate(
        {
            "status": "escalate",
            "partial_state": {"step": 2},
            "escalation": {"kind": kind, "level": level, "payload": payload},
        }
    )


async def run(orchestrator: Orchestrator) -> RunSummary:
    return await asyncio.wait_for(orchestrator.arun(), timeout=10)


class EventLog:
    """Observer recording events and checking scheduling rules."""

    def __init__(self, max_concurrent: int) -> None:
        self.events: list[Event] = []
        self.violations: list[str] = []
        self.max_concurrent = max_concurrent
        self.orchestrator: Orchestrator | None = None

    def __call__(self, event: Event) -> None:
        self.events.append(event)
        if isinstance(event, SessionStarted) and self.orchestrator is not None:
            state = self.orchestrator.snapshot()
            running = state.items_with_status(WorkItemStatus.RUNNING)
            if len(running) > self.max_concurrent:
                self.violations.append(f"{len(running)} items running")
            for item in running:
                for dep in item.dependencies:
                    if state.items[dep].status != WorkItemStatus.COMPLETED:
                        self.violations.append(f"{item.id} running before {dep} completed")

    def of_type(self, event_type: type[Event]) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]

    def trajectory(self) -> list[tuple[str, str | None]]:
        return [(type(e).__name__, getattr(e, "work_item_id", None)) for e in self.events]


def build(
    runner: ScriptedRunner, config: OrchestratorConfig, **kwargs: Any
) -> tuple[Orchestrator, EventLog]:
    log = EventLog(config.max_concurrent)
    orchestrator = Orchestrator(runner, config=config, observers=[log], **kwargs)
    log.orchestrator = orchestrator
    return orchestrator, log


class TestRegistration:
    """Tests for declaring work."""

    def test_cycle_is_rejected_with_path(self, fast_config: ConfigFactory) -> None:
        """A -> B -> C -> A fails registration naming the cycle."""
        orchestrator = Orchestrator(ScriptedRunner(), config=fast_config())

        with pytest.raises(CycleError) as exc_info:
            orchestrator.register(declare("A:B", "B:C", "C:A"))

        assert exc_info.value.path == ["A", "B", "C", "A"]
        assert orchestrator.snapshot().items == {}
        assert len(orchestrator.graph()) == 0

    def test_unknown_dependency(self, fast_config: ConfigFactory) -> None:
        """Dependencies must name declared items."""
        orchestrator = Orchestrator(ScriptedRunner(), config=fast_config())

        with pytest.raises(ValidationError, match="unknown"):
            orchestrator.register(declare("A", "B:Z"))
        assert orchestrator.snapshot().items == {}

    def test_duplicate_ids(self, fast_config: ConfigFactory) -> None:
        """Ids must be unique."""
        orchestrator = Orchestrator(ScriptedRunner(), config=fast_config())

        with pytest.raises(ValidationError, match="duplicate"):
            orchestrator.register(declare("A", "A"))

    def test_incremental_registration(self, fast_config: ConfigFactory) -> None:
        """Later declarations may depend on earlier ones."""
        orchestrator = Orchestrator(ScriptedRunner(), config=fast_config())
        orchestrator.register(declare("A"))

        orchestrator.register(declare("B:A"))

        assert orchestrator.plan() == [["A"], ["B"]]
        with pytest.raises(ValidationError):
            orchestrator.register(declare("A"))

    def test_snapshot_is_a_copy(self, fast_config: ConfigFactory) -> None:
        """Snapshots never expose live state."""
        orchestrator = Orchestrator(ScriptedRunner(), config=fast_config())
        orchestrator.register(declare("A"))

        snapshot = orchestrator.snapshot()
        snapshot.items["A"].status = WorkItemStatus.COMPLETED

        assert orchestrator.snapshot().items["A"].status == WorkItemStatus.PENDING


class TestScheduling:
    """Tests for waves, concurrency and readiness."""

    @pytest.mark.asyncio
    async def test_dependents_start_together(self, fast_config: ConfigFactory) -> None:
        """A first, then B and C concurrently once A completes."""
        config = fast_config(max_concurrent=2)
        runner = ScriptedRunner(delay_seconds=0.05)
        orchestrator, log = build(runner, config)
        orchestrator.register(declare("A", "B:A", "C:A"))

        summary = await run(orchestrator)

        assert [w.item_ids for w in log.of_type(WaveStarted)] == [["A"], ["B", "C"]]
        assert runner.max_in_flight == 2
        assert summary.exit_code == 0
        assert log.violations == []

    @pytest.mark.asyncio
    async def test_concurrency_cap_and_fifo(self, fast_config: ConfigFactory) -> None:
        """Excess ready items wait in registration order."""
        config = fast_config(max_concurrent=2)
        runner = ScriptedRunner(delay_seconds=0.02)
        orchestrator, log = build(runner, config)
        orchestrator.register(declare("E", "D", "C", "B", "A"))

        summary = await run(orchestrator)

        assert runner.started_order() == ["E", "D", "C", "B", "A"]
        assert runner.max_in_flight == 2
        assert summary.succeeded
        assert log.violations == []

    @pytest.mark.asyncio
    async def test_event_driven_readiness(self, fast_config: ConfigFactory) -> None:
        """A dependent starts as soon as its own dependency finishes."""
        config = fast_config(max_concurrent=3)

        async def slow(request: RunRequest) -> RunnerReport:
            await asyncio.sleep(0.3)
            return RunnerReport.completed()

        runner = ScriptedRunner({"SLOW": [slow]})
        orchestrator, log = build(runner, config)
        orchestrator.register(declare("SLOW", "FAST", "AFTER:FAST"))

        await run(orchestrator)

        completed = [e.work_item_id for e in log.of_type(WorkItemCompleted)]
        assert completed == ["FAST", "AFTER", "SLOW"]
        assert runner.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_ordering_holds_on_wide_graph(self, fast_config: ConfigFactory) -> None:
        """Running implies completed dependencies, and the cap is never exceeded."""
        config = fast_config(max_concurrent=3)
        runner = ScriptedRunner(delay_seconds=0.01)
        orchestrator, log = build(runner, config)
        orchestrator.register(
            declare("A", "B", "C:A", "D:A,B", "E:C", "F:C,D", "G:E,F", "H", "I:H", "J:G,I")
        )

        summary = await run(orchestrator)

        assert summary.succeeded
        assert runner.max_in_flight <= 3
        assert log.violations == []
        order = runner.started_order()
        assert order.index("J") == len(order) - 1


class TestFailures:
    """Tests for retries and skip propagation."""

    @pytest.mark.asyncio
    async def test_retry_exhaustion_skips_dependents(self, fast_config: ConfigFactory) -> None:
        """A fails three times; B and C are skipped."""
        runner = ScriptedRunner({"A": [RunnerReport.failed("tests", "red")] * 3})
        orchestrator, _ = build(runner, fast_config(max_attempts=3))
        orchestrator.register(declare("A", "B:A", "C:B"))

        summary = await run(orchestrator)

        assert summary.statuses == {
            "A": WorkItemStatus.FAILED,
            "B": WorkItemStatus.SKIPPED,
            "C": WorkItemStatus.SKIPPED,
        }
        assert len(runner.requests_for("A")) == 3
        assert [r.attempt for r in runner.requests_for("A")] == [1, 2, 3]
        assert runner.requests_for("B") == []
        assert summary.errors == {"A": "tests: red"}
        assert summary.exit_code == 1

    @pytest.mark.asyncio
    async def test_retry_then_success(self, fast_config: ConfigFactory) -> None:
        """A crash followed by success completes the item."""
        runner = ScriptedRunner({"A": [ZeroDivisionError("boom"), RunnerReport.completed()]})
        orchestrator, _ = build(runner, fast_config())
        orchestrator.register(declare("A"))

        summary = await run(orchestrator)

        assert summary.statuses["A"] == WorkItemStatus.COMPLETED
        sessions = [r.session_id for r in runner.requests_for("A")]
        assert sessions == ["A.tdd.1.0", "A.tdd.2.1"]

    @pytest.mark.asyncio
    async def test_retry_backoff_delays_next_attempt(self, fast_config: ConfigFactory) -> None:
        """Failed attempts wait out an exponential backoff."""
        runner = ScriptedRunner({"A": [RunnerReport.failed("flaky")]})
        orchestrator, _ = build(runner, fast_config(retry_backoff=0.1))
        orchestrator.register(declare("A"))

        loop = asyncio.get_running_loop()
        started = loop.time()
        summary = await run(orchestrator)

        assert summary.succeeded
        assert loop.time() - started >= 0.1

    @pytest.mark.asyncio
    async def test_session_timeout_is_a_failure(self, fast_config: ConfigFactory) -> None:
        """A session past its deadline fails with reason timeout."""

        async def hang(request: RunRequest) -> RunnerReport:
            await asyncio.sleep(60)
            return RunnerReport.completed()

        runner = ScriptedRunner({"A": [hang]})
        orchestrator, _ = build(runner, fast_config(session_timeout=0.05, max_attempts=1))
        orchestrator.register(declare("A", "B:A"))

        summary = await run(orchestrator)

        assert summary.statuses["A"] == WorkItemStatus.FAILED
        assert summary.errors["A"].startswith("timeout")
        assert summary.statuses["B"] == WorkItemStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_cancel_fails_without_retry(self, fast_config: ConfigFactory) -> None:
        """A cancelled item fails once its session reports, and dependents skip."""

        async def hang(request: RunRequest) -> RunnerReport:
            await asyncio.sleep(60)
            return RunnerReport.completed()

        runner = ScriptedRunner({"A": [hang]})
        orchestrator, log = build(runner, fast_config(max_attempts=3))
        orchestrator.register(declare("A", "B:A"))

        def cancel_on_start(event: Event) -> None:
            if isinstance(event, SessionStarted) and event.work_item_id == "A":
                asyncio.get_running_loop().call_later(0.05, orchestrator.cancel, "A")

        orchestrator.observers.append(cancel_on_start)
        summary = await run(orchestrator)

        assert summary.statuses == {"A": WorkItemStatus.FAILED, "B": WorkItemStatus.SKIPPED}
        assert len(runner.requests_for("A")) == 1

    def test_cancel_unknown_item(self, fast_config: ConfigFactory) -> None:
        """Cancelling an item without a session does nothing."""
        orchestrator = Orchestrator(ScriptedRunner(), config=fast_config())

        assert orchestrator.cancel("A") is False


class TestPhases:
    """Tests for items spanning several workflow phases."""

    @pytest.mark.asyncio
    async def test_item_runs_each_phase(self, fast_config: ConfigFactory) -> None:
        """Completion of a non-final phase starts the next phase."""
        runner = ScriptedRunner({"A": [RunnerReport.failed("flaky"), RunnerReport.completed()]})
        orchestrator, _ = build(runner, fast_config(max_attempts=2))
        orchestrator.register([WorkDeclaration(id="A", final_phase=Phase.RETRO)])

        summary = await run(orchestrator)

        assert summary.statuses["A"] == WorkItemStatus.COMPLETED
        requests = runner.requests_for("A")
        assert [r.phase for r in requests] == [Phase.TDD, Phase.TDD, Phase.REVIEW, Phase.RETRO]
        assert [r.attempt for r in requests] == [1, 2, 1, 1]
        assert len({r.session_id for r in requests}) == 4


class TestEscalations:
    """Tests for blocking, deciding and resuming."""

    @pytest.mark.asyncio
    async def test_question_resumes_after_answer(self, fast_config: ConfigFactory) -> None:
        """A blocks on a question, resumes with the answer, then B runs."""
        runner = ScriptedRunner({"A": [escalate("question", {"question": "Which DB?"})]})
        orchestrator, log = build(runner, fast_config())
        orchestrator.register(declare("A", "B:A"))

        dependent_while_blocked: list[WorkItemStatus] = []

        def answer(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                dependent_while_blocked.append(orchestrator.snapshot().items["B"].status)
                orchestrator.resolve(event.record.block_id, {"answer": "postgres"})

        orchestrator.observers.append(answer)
        summary = await run(orchestrator)

        assert dependent_while_blocked == [WorkItemStatus.PENDING]
        assert summary.exit_code == 0
        assert runner.started_order() == ["A", "A", "B"]
        resumed = runner.requests_for("A")[1]
        assert resumed.mode == SessionMode.RESUME
        assert resumed.partial_state == {"step": 2}
        assert resumed.resolution_payload == {"answer": "postgres"}
        record = orchestrator.snapshot().escalations["A-esc-001"]
        assert record.status == EscalationStatus.RESOLVED
        assert log.violations == []

    @pytest.mark.asyncio
    async def test_block_is_checkpointed_first(
        self, fast_config: ConfigFactory, tmp_path: Path
    ) -> None:
        """The blocked status and partial state are on disk when observers hear of it."""
        store = CheckpointStore(tmp_path)
        runner = ScriptedRunner({"A": [escalate("question", {"question": "?"})]})
        orchestrator, _ = build(runner, fast_config(), checkpoint_store=store)
        orchestrator.register(declare("A"))
        seen: list[OrchestratorState] = []

        def on_block(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                seen.append(store.load().state)
                orchestrator.resolve(event.record.block_id, {"answer": "yes"})

        orchestrator.observers.append(on_block)
        await run(orchestrator)

        assert seen[0].items["A"].status == WorkItemStatus.BLOCKED
        assert seen[0].escalations["A-esc-001"].partial_state == {"step": 2}
        assert store.load().state == orchestrator.snapshot()

    @pytest.mark.asyncio
    async def test_rejection_fails_item(self, fast_config: ConfigFactory) -> None:
        """A rejected escalation fails the item and skips dependents."""
        runner = ScriptedRunner({"A": [escalate("permission_request", {"action": "deploy"})]})
        orchestrator, _ = build(runner, fast_config())
        orchestrator.register(declare("A", "B:A"))

        def reject(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                orchestrator.resolve(event.record.block_id, approved=False)

        orchestrator.observers.append(reject)
        summary = await run(orchestrator)

        assert summary.statuses == {"A": WorkItemStatus.FAILED, "B": WorkItemStatus.SKIPPED}
        assert orchestrator.snapshot().escalations["A-esc-001"].status == (
            EscalationStatus.REJECTED
        )

    @pytest.mark.asyncio
    async def test_permission_constraints_follow_the_item(
        self, fast_config: ConfigFactory
    ) -> None:
        """Approved constraints are passed to every later session."""
        runner = ScriptedRunner(
            {
                "A": [
                    escalate("permission_request", {"action": "push"}),
                    RunnerReport.failed("flaky"),
                    RunnerReport.completed(),
                ]
            }
        )
        orchestrator, _ = build(runner, fast_config())
        orchestrator.register(declare("A"))

        def approve(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                orchestrator.resolve(event.record.block_id, {"constraints": ["no force push"]})

        orchestrator.observers.append(approve)
        await run(orchestrator)

        constraints = [r.constraints for r in runner.requests_for("A")]
        assert constraints == [[], ["no force push"], ["no force push"]]

    @pytest.mark.asyncio
    async def test_split_replaces_item(self, fast_config: ConfigFactory) -> None:
        """An approved split inserts replacements and rewires dependents."""
        proposal = escalate(
            "split_proposal",
            {"items": [{"id": "A1"}, {"id": "A2", "dependencies": ["A1"]}]},
        )
        runner = ScriptedRunner({"A": [proposal]})
        orchestrator, log = build(runner, fast_config())
        orchestrator.register(declare("A", "B:A"))

        def approve(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                orchestrator.resolve(event.record.block_id)

        orchestrator.observers.append(approve)
        summary = await run(orchestrator)

        state = orchestrator.snapshot()
        assert state.items["A"].status == WorkItemStatus.SKIPPED
        assert state.items["A"].replaced_by == ["A1", "A2"]
        assert state.items["B"].dependencies == {"A2"}
        assert runner.started_order() == ["A", "A1", "A2", "B"]
        assert summary.superseded == ["A"]
        assert summary.succeeded
        assert summary.exit_code == 0
        assert log.violations == []

    @pytest.mark.asyncio
    async def test_invalid_decision_keeps_record_pending(
        self, fast_config: ConfigFactory
    ) -> None:
        """An empty answer is refused through the returned future."""
        runner = ScriptedRunner({"A": [escalate("question", {"question": "?"})]})
        orchestrator, _ = build(runner, fast_config(blocked_grace_period=0.1))
        orchestrator.register(declare("A"))
        futures: list[asyncio.Future[Any]] = []

        def answer_badly(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                futures.append(orchestrator.resolve(event.record.block_id, {}))

        orchestrator.observers.append(answer_badly)
        summary = await run(orchestrator)

        with pytest.raises(ValidationError):
            futures[0].result()
        assert summary.statuses["A"] == WorkItemStatus.BLOCKED
        assert [r.block_id for r in summary.unresolved] == ["A-esc-001"]

    @pytest.mark.asyncio
    async def test_double_resolution(self, fast_config: ConfigFactory) -> None:
        """The second decision for a record fails."""
        runner = ScriptedRunner({"A": [escalate("question", {"question": "?"})]})
        orchestrator, _ = build(runner, fast_config())
        orchestrator.register(declare("A"))
        futures: list[asyncio.Future[Any]] = []

        def answer_twice(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                futures.append(orchestrator.resolve(event.record.block_id, {"answer": "a"}))
                futures.append(orchestrator.resolve(event.record.block_id, {"answer": "b"}))

        orchestrator.observers.append(answer_twice)
        summary = await run(orchestrator)

        assert futures[0].result().resolution_payload == {"answer": "a"}
        with pytest.raises(EscalationStateError):
            futures[1].result()
        assert summary.succeeded

    @pytest.mark.asyncio
    async def test_unresolved_escalation_stops_run(self, fast_config: ConfigFactory) -> None:
        """With no decision in the grace period the run stops, non-zero."""
        sink = InMemoryEscalationSink()
        runner = ScriptedRunner({"A": [escalate("question", {"question": "?"})]})
        orchestrator, _ = build(
            runner, fast_config(blocked_grace_period=0.05), escalation_sink=sink
        )
        orchestrator.register(declare("A", "B:A", "C"))

        summary = await run(orchestrator)

        assert summary.statuses == {
            "A": WorkItemStatus.BLOCKED,
            "B": WorkItemStatus.PENDING,
            "C": WorkItemStatus.COMPLETED,
        }
        assert summary.exit_code == 1
        assert [r.block_id for r in sink.published] == ["A-esc-001"]

    @pytest.mark.asyncio
    async def test_resolution_through_sink(self, fast_config: ConfigFactory) -> None:
        """Decisions polled from the sink are applied by the loop."""
        sink = InMemoryEscalationSink()
        runner = ScriptedRunner({"A": [escalate("question", {"question": "?"})]})
        orchestrator, _ = build(runner, fast_config(), escalation_sink=sink)
        orchestrator.register(declare("A"))

        def answer_via_sink(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                sink.submit(event.record.block_id, {"answer": "42"})

        orchestrator.observers.append(answer_via_sink)
        summary = await run(orchestrator)

        assert summary.succeeded
        latest = sink.latest("A-esc-001")
        assert latest is not None
        assert latest.status == EscalationStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_escalation_timeout_notifies_once(self, fast_config: ConfigFactory) -> None:
        """A record pending past the timeout is surfaced once; the item stays blocked."""
        sink = InMemoryEscalationSink()
        runner = ScriptedRunner({"A": [escalate("question", {"question": "?"})]})
        orchestrator, _ = build(
            runner,
            fast_config(escalation_timeout=0.02, blocked_grace_period=0.2),
            escalation_sink=sink,
        )
        orchestrator.register(declare("A"))

        summary = await run(orchestrator)

        assert [r.block_id for r in sink.timeouts] == ["A-esc-001"]
        assert summary.statuses["A"] == WorkItemStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_critical_escalation_pauses_scheduling(
        self, fast_config: ConfigFactory
    ) -> None:
        """No new session starts while a critical escalation is pending."""
        runner = ScriptedRunner(
            {"A": [escalate("permission_request", {"action": "rm"}, level="critical")]}
        )
        orchestrator, log = build(runner, fast_config(max_concurrent=1))
        orchestrator.register(declare("A", "B"))

        def approve_later(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                asyncio.get_running_loop().call_later(
                    0.1, orchestrator.resolve, event.record.block_id
                )

        orchestrator.observers.append(approve_later)
        summary = await run(orchestrator)

        names = log.trajectory()
        resolved_at = names.index(("EscalationResolved", None))
        b_started = names.index(("SessionStarted", "B"))
        assert b_started > resolved_at
        assert summary.succeeded


class TestResume:
    """Tests for resuming from checkpoints."""

    @pytest.mark.asyncio
    async def test_resume_blocked_run(self, fast_config: ConfigFactory, tmp_path: Path) -> None:
        """A run stopped on an escalation continues after the decision."""
        store = CheckpointStore(tmp_path)
        first = ScriptedRunner({"B": [escalate("question", {"question": "?"})]})
        orchestrator = Orchestrator(
            first, config=fast_config(blocked_grace_period=0), checkpoint_store=store
        )
        orchestrator.register(declare("A", "B:A", "C:B"))
        summary = await run(orchestrator)
        assert summary.statuses["B"] == WorkItemStatus.BLOCKED

        sink = InMemoryEscalationSink()
        sink.submit("B-esc-001", {"answer": "go"})
        second = ScriptedRunner()
        resumed = Orchestrator.from_checkpoint(
            second, store, config=fast_config(), escalation_sink=sink
        )
        summary = await run(resumed)

        assert summary.succeeded
        assert resumed.run_id == orchestrator.run_id
        assert second.started_order() == ["B", "C"]
        assert second.requests_for("B")[0].mode == SessionMode.RESUME
        assert second.requests_for("B")[0].resolution_payload == {"answer": "go"}

    @pytest.mark.asyncio
    async def test_running_item_is_reverified(
        self, fast_config: ConfigFactory, tmp_path: Path
    ) -> None:
        """An item found running uses the session's recovered report."""
        store = CheckpointStore(tmp_path)
        store.persist(_interrupted_state())

        runner = ScriptedRunner(recoverable={"A.tdd.1.0": RunnerReport.completed()})
        orchestrator = Orchestrator.from_checkpoint(runner, store, config=fast_config())
        summary = await run(orchestrator)

        assert summary.succeeded
        assert runner.started_order() == ["B"]

    @pytest.mark.asyncio
    async def test_running_item_without_report_restarts(
        self, fast_config: ConfigFactory, tmp_path: Path
    ) -> None:
        """Without a recoverable report the item runs again from scratch."""
        store = CheckpointStore(tmp_path)
        store.persist(_interrupted_state())

        runner = ScriptedRunner()
        orchestrator = Orchestrator.from_checkpoint(runner, store, config=fast_config())
        summary = await run(orchestrator)

        assert summary.succeeded
        assert runner.started_order() == ["A", "B"]
        assert runner.requests_for("A")[0].session_id == "A.tdd.1.1"

    def test_corrupt_checkpoint_refuses_to_start(
        self, fast_config: ConfigFactory, tmp_path: Path
    ) -> None:
        """A damaged checkpoint is fatal rather than silently starting fresh."""
        store = CheckpointStore(tmp_path)
        store.persist(_interrupted_state())
        store.path.write_text('{"version": 1, "state": ')

        with pytest.raises(CheckpointCorruptionError):
            Orchestrator.from_checkpoint(ScriptedRunner(), store, config=fast_config())

    @pytest.mark.asyncio
    async def test_replays_are_deterministic(self, fast_config: ConfigFactory) -> None:
        """The same decision yields the same trajectory in independent replays."""

        async def replay() -> list[tuple[str, str | None]]:
            runner = ScriptedRunner({"B": [escalate("question", {"question": "?"})]})
            orchestrator, log = build(runner, fast_config(max_concurrent=1))
            orchestrator.register(declare("A", "B:A", "C:B", "D:A"))

            def answer(event: Event) -> None:
                if isinstance(event, WorkItemBlocked):
                    orchestrator.resolve(event.record.block_id, {"answer": "same"})

            orchestrator.observers.append(answer)
            await run(orchestrator)
            return log.trajectory()

        first = await replay()
        second = await replay()

        assert first == second
        assert ("EscalationResolved", None) in first


class TestLateRegistration:
    """Tests for work registered after its dependencies finished."""

    @staticmethod
    async def _failed_run(config: OrchestratorConfig, store: CheckpointStore) -> None:
        runner = ScriptedRunner({"A": [RunnerReport.failed("tests", "red")]})
        orchestrator = Orchestrator(runner, config=config, checkpoint_store=store)
        orchestrator.register(declare("A", "B:A"))
        summary = await run(orchestrator)
        assert summary.statuses["A"] == WorkItemStatus.FAILED

    @pytest.mark.asyncio
    async def test_work_on_failed_item_is_skipped(
        self, fast_config: ConfigFactory, tmp_path: Path
    ) -> None:
        """X:A after A failed ends skipped instead of waiting forever."""
        store = CheckpointStore(tmp_path)
        await self._failed_run(fast_config(max_attempts=1), store)

        runner = ScriptedRunner()
        resumed = Orchestrator.from_checkpoint(runner, store, config=fast_config())
        resumed.register(declare("X:A", "Y:X"))
        summary = await run(resumed)

        assert summary.statuses == {
            "A": WorkItemStatus.FAILED,
            "B": WorkItemStatus.SKIPPED,
            "X": WorkItemStatus.SKIPPED,
            "Y": WorkItemStatus.SKIPPED,
        }
        state = resumed.snapshot()
        assert state.items["X"].skip_reason == "dependency 'A' failed"
        assert state.items["Y"].skip_reason == "dependency 'X' was skipped"
        assert runner.started_order() == []
        assert summary.exit_code == 1

    @pytest.mark.asyncio
    async def test_work_on_skipped_item_is_skipped(
        self, fast_config: ConfigFactory, tmp_path: Path
    ) -> None:
        """A dependency on a skipped item is just as dead as a failed one."""
        store = CheckpointStore(tmp_path)
        await self._failed_run(fast_config(max_attempts=1), store)

        resumed = Orchestrator.from_checkpoint(ScriptedRunner(), store, config=fast_config())
        resumed.register(declare("Z:B"))
        summary = await run(resumed)

        assert summary.statuses["Z"] == WorkItemStatus.SKIPPED
        assert resumed.snapshot().items["Z"].skip_reason == "dependency 'B' was skipped"

    @pytest.mark.asyncio
    async def test_work_on_split_item_follows_replacements(
        self, fast_config: ConfigFactory, tmp_path: Path
    ) -> None:
        """C:A after A was split waits on the replacements' exit item."""
        store = CheckpointStore(tmp_path)
        proposal = escalate(
            "split_proposal",
            {"items": [{"id": "A1"}, {"id": "A2", "dependencies": ["A1"]}]},
        )
        orchestrator = Orchestrator(
            ScriptedRunner({"A": [proposal]}), config=fast_config(), checkpoint_store=store
        )
        orchestrator.register(declare("A"))

        def approve(event: Event) -> None:
            if isinstance(event, WorkItemBlocked):
                orchestrator.resolve(event.record.block_id)

        orchestrator.observers.append(approve)
        assert (await run(orchestrator)).succeeded

        runner = ScriptedRunner()
        resumed = Orchestrator.from_checkpoint(runner, store, config=fast_config())
        (registered,) = resumed.register(declare("C:A"))
        summary = await run(resumed)

        assert registered.dependencies == {"A2"}
        assert resumed.graph().dependencies("C") == frozenset({"A2"})
        assert summary.statuses["C"] == WorkItemStatus.COMPLETED
        assert runner.started_order() == ["C"]
        assert summary.succeeded


def _interrupted_state() -> OrchestratorState:
    now = datetime.now(UTC)
    state = OrchestratorState(run_id="run-interrupted")
    state.items["A"] = WorkItem(id="A", seq=0, status=WorkItemStatus.RUNNING)
    state.items["B"] = WorkItem(id="B", seq=1, dependencies={"A"})
    state.sessions["A.tdd.1.0"] = Session(
        session_id="A.tdd.1.0",
        work_item_id="A",
        started_at=now,
        deadline=now + timedelta(hours=1),
    )
    state.session_generations["A"] = 1
    state.next_seq = 2
    return state
