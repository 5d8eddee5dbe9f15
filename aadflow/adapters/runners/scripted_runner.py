"""Scripted runner for tests and demos.

Each work item gets a queue of outcomes that successive sessions consume in
order. Once the queue is empty every further session completes.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from aadflow.kernel.domain.session import Session
from aadflow.kernel.logging import get_logger
from aadflow.kernel.ports.runner import Runner, RunnerReport, RunRequest

logger = get_logger(__name__)

Outcome = (
    RunnerReport
    | BaseException
    | Callable[[RunRequest], RunnerReport | Awaitable[RunnerReport]]
)


class ScriptedRunner(Runner):
    """In-memory runner replaying scripted outcomes.

    The Runner port is stateless, but this runner records every request and
    the peak number of concurrent sessions for inspection in tests.

    Parameters
    ----------
    scripts : Mapping[str, Sequence[Outcome]] | None
        Outcomes per work item id. An outcome is a report, an exception to
        raise, or a callable receiving the request.
    default : RunnerReport | None
        Report returned once an item's script is exhausted (completed)
    delay_seconds : float
        Simulated work duration per session
    recoverable : Mapping[str, RunnerReport] | None
        Reports returned by ``arecover``, keyed by session id or item id

    Examples
    --------
    Example usage::

        runner = ScriptedRunner(
            {"A": [RunnerReport.failed("crash"), RunnerReport.completed()]}
        )
    """

    def __init__(
        self,
        scripts: Mapping[str, Sequence[Outcome]] | None = None,
        default: RunnerReport | None = None,
        delay_seconds: float = 0.0,
        recoverable: Mapping[str, RunnerReport] | None = None,
    ) -> None:
        self.scripts: defaultdict[str, deque[Outcome]] = defaultdict(deque)
        for item_id, outcomes in (scripts or {}).items():
            self.scripts[item_id].extend(outcomes)
        self.default = default or RunnerReport.completed()
        self.delay_seconds = delay_seconds
        self.recoverable = dict(recoverable or {})

        # Non-port inspection state
        self.requests: list[RunRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ScriptedRunner:
        """Build from a plain document, e.g. a YAML demo script::

            delay_seconds: 0.5
            items:
              A:
                - {status: failed, reason: crash}
                - {status: completed}
        """
        scripts = {
            item_id: [RunnerReport.model_validate(raw) for raw in outcomes]
            for item_id, outcomes in (data.get("items") or {}).items()
        }
        return cls(scripts, delay_seconds=float(data.get("delay_seconds", 0.0)))

    def script(self, work_item_id: str, *outcomes: Outcome) -> ScriptedRunner:
        """Append outcomes for an item."""
        self.scripts[work_item_id].extend(outcomes)
        return self

    async def arun(self, request: RunRequest) -> RunnerReport:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)

            queue = self.scripts.get(request.work_item_id)
            outcome: Outcome = queue.popleft() if queue else self.default
            logger.debug("Scripted outcome for {session}", session=request.session_id)

            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                result = outcome(request)
                if inspect.isawaitable(result):
                    result = await result
                return result
            return outcome
        finally:
            self.in_flight -= 1

    async def arecover(self, session: Session) -> RunnerReport | None:
        return self.recoverable.get(session.session_id) or self.recoverable.get(
            session.work_item_id
        )

    # Testing utilities (not part of the Runner port interface)
    def requests_for(self, work_item_id: str) -> list[RunRequest]:
        return [r for r in self.requests if r.work_item_id == work_item_id]

    def started_order(self) -> list[str]:
        return [r.work_item_id for r in self.requests]
