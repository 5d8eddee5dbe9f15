"""Session registry: owns worker tasks and the report queue.

Worker tasks never touch coordinator state. Each one runs the runner under a
hard deadline and posts exactly one :class:`SessionReport` to the registry's
queue, which the coordinator drains.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from aadflow.kernel.domain.session import Session
from aadflow.kernel.domain.work_item import WorkItem
from aadflow.kernel.exceptions import OrchestratorError, RunnerError
from aadflow.kernel.logging import get_logger
from aadflow.kernel.orchestration.models import utcnow
from aadflow.kernel.ports.runner import Runner, RunnerReport, RunRequest

__all__ = ["SessionRegistry", "SessionReport"]

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class SessionReport:
    """A runner report tagged with the session that produced it."""

    session_id: str
    work_item_id: str
    report: RunnerReport


class SessionRegistry:
    """Starts sessions, enforces deadlines and collects their reports.

    Parameters
    ----------
    runner : Runner
        Runner executing each session
    session_timeout : float
        Hard deadline per session, in seconds
    clock : Callable[[], datetime]
        Time source, injectable for tests
    """

    def __init__(
        self,
        runner: Runner,
        session_timeout: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.runner = runner
        self.session_timeout = session_timeout
        self.clock = clock
        self._queue: asyncio.Queue[SessionReport] = asyncio.Queue()
        self._sessions: dict[str, Session] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # ========================================================================
    # Queries
    # ========================================================================

    @property
    def running_count(self) -> int:
        return len(self._sessions)

    def active(self) -> dict[str, Session]:
        """Copy of the active sessions keyed by session id."""
        return dict(self._sessions)

    def session_for(self, work_item_id: str) -> Session | None:
        return next(
            (s for s in self._sessions.values() if s.work_item_id == work_item_id),
            None,
        )

    def deadline(self, now: datetime | None = None) -> datetime:
        return (now or self.clock()) + timedelta(seconds=self.session_timeout)

    def expired(self, now: datetime) -> list[Session]:
        """Sessions past their deadline, oldest first."""
        return sorted(
            (s for s in self._sessions.values() if s.expired(now)),
            key=lambda s: s.deadline,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self, item: WorkItem, request: RunRequest) -> Session:
        """Launch a worker task for ``item``.

        Raises
        ------
        OrchestratorError
            If the session id is already active
        """
        if request.session_id in self._sessions:
            raise OrchestratorError(f"Session '{request.session_id}' is already active")

        session = Session(
            session_id=request.session_id,
            work_item_id=item.id,
            started_at=self.clock(),
            deadline=request.deadline,
            attempt=request.attempt,
            mode=request.mode,
            phase=request.phase,
        )
        self._sessions[session.session_id] = session
        task = asyncio.create_task(
            self._worker(session, request), name=f"aadflow-session-{session.session_id}"
        )
        task.add_done_callback(lambda t: self._on_task_done(session, t))
        self._tasks[session.session_id] = task
        logger.info(
            "Session '{session}' started for '{item}' (attempt {attempt}, {mode})",
            session=session.session_id,
            item=item.id,
            attempt=session.attempt,
            mode=session.mode.value,
        )
        return session

    async def _worker(self, session: Session, request: RunRequest) -> None:
        budget = max(0.0, (session.deadline - self.clock()).total_seconds())
        try:
            async with asyncio.timeout(budget):
                report = await self.runner.arun(request)
        except TimeoutError:
            detail = f"exceeded {self.session_timeout:.0f}s deadline"
            report = RunnerReport.failed("timeout", detail)
        except asyncio.CancelledError:
            report = RunnerReport.failed("cancelled")
        except RunnerError as e:
            report = RunnerReport.failed(e.reason, e.detail)
        except Exception as e:
            logger.opt(exception=e).warning(
                "Runner crashed in session '{session}'", session=session.session_id
            )
            report = RunnerReport.failed("crash", f"{type(e).__name__}: {e}")

        self._queue.put_nowait(SessionReport(session.session_id, session.work_item_id, report))

    def _on_task_done(self, session: Session, task: asyncio.Task[None]) -> None:
        # A task cancelled before its first step never reached _worker
        if task.cancelled():
            self._queue.put_nowait(
                SessionReport(
                    session.session_id, session.work_item_id, RunnerReport.failed("cancelled")
                )
            )

    async def poll(self, timeout: float) -> SessionReport | None:
        """Wait up to ``timeout`` seconds for the next report."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=max(0.0, timeout))
        except TimeoutError:
            return None

    def drain(self) -> list[SessionReport]:
        """Reports already queued, without waiting."""
        reports = []
        while not self._queue.empty():
            reports.append(self._queue.get_nowait())
        return reports

    def on_report(self, report: SessionReport) -> Session | None:
        """Ingest a report: destroy its session and free the slot.

        Returns
        -------
        Session | None
            The finished session, or None for a stale report of an unknown
            session (logged and ignored)
        """
        session = self._sessions.pop(report.session_id, None)
        self._tasks.pop(report.session_id, None)
        if session is None:
            logger.warning(
                "Ignoring stale report for unknown session '{session}'",
                session=report.session_id,
            )
            return None
        logger.debug(
            "Session '{session}' reported {status}",
            session=session.session_id,
            status=report.report.status.value,
        )
        return session

    def cancel(self, session_id: str) -> bool:
        """Request cooperative cancellation.

        The worker posts a terminal ``failed`` report with reason
        ``cancelled``; the session stays registered until that report is
        ingested.
        """
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return False
        logger.info("Cancelling session '{session}'", session=session_id)
        task.cancel()
        return True

    async def close(self) -> None:
        """Cancel every worker and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._sessions.clear()
        self.drain()
