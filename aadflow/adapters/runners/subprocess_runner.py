"""Runner that executes each session as an external worker process.

Protocol
--------
The request is written to the worker's stdin as one JSON document. The worker
prints its report as JSON on the last non-empty line of stdout::

    {"status": "completed"}
    {"status": "failed", "reason": "tests", "detail": "3 failing"}
    {"status": "escalate", "partial_state": {...},
     "escalation": {"kind": "question", "payload": {"question": "Which DB?"}}}

The report is also kept under ``<state_dir>/sessions/<session_id>/report.json``
so a resumed run can recover sessions that finished while the orchestrator
was down. Workers may write that file themselves; its path is passed in the
``AADFLOW_REPORT_FILE`` environment variable.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from contextlib import suppress
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from aadflow.kernel.domain.session import Session
from aadflow.kernel.exceptions import ConfigurationError, RunnerError
from aadflow.kernel.logging import get_logger
from aadflow.kernel.ports.runner import Runner, RunnerReport, RunRequest

logger = get_logger(__name__)

_STDERR_TAIL = 2000


class SubprocessRunner(Runner):
    """Runs ``command`` once per session.

    Parameters
    ----------
    command : Sequence[str]
        Worker argument vector
    state_dir : str | Path
        Directory under which session report files are kept
    env : Mapping[str, str] | None
        Extra environment variables for the worker
    cwd : str | Path | None
        Working directory of the worker
    """

    def __init__(
        self,
        command: Sequence[str],
        state_dir: str | Path,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
    ) -> None:
        if not command:
            raise ConfigurationError("runner", "no worker command configured")
        self.command = list(command)
        self.state_dir = Path(state_dir)
        self.env = dict(env or {})
        self.cwd = Path(cwd) if cwd else None

    def report_path(self, session_id: str) -> Path:
        return self.state_dir / "sessions" / session_id / "report.json"

    async def arun(self, request: RunRequest) -> RunnerReport:
        report_path = self.report_path(request.session_id)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        env = {
            **os.environ,
            **self.env,
            "AADFLOW_SESSION_ID": request.session_id,
            "AADFLOW_WORK_ITEM": request.work_item_id,
            "AADFLOW_PHASE": request.phase.value,
            "AADFLOW_REPORT_FILE": str(report_path),
        }

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd,
            )
        except OSError as e:
            raise RunnerError("spawn", f"{self.command[0]}: {e}") from e

        logger.debug(
            "Worker pid {pid} running session '{session}'",
            pid=process.pid,
            session=request.session_id,
        )
        try:
            stdout, stderr = await process.communicate(request.model_dump_json().encode())
        except asyncio.CancelledError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise

        report = self._parse_report(stdout.decode(errors="replace"))
        if report is None:
            tail = stderr.decode(errors="replace")[-_STDERR_TAIL:].strip()
            reason = "exit_code" if process.returncode else "invalid_report"
            raise RunnerError(reason, f"worker exited with {process.returncode}: {tail}")

        report_path.write_text(report.model_dump_json(), encoding="utf-8")
        return report

    @staticmethod
    def _parse_report(stdout: str) -> RunnerReport | None:
        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not lines:
            return None
        try:
            return RunnerReport.model_validate_json(lines[-1])
        except PydanticValidationError as e:
            logger.warning("Unparseable worker report: {error}", error=e)
            return None

    async def arecover(self, session: Session) -> RunnerReport | None:
        path = self.report_path(session.session_id)
        if not path.exists():
            return None
        try:
            return RunnerReport.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as e:
            logger.warning("Ignoring unreadable report file {path}: {error}", path=path, error=e)
            return None
