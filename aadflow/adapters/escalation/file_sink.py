"""File based escalation sink.

Layout under ``base_dir``::

    records/<block_id>.json                  latest version of each record
    logs/<timestamp>_<session_id>.md         human readable log, one per escalation
    resolutions/<anything>.json              decisions waiting to be applied
    resolutions/processed/                   consumed decisions
    resolutions/invalid/                     decisions that could not be parsed

A resolution file holds a :class:`~aadflow.kernel.domain.escalation.Resolution`
document, e.g. ``{"block_id": "A-esc-001", "resolution_payload": {"answer": "x"}}``.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from aadflow.kernel.domain.escalation import EscalationRecord, Resolution
from aadflow.kernel.logging import get_logger
from aadflow.kernel.ports.escalation_sink import EscalationSink

logger = get_logger(__name__)


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class FileEscalationSink(EscalationSink):
    """Publishes escalations as files and picks up decisions from a drop directory.

    Parameters
    ----------
    base_dir : str | Path
        Root directory of the sink, usually ``<state_dir>/escalations``
    """

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.records_dir = self.base_dir / "records"
        self.logs_dir = self.base_dir / "logs"
        self.resolutions_dir = self.base_dir / "resolutions"
        self._log_files: dict[tuple[str, datetime], Path] = {}

    # ------------------------------------------------------------------
    # EscalationSink port
    # ------------------------------------------------------------------

    async def apublish(self, record: EscalationRecord) -> None:
        _write_atomic(
            self.records_dir / f"{record.block_id}.json",
            record.model_dump_json(indent=2),
        )
        log_file = self._log_file(record)
        if not log_file.exists():
            log_file.parent.mkdir(parents=True, exist_ok=True)
            log_file.write_text(self._render_log(record), encoding="utf-8")
        elif not record.is_pending:
            with log_file.open("a", encoding="utf-8") as f:
                f.write(self._render_resolution(record))

    async def apoll_resolutions(self) -> list[Resolution]:
        if not self.resolutions_dir.is_dir():
            return []
        resolutions = []
        for path in sorted(self.resolutions_dir.glob("*.json")):
            try:
                resolution = Resolution.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, PydanticValidationError) as e:
                logger.warning("Invalid resolution file {path}: {error}", path=path, error=e)
                self._archive(path, "invalid")
                continue
            resolutions.append(resolution)
            self._archive(path, "processed")
        return resolutions

    async def anotify_timeout(self, record: EscalationRecord) -> None:
        log_file = self._log_file(record)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as f:
            f.write(
                f"\n## Timeout\n\nNo resolution received as of "
                f"{datetime.now(UTC).isoformat(timespec='seconds')}.\n"
            )

    # ------------------------------------------------------------------
    # Operator helpers
    # ------------------------------------------------------------------

    def list_records(self, pending_only: bool = False) -> list[EscalationRecord]:
        if not self.records_dir.is_dir():
            return []
        records = [
            EscalationRecord.model_validate_json(p.read_text(encoding="utf-8"))
            for p in sorted(self.records_dir.glob("*.json"))
        ]
        if pending_only:
            records = [r for r in records if r.is_pending]
        return sorted(records, key=lambda r: r.raised_at)

    def load_record(self, block_id: str) -> EscalationRecord | None:
        path = self.records_dir / f"{block_id}.json"
        if not path.exists():
            return None
        return EscalationRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def submit_resolution(
        self,
        block_id: str,
        resolution_payload: dict[str, Any] | None = None,
        approved: bool = True,
    ) -> Path:
        """Drop a decision for a running or future orchestrator to pick up."""
        resolution = Resolution(
            block_id=block_id,
            resolution_payload=resolution_payload or {},
            approved=approved,
        )
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
        path = self.resolutions_dir / f"{stamp}_{block_id}.json"
        _write_atomic(path, json.dumps(resolution.model_dump(mode="json"), indent=2))
        return path

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _log_file(self, record: EscalationRecord) -> Path:
        """Log of this escalation; never an older log of a recurring session id."""
        key = (record.block_id, record.raised_at)
        if key not in self._log_files:
            stamp = record.raised_at.strftime("%Y-%m-%d_%H-%M-%S")
            path = self.logs_dir / f"{stamp}_{record.session_id}.md"
            n = 1
            while path.exists() and not self._logs_record(path, record):
                n += 1
                path = self.logs_dir / f"{stamp}_{record.session_id}_{n}.md"
            self._log_files[key] = path
        return self._log_files[key]

    @staticmethod
    def _logs_record(path: Path, record: EscalationRecord) -> bool:
        header = path.read_text(encoding="utf-8").split("## Context", 1)[0]
        return (
            f"**Block ID:** {record.block_id}\n" in header
            and f"**Timestamp:** {record.raised_at.isoformat()}\n" in header
        )

    def _archive(self, path: Path, bucket: str) -> None:
        target_dir = self.resolutions_dir / bucket
        target_dir.mkdir(parents=True, exist_ok=True)
        os.replace(path, target_dir / path.name)

    @staticmethod
    def _render_log(record: EscalationRecord) -> str:
        payload = record.payload.model_dump(mode="json")
        lines = [
            "# Escalation Log",
            "",
            f"**Block ID:** {record.block_id}",
            f"**Session ID:** {record.session_id}",
            f"**Level:** {record.level.emoji} {record.level.name}",
            f"**Kind:** {record.kind.value}",
            f"**Timestamp:** {record.raised_at.isoformat()}",
            "",
            f"**Reason:** {record.reason}",
            "",
            "## Context",
            "",
            f"- **Spec:** {record.work_item_id}",
            f"- **Phase:** {record.phase.value}",
            "",
            "## Payload",
            "",
            "```json",
            json.dumps(payload, indent=2),
            "```",
            "",
        ]
        if record.partial_state:
            lines += [
                "## Partial State",
                "",
                "```json",
                json.dumps(record.partial_state, indent=2, default=str),
                "```",
                "",
            ]
        return "\n".join(lines)

    @staticmethod
    def _render_resolution(record: EscalationRecord) -> str:
        resolved_at = record.resolved_at.isoformat(timespec="seconds") if record.resolved_at else ""
        lines = [
            "",
            f"## Resolution ({record.status.value})",
            "",
            f"**Resolved at:** {resolved_at}",
            "",
            "```json",
            json.dumps(record.resolution_payload or {}, indent=2, default=str),
            "```",
            "",
        ]
        return "\n".join(lines)
