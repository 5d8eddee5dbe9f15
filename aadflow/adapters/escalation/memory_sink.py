"""In-memory escalation sink for tests and embedding."""

from __future__ import annotations

from collections import deque
from typing import Any

from aadflow.kernel.domain.escalation import EscalationRecord, Resolution
from aadflow.kernel.ports.escalation_sink import EscalationSink


class InMemoryEscalationSink(EscalationSink):
    """Keeps published records in memory and hands out queued decisions.

    Examples
    --------
    Example usage::

        sink = InMemoryEscalationSink()
        sink.submit("A-esc-001", {"answer": "postgres"})
    """

    def __init__(self) -> None:
        self.published: list[EscalationRecord] = []
        self.timeouts: list[EscalationRecord] = []
        self._pending: deque[Resolution] = deque()

    async def apublish(self, record: EscalationRecord) -> None:
        self.published.append(record)

    async def apoll_resolutions(self) -> list[Resolution]:
        resolutions = list(self._pending)
        self._pending.clear()
        return resolutions

    async def anotify_timeout(self, record: EscalationRecord) -> None:
        self.timeouts.append(record)

    # Testing utilities (not part of the EscalationSink port interface)
    def submit(
        self,
        block_id: str,
        resolution_payload: dict[str, Any] | None = None,
        approved: bool = True,
    ) -> None:
        self._pending.append(
            Resolution(
                block_id=block_id,
                resolution_payload=resolution_payload or {},
                approved=approved,
            )
        )

    def latest(self, block_id: str) -> EscalationRecord | None:
        """Most recently published version of a record."""
        return next((r for r in reversed(self.published) if r.block_id == block_id), None)
