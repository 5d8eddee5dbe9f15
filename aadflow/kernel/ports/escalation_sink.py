"""Port interface for the operator channel that receives escalations."""

from __future__ import annotations

from abc import abstractmethod
from typing import Protocol, runtime_checkable

from aadflow.kernel.domain.escalation import EscalationRecord, Resolution


@runtime_checkable
class EscalationSink(Protocol):
    """Where escalations are published and decisions come back from.

    Implementations:

    - **FileEscalationSink**: record files plus a markdown log per block,
      decisions dropped as JSON files into ``resolutions/``
    - **InMemoryEscalationSink**: lists in memory, for tests and embedding
    """

    @abstractmethod
    async def apublish(self, record: EscalationRecord) -> None:
        """Make a newly raised (or newly decided) escalation visible."""
        ...

    @abstractmethod
    async def apoll_resolutions(self) -> list[Resolution]:
        """Return decisions received since the last poll.

        Each decision is returned once.
        """
        ...

    @abstractmethod
    async def anotify_timeout(self, record: EscalationRecord) -> None:
        """Tell the operator that ``record`` has waited too long."""
        ...


__all__ = ["EscalationSink"]
