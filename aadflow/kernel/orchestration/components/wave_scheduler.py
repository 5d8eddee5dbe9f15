"""Wave scheduler: decides which work items may start next.

Readiness is re-evaluated after every processed report rather than at fixed
wave boundaries, so an item starts as soon as its last dependency completes
and a slot is free.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime

from aadflow.kernel.domain.dag import DependencyGraph
from aadflow.kernel.domain.work_item import WorkItem, WorkItemStatus
from aadflow.kernel.logging import get_logger

__all__ = ["WaveScheduler"]

logger = get_logger(__name__)

_SCHEDULABLE = (WorkItemStatus.PENDING, WorkItemStatus.READY)


class WaveScheduler:
    """Selects ready work items under a concurrency cap.

    Excess ready items wait in FIFO order of registration (``seq``).

    Parameters
    ----------
    max_concurrent : int
        Maximum number of running items

    Examples
    --------
    Basic usage::

        scheduler = WaveScheduler(max_concurrent=2)
        scheduler.promote_ready(graph, items)
        for item in scheduler.next_wave(graph, items, running_count=0, now=now):
            ...
    """

    def __init__(self, max_concurrent: int) -> None:
        self.max_concurrent = max_concurrent

    @staticmethod
    def dependencies_met(
        graph: DependencyGraph, items: Mapping[str, WorkItem], item_id: str
    ) -> bool:
        """Whether every dependency of ``item_id`` is completed."""
        return all(
            items[dep].status == WorkItemStatus.COMPLETED for dep in graph.dependencies(item_id)
        )

    def promote_ready(
        self, graph: DependencyGraph, items: Mapping[str, WorkItem]
    ) -> list[WorkItem]:
        """Move pending items whose dependencies all completed to ``ready``.

        Returns
        -------
        list[WorkItem]
            The promoted items, in registration order
        """
        promoted = []
        for item in sorted(items.values(), key=lambda i: i.seq):
            if item.status == WorkItemStatus.PENDING and self.dependencies_met(
                graph, items, item.id
            ):
                item.transition(WorkItemStatus.READY)
                logger.debug("Work item '{item}' is ready", item=item.id)
                promoted.append(item)
        return promoted

    def next_wave(
        self,
        graph: DependencyGraph,
        items: Mapping[str, WorkItem],
        running_count: int,
        now: datetime,
        paused: bool = False,
    ) -> list[WorkItem]:
        """Items that may start now, capped at ``max_concurrent - running_count``.

        Parameters
        ----------
        graph : DependencyGraph
            Current dependency graph
        items : Mapping[str, WorkItem]
            All work items keyed by id
        running_count : int
            Items currently running
        now : datetime
            Current time, compared against retry backoff (``not_before``)
        paused : bool
            True while a critical escalation is pending; nothing starts

        Returns
        -------
        list[WorkItem]
            Items to start, oldest registration first. Statuses are unchanged.
        """
        slots = self.max_concurrent - running_count
        if paused or slots <= 0:
            return []

        candidates = [
            item
            for item in items.values()
            if item.status in _SCHEDULABLE
            and (item.not_before is None or item.not_before <= now)
            and self.dependencies_met(graph, items, item.id)
        ]
        candidates.sort(key=lambda item: item.seq)
        return candidates[:slots]

    def next_wakeup(self, items: Mapping[str, WorkItem]) -> datetime | None:
        """Earliest pending retry backoff expiry, if any."""
        times = [
            item.not_before
            for item in items.values()
            if item.status in _SCHEDULABLE and item.not_before is not None
        ]
        return min(times, default=None)

    def plan(
        self, graph: DependencyGraph, items: Mapping[str, WorkItem] | None = None
    ) -> list[list[str]]:
        """Static wave plan for a dry run.

        Items already in a terminal status are left out, so a resumed run only
        shows the remaining work.
        """
        if items is None:
            return graph.topological_sort()
        remaining = {item_id for item_id, item in items.items() if not item.is_terminal}
        waves = [[i for i in wave if i in remaining] for wave in graph.topological_sort()]
        return [wave for wave in waves if wave]
