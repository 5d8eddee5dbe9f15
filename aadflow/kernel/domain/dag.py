"""DependencyGraph: dependency edges between work items.

The graph stores "item depends on other item" edges, refuses any insertion
that would close a cycle, and sorts items into execution waves.

Cycle detection is an iterative depth-first search with an explicit stack so
that adversarially deep declarations cannot exhaust the interpreter's
recursion limit.
"""

from __future__ import annotations

import sys
from collections import defaultdict, deque
from collections.abc import Iterable, Iterator, Mapping
from enum import Enum, auto

from aadflow.kernel.exceptions import CycleError, ValidationError

_EMPTY: frozenset[str] = frozenset()


class Color(Enum):
    """Colors for DFS cycle detection algorithm."""

    WHITE = auto()  # Unvisited
    GRAY = auto()  # On the explicit stack
    BLACK = auto()  # Completely processed


def _canonical_cycle(cycle: list[str]) -> list[str]:
    """Rotate a closed cycle so it starts at its smallest item id.

    >>> _canonical_cycle(["C", "A", "B", "C"])
    ['A', 'B', 'C', 'A']
    """
    ring = cycle[:-1]
    start = ring.index(min(ring))
    rotated = ring[start:] + ring[:start]
    return rotated + [rotated[0]]


class DependencyGraph:
    """A directed acyclic graph of work item dependencies.

    Provides:
    - Incremental edge insertion with cycle rejection
    - Iterative cycle detection returning the full cycle path
    - Topological sorting into execution waves
    - Dependent lookups used for skip propagation

    Examples
    --------
    >>> graph = DependencyGraph()
    >>> _ = graph.add_edge("B", "A").add_edge("C", "A")
    >>> graph.topological_sort()
    [['A'], ['B', 'C']]
    """

    def __init__(self) -> None:
        self._deps: dict[str, set[str]] = {}  # item -> items it depends on
        self._dependents: defaultdict[str, set[str]] = defaultdict(set)  # item -> dependents

    @classmethod
    def from_declarations(cls, mapping: Mapping[str, Iterable[str]]) -> DependencyGraph:
        """Build a graph from ``{item: dependencies}``, all or nothing.

        Raises
        ------
        ValidationError
            If a dependency names an item missing from the mapping.
        CycleError
            If the declared dependencies contain a cycle.
        """
        graph = cls()
        for item_id in mapping:
            graph.add_node(item_id)
        edges = [(item_id, dep) for item_id, deps in mapping.items() for dep in sorted(deps)]
        for item_id, dep in edges:
            if dep not in mapping:
                raise ValidationError(
                    "dependencies", f"'{item_id}' depends on unknown item '{dep}'"
                )
        graph.add_many(edges)
        return graph

    def add_node(self, item_id: str) -> DependencyGraph:
        """Register an item with no dependencies (no-op if present)."""
        if not item_id:
            raise ValidationError("id", "cannot be empty")
        if item_id not in self._deps:
            self._deps[sys.intern(item_id)] = set()
        return self

    def add_edge(self, item_id: str, depends_on: str) -> DependencyGraph:
        """Insert ``item_id -> depends_on`` and re-validate acyclicity.

        Both endpoints are registered if missing. If the edge would create a
        cycle the graph is left exactly as it was.

        Raises
        ------
        CycleError
            With the full cycle path if the edge would close a cycle.
        """
        if item_id == depends_on:
            raise CycleError([item_id, item_id])

        # The new edge closes a cycle iff item_id is already reachable from depends_on
        if depends_on in self._deps and item_id in self._deps:
            path = self._find_path(depends_on, item_id)
            if path is not None:
                raise CycleError(_canonical_cycle([item_id, *path]))

        self.add_node(item_id)
        self.add_node(depends_on)
        self._deps[item_id].add(depends_on)
        self._dependents[depends_on].add(item_id)
        return self

    def add_many(self, edges: Iterable[tuple[str, str]]) -> DependencyGraph:
        """Insert several edges; on any failure none of them is kept."""
        deps_backup = {k: set(v) for k, v in self._deps.items()}
        dependents_backup = {k: set(v) for k, v in self._dependents.items()}
        try:
            for item_id, depends_on in edges:
                self.add_edge(item_id, depends_on)
        except ValidationError:
            self._deps = deps_backup
            self._dependents = defaultdict(set, dependents_backup)
            raise
        return self

    def remove_edge(self, item_id: str, depends_on: str) -> None:
        """Remove ``item_id -> depends_on`` if present."""
        self._deps.get(item_id, set()).discard(depends_on)
        self._dependents.get(depends_on, set()).discard(item_id)

    def _find_path(self, source: str, target: str) -> list[str] | None:
        """Return a dependency path ``source -> ... -> target`` or None."""
        parents: dict[str, str | None] = {source: None}
        stack = [source]
        while stack:
            node = stack.pop()
            if node == target:
                path = [node]
                while (parent := parents[path[-1]]) is not None:
                    path.append(parent)
                return list(reversed(path))
            for dep in sorted(self._deps.get(node, _EMPTY), reverse=True):
                if dep not in parents:
                    parents[dep] = node
                    stack.append(dep)
        return None

    def detect_cycle(self) -> list[str] | None:
        """Detect a cycle using iterative DFS with three-state coloring.

        Returns
        -------
        list[str] | None
            The cycle path with its first item repeated at the end, rotated to
            start at the smallest item id, or None if the graph is acyclic.
        """
        colors = dict.fromkeys(self._deps, Color.WHITE)

        for root in sorted(self._deps):
            if colors[root] is not Color.WHITE:
                continue

            path: list[str] = [root]
            stack: list[Iterator[str]] = [iter(sorted(self._deps[root]))]
            colors[root] = Color.GRAY

            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    stack.pop()
                    colors[path.pop()] = Color.BLACK
                    continue

                color = colors.get(dep, Color.BLACK)
                if color is Color.GRAY:
                    cycle_start = path.index(dep)
                    return _canonical_cycle(path[cycle_start:] + [dep])
                if color is Color.WHITE:
                    colors[dep] = Color.GRAY
                    path.append(dep)
                    stack.append(iter(sorted(self._deps.get(dep, _EMPTY))))

        return None

    def topological_sort(self) -> list[list[str]]:
        """Group items into waves of mutually independent items.

        Repeatedly collects all items with zero unresolved dependencies,
        removes them and repeats. Each wave is sorted by item id.

        Raises
        ------
        CycleError
            If the graph contains a cycle, naming the exact cycle.

        Examples
        --------
        For ``B -> A``, ``C -> A``, ``D -> B, C``::

            [["A"], ["B", "C"], ["D"]]
        """
        in_degrees = {item: len(deps) for item, deps in self._deps.items()}
        waves: list[list[str]] = []

        while in_degrees:
            current_wave = sorted(item for item, degree in in_degrees.items() if degree == 0)
            if not current_wave:
                cycle = self.detect_cycle()
                raise CycleError(cycle or sorted(in_degrees))

            waves.append(current_wave)
            for item in current_wave:
                del in_degrees[item]
                for dependent in self._dependents.get(item, _EMPTY):
                    if dependent in in_degrees:
                        in_degrees[dependent] -= 1

        return waves

    def dependencies(self, item_id: str) -> frozenset[str]:
        """Items that ``item_id`` depends on."""
        if item_id not in self._deps:
            raise KeyError(f"Item '{item_id}' not found in graph")
        return frozenset(self._deps[item_id])

    def dependents(self, item_id: str) -> frozenset[str]:
        """Items that directly depend on ``item_id``."""
        if item_id not in self._deps:
            raise KeyError(f"Item '{item_id}' not found in graph")
        return frozenset(self._dependents.get(item_id, _EMPTY))

    def transitive_dependents(self, item_id: str) -> list[str]:
        """All items reachable through dependent edges, in BFS order."""
        seen: set[str] = set()
        order: list[str] = []
        queue = deque(sorted(self.dependents(item_id)))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            order.append(node)
            queue.extend(sorted(self._dependents.get(node, _EMPTY) - seen))
        return order

    def exit_items(self, item_ids: Iterable[str]) -> list[str]:
        """Items in ``item_ids`` that no other item of the subset depends on."""
        subset = set(item_ids)
        return sorted(i for i in subset if not (self._dependents.get(i, _EMPTY) & subset))

    def to_mapping(self) -> dict[str, list[str]]:
        """Serializable ``{item: sorted dependencies}`` view."""
        return {item: sorted(deps) for item, deps in self._deps.items()}

    def copy(self) -> DependencyGraph:
        clone = DependencyGraph()
        clone._deps = {k: set(v) for k, v in self._deps.items()}
        clone._dependents = defaultdict(set, {k: set(v) for k, v in self._dependents.items()})
        return clone

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def __iter__(self) -> Iterator[str]:
        return iter(self._deps)

    def __repr__(self) -> str:
        if not self._deps:
            return "DependencyGraph(empty)"
        names = sorted(self._deps)
        shown = ", ".join(names[:5]) + (", ..." if len(names) > 5 else "")
        return f"DependencyGraph({len(names)} items: {shown})"
