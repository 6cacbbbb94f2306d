"""Adjacency-list DAG used for cycle detection, ordering and reachability."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from heapq import heapify, heappop, heappush


class CycleError(ValueError):
    """Raised when the dependency graph is not acyclic."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        self.cycles = tuple(tuple(path) for path in cycles)
        if not self.cycles:
            message = "Graph contains cycles"
        else:
            rendered = ", ".join(" -> ".join(path) for path in self.cycles[:3])
            more = "..." if len(self.cycles) > 3 else ""
            message = f"Graph contains cycles: {rendered}{more}"
        super().__init__(message)


class TaskGraph:
    """Directed graph over node ids with deterministic (sorted) traversal."""

    __slots__ = ("_nodes", "_children", "_parents")

    def __init__(
        self,
        nodes: Iterable[str] = (),
        edges: Iterable[tuple[str, str]] = (),
    ) -> None:
        self._nodes: set[str] = set()
        self._children: dict[str, set[str]] = {}
        self._parents: dict[str, set[str]] = {}
        for node_id in nodes:
            self.add_node(node_id)
        for parent, child in edges:
            self.add_edge(parent, child)

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._nodes))

    def add_node(self, node_id: str) -> None:
        if not node_id:
            raise ValueError("node id must be non-empty")
        if node_id not in self._nodes:
            self._nodes.add(node_id)
            self._children[node_id] = set()
            self._parents[node_id] = set()

    def add_edge(self, parent: str, child: str) -> None:
        self.add_node(parent)
        self.add_node(child)
        self._children[parent].add(child)
        self._parents[child].add(parent)

    def parents(self, node_id: str) -> tuple[str, ...]:
        self._require(node_id)
        return tuple(sorted(self._parents[node_id]))

    def children(self, node_id: str) -> tuple[str, ...]:
        self._require(node_id)
        return tuple(sorted(self._children[node_id]))

    def roots(self) -> tuple[str, ...]:
        """Nodes with no predecessors."""
        return tuple(node for node in sorted(self._nodes) if not self._parents[node])

    def topological_sort(self) -> tuple[str, ...]:
        """Kahn's algorithm with a min-heap so ties resolve lexicographically."""
        remaining = {node: len(self._parents[node]) for node in self._nodes}
        ready = [node for node, count in remaining.items() if count == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            node = heappop(ready)
            order.append(node)
            for child in self._children[node]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heappush(ready, child)

        if len(order) != len(self._nodes):
            raise CycleError(self.detect_cycles())
        return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Return closed cycle paths such as ``("a", "b", "a")``, rotated to start at the min id."""
        on_stack: dict[str, int] = {}
        done: set[str] = set()
        path: list[str] = []
        found: set[tuple[str, ...]] = set()

        for start in sorted(self._nodes):
            if start in done:
                continue
            on_stack[start] = 0
            path.append(start)
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(self._children[start])))]
            while frames:
                node, pending = frames[-1]
                child = next(pending, None)
                if child is None:
                    frames.pop()
                    path.pop()
                    del on_stack[node]
                    done.add(node)
                    continue
                if child in on_stack:
                    found.add(_rotate_cycle(path[on_stack[child] :]))
                elif child not in done:
                    on_stack[child] = len(path)
                    path.append(child)
                    frames.append((child, iter(sorted(self._children[child]))))

        return tuple(sorted(found))

    def reachable_from(self, start: str) -> frozenset[str]:
        """All nodes reachable from ``start``, including ``start`` itself."""
        self._require(start)
        seen = {start}
        frontier = [start]
        while frontier:
            node = frontier.pop()
            for child in self._children[node]:
                if child not in seen:
                    seen.add(child)
                    frontier.append(child)
        return frozenset(seen)

    def ancestors(self, node_id: str) -> tuple[str, ...]:
        self._require(node_id)
        seen: set[str] = set()
        frontier = list(self._parents[node_id])
        while frontier:
            node = frontier.pop()
            if node not in seen:
                seen.add(node)
                frontier.extend(self._parents[node])
        return tuple(sorted(seen))

    def _require(self, node_id: str) -> None:
        if node_id not in self._nodes:
            raise KeyError(f"unknown node: {node_id}")


def _rotate_cycle(core: Sequence[str]) -> tuple[str, ...]:
    members = tuple(core)
    pivot = members.index(min(members))
    rotated = members[pivot:] + members[:pivot]
    return rotated + (rotated[0],)


__all__ = ["CycleError", "TaskGraph"]
