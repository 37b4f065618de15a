"""Dependency graph utilities."""

from __future__ import annotations

import heapq
from typing import TYPE_CHECKING

from infra_provisioner.engine.errors import CycleError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class DependencyGraph:
    """A directed graph where nodes depend on other nodes."""

    def __init__(
        self,
        nodes: Iterable[str],
        dependencies: Mapping[str, Iterable[str]],
        priorities: Mapping[str, int] | None = None,
    ) -> None:
        self._nodes = set(nodes)
        self._priorities = priorities or {}
        # node -> filtered deps within graph
        self._deps: dict[str, set[str]] = {}
        for node in self._nodes:
            deps = set(dependencies.get(node, []))
            self._deps[node] = {d for d in deps if d in self._nodes}

    def _indegrees(self) -> tuple[dict[str, int], dict[str, set[str]]]:
        indegree: dict[str, int] = dict.fromkeys(self._nodes, 0)
        dependents: dict[str, set[str]] = {n: set() for n in self._nodes}
        for node, deps in self._deps.items():
            indegree[node] = len(deps)
            for dep in deps:
                dependents[dep].add(node)
        return indegree, dependents

    def _sort_key(self, node: str) -> tuple[int, str]:
        return (self._priorities.get(node, 0), node)

    def topological_order(self) -> list[str]:
        """Return deterministic topo order (priority, then lexicographic tie-break)."""
        indegree, dependents = self._indegrees()

        ready = [self._sort_key(n) for n, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for child in sorted(dependents[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, self._sort_key(child))

        if len(order) != len(self._nodes):
            remaining = sorted(self._nodes - set(order))
            raise CycleError(remaining)

        return order

    def layers(self) -> list[list[str]]:
        """Layered Kahn sort: each layer only depends on earlier layers.

        Nodes within a layer have no edges between them. Layers are sorted by
        (priority, name) for deterministic output.
        """
        indegree, dependents = self._indegrees()

        current = sorted((n for n, deg in indegree.items() if deg == 0), key=self._sort_key)
        layers: list[list[str]] = []
        placed = 0
        while current:
            layers.append(current)
            placed += len(current)
            ready: list[str] = []
            for node in current:
                for child in dependents[node]:
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        ready.append(child)
            current = sorted(ready, key=self._sort_key)

        if placed != len(self._nodes):
            remaining = sorted(n for n, deg in indegree.items() if deg > 0)
            raise CycleError(remaining)

        return layers
