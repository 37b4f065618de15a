"""Resource graph builder.

Turns the desired-state description into an immutable graph of
``ResourceNode``s. Edges come from two sources: explicit ``depends_on``
entries and every ``${kind.name.attr}`` reference found in the attributes.
The resulting graph is validated once, here, so that later phases can rely on
every edge pointing at a declared node and on the graph being acyclic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from infra_provisioner.engine.errors import (
    CycleError,
    DuplicateAddressError,
    UnresolvedReferenceError,
)
from infra_provisioner.engine.graph import DependencyGraph
from infra_provisioner.resources.references import Ref, collect_references, parse_references

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from infra_provisioner.engine.registry import ResourceKindRegistry
    from infra_provisioner.resources.base import Resource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceNode:
    """A desired resource with its references made explicit."""

    address: str
    kind: str
    name: str
    attributes: Mapping[str, Any]
    references: tuple[Ref, ...]
    depends_on: tuple[str, ...]
    raw_attributes: Mapping[str, Any]

    @property
    def dependencies(self) -> tuple[str, ...]:
        """Sorted, de-duplicated addresses this node must wait for."""
        deps = {r.address for r in self.references} | set(self.depends_on)
        deps.discard(self.address)
        return tuple(sorted(deps))


class ResourceGraph:
    """Validated, acyclic graph of desired resources."""

    def __init__(self, nodes: Mapping[str, ResourceNode], priorities: Mapping[str, int]) -> None:
        self._nodes = dict(nodes)
        self._priorities = dict(priorities)
        self._dependents: dict[str, set[str]] = {a: set() for a in self._nodes}
        for addr, node in self._nodes.items():
            for dep in node.dependencies:
                self._dependents[dep].add(addr)

    @property
    def nodes(self) -> dict[str, ResourceNode]:
        return dict(self._nodes)

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, address: str) -> ResourceNode:
        return self._nodes[address]

    def dependencies(self, address: str) -> tuple[str, ...]:
        return self._nodes[address].dependencies

    def dependents(self, address: str) -> list[str]:
        return sorted(self._dependents[address])

    def edges(self) -> list[tuple[str, str]]:
        """All ``(source, target)`` edges: *target* must exist before *source*."""
        return [(a, d) for a, n in sorted(self._nodes.items()) for d in n.dependencies]

    def _dependency_graph(self) -> DependencyGraph:
        return DependencyGraph(
            self._nodes,
            {a: n.dependencies for a, n in self._nodes.items()},
            priorities=self._priorities,
        )

    def topological_order(self) -> list[str]:
        return self._dependency_graph().topological_order()


def find_cycle(dependencies: Mapping[str, Sequence[str]]) -> list[str] | None:
    """Depth-first search with a recursion-stack check.

    Returns the cycle as a path that starts and ends on the same node, or
    ``None`` if the graph is acyclic. Iterative, so long dependency chains
    do not hit the interpreter's recursion limit.
    """
    on_stack: set[str] = set()
    done: set[str] = set()

    for root in sorted(dependencies):
        if root in done:
            continue
        path = [root]
        on_stack.add(root)
        stack = [iter(sorted(dependencies.get(root, ())))]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                node = path.pop()
                on_stack.discard(node)
                done.add(node)
                continue
            if child in on_stack:
                return [*path[path.index(child) :], child]
            if child in done:
                continue
            path.append(child)
            on_stack.add(child)
            stack.append(iter(sorted(dependencies.get(child, ()))))
    return None


def build_graph(
    resources: Iterable[Resource],
    registry: ResourceKindRegistry | None = None,
) -> ResourceGraph:
    """Build and validate the resource graph.

    Raises:
        DuplicateAddressError: Two resources share an address.
        UnknownResourceKindError: A kind has no handler (only with *registry*).
        UnresolvedReferenceError: A reference or ``depends_on`` entry points at
            an undeclared resource, or at an attribute its kind does not expose.
        CycleError: The dependency edges form a cycle.
    """
    declared: dict[str, Resource] = {}
    for r in resources:
        if r.address in declared:
            raise DuplicateAddressError(r.address)
        if registry is not None:
            registry.get(r.kind)
        declared[r.address] = r

    nodes: dict[str, ResourceNode] = {}
    priorities: dict[str, int] = {}
    for addr, r in declared.items():
        attributes = parse_references(r.attributes)
        refs = tuple(collect_references(attributes))
        for ref in refs:
            target = declared.get(ref.address)
            if target is None:
                raise UnresolvedReferenceError(addr, str(ref))
            if registry is not None:
                exposed = registry.get(target.kind).schema.referenceable
                if ref.attribute not in exposed:
                    raise UnresolvedReferenceError(
                        addr, str(ref), detail=f"{target.kind} has no attribute '{ref.attribute}'"
                    )
            if ref.address == addr:
                raise CycleError([addr, addr])
        for dep in r.depends_on:
            if dep not in declared:
                raise UnresolvedReferenceError(addr, dep, detail="depends_on")
            if dep == addr:
                raise CycleError([addr, addr])

        nodes[addr] = ResourceNode(
            address=addr,
            kind=r.kind,
            name=r.name,
            attributes=attributes,
            references=refs,
            depends_on=tuple(r.depends_on),
            raw_attributes=dict(r.attributes),
        )
        if registry is not None:
            priorities[addr] = registry.get(r.kind).schema.plan_priority

    cycle = find_cycle({a: n.dependencies for a, n in nodes.items()})
    if cycle is not None:
        raise CycleError(cycle)

    logger.debug("Built resource graph: %d nodes", len(nodes))
    return ResourceGraph(nodes, priorities)
