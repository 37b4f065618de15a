"""Action batching.

Every actionable change becomes one step, except a replace, which becomes two:
a destroy step and a create step. Steps are layered in a single graph:

- forward steps (create, update, the create half of a replace) run after the
  actionable resources they depend on, directly or through unchanged
  intermediaries;
- destroy steps (delete, the destroy half of a replace) run after every stored
  dependent that is being destroyed, so dependents go first;
- a delete also waits for stored dependents that are updated away from it;
- the create half of a replace waits for its own destroy half.

A replaced address therefore appears twice in the batches: its first
occurrence is the destroy half, its second the create half.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from infra_provisioner.engine.errors import CycleError
from infra_provisioner.engine.graph import DependencyGraph
from infra_provisioner.engine.types import FORWARD_ACTIONS, Action

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from infra_provisioner.core.state import StateRecord
    from infra_provisioner.engine.types import ResourceChange

logger = logging.getLogger(__name__)


def _transitive(start: Sequence[str], edges: Mapping[str, Sequence[str]]) -> set[str]:
    seen: set[str] = set()
    stack = list(start)
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(edges.get(node, ()))
    return seen


def _destroy_step(address: str) -> str:
    return f"{address}#destroy"


class Planner:
    """Turn classified changes into ordered batches.

    Sets ``wait_for`` on every actionable change (the addresses it must not
    outrun) and ``destroy_wait_for`` on replaces (the same, for the destroy
    half), and returns the batches as lists of addresses.
    """

    def __init__(self, priorities: Mapping[str, int] | None = None) -> None:
        self._priorities = dict(priorities or {})

    def batches(
        self,
        changes: Sequence[ResourceChange],
        records: Mapping[str, StateRecord],
    ) -> list[list[str]]:
        forward = {c.address: c for c in changes if c.action in FORWARD_ACTIONS}
        deletes = {c.address: c for c in changes if c.action == Action.DELETE}
        replaces = {a for a, c in forward.items() if c.action == Action.REPLACE}
        destroyed = deletes.keys() | replaces

        # Desired edges for every non-delete change, including no-ops, so that
        # ordering propagates through unchanged resources.
        desired_edges = {c.address: c.dependencies for c in changes if c.action != Action.DELETE}
        for change in forward.values():
            reachable = _transitive(change.dependencies, desired_edges)
            change.wait_for = sorted(reachable & forward.keys())

        stored_dependents: dict[str, set[str]] = {}
        for addr, record in records.items():
            for dep in record.dependencies:
                stored_dependents.setdefault(dep, set()).add(addr)

        # step id -> address, and step id -> step ids it waits for
        steps: dict[str, str] = {}
        edges: dict[str, set[str]] = {}
        for addr, change in forward.items():
            steps[addr] = addr
            edges[addr] = set(change.wait_for)
            if addr in replaces:
                edges[addr].add(_destroy_step(addr))

        for addr in sorted(destroyed):
            dependents = stored_dependents.get(addr, set())
            step = addr if addr in deletes else _destroy_step(addr)
            steps[step] = addr
            edges[step] = {a if a in deletes else _destroy_step(a) for a in dependents & destroyed}
            waits = dependents & destroyed
            if addr in deletes:
                # Dependents updated away from a deleted resource move first. A
                # replaced resource cannot wait for them: their update needs
                # its new id.
                moved = {
                    a for a in dependents if a in forward and forward[a].action == Action.UPDATE
                }
                edges[step] |= moved
                waits |= moved
                deletes[addr].wait_for = sorted(waits)
            else:
                forward[addr].destroy_wait_for = sorted(waits)

        priorities = {step: self._priorities.get(addr, 0) for step, addr in steps.items()}
        try:
            layers = DependencyGraph(steps, edges, priorities=priorities).layers()
        except CycleError as exc:
            raise CycleError(sorted({steps[s] for s in exc.addresses})) from exc
        batches = [[steps[step] for step in layer] for layer in layers]
        logger.debug(
            "Planned %d batches (%d forward, %d destroy steps)",
            len(batches),
            len(forward),
            len(destroyed),
        )
        return batches
