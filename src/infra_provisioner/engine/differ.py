"""Desired graph vs. stored state comparison."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from infra_provisioner.core.state import compute_dependency_fingerprint
from infra_provisioner.engine.types import Action, ResourceChange
from infra_provisioner.resources.references import UNKNOWN, Ref, render, resolve_references

if TYPE_CHECKING:
    from collections.abc import Mapping

    from infra_provisioner.core.state import StateRecord
    from infra_provisioner.engine.builder import ResourceGraph, ResourceNode
    from infra_provisioner.engine.registry import ResourceKindRegistry
    from infra_provisioner.resources.schema import CompareStrategy

logger = logging.getLogger(__name__)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _values_differ(
    desired: Any,
    prior: Any,
    *,
    strategy: CompareStrategy | None = None,
) -> bool:
    """Check whether a desired value differs from the prior (stored) value.

    Comparison semantics depend on *strategy*:

    - ``strategy="set"``:
      - If both values are lists, they are compared as sets (order-insensitive).
        Unhashable items (e.g. dicts) are compared by canonical JSON.
      - Other types fall back to strict equality.
    - ``strategy="exact"``:
      - Values are compared with strict equality.
      - For dicts, extra or missing keys are treated as differences.
    - ``strategy=None`` or ``"partial"``:
      - For dict values, only keys present in *desired* are compared.
      - Extra keys present only in *prior* (provider-added defaults) are ignored.
      - Non-dict values use strict equality.

    ``UNKNOWN`` always differs.
    """
    if desired is UNKNOWN:
        return True

    if strategy == "set":
        if isinstance(desired, list) and isinstance(prior, list):
            return {_canonical(v) for v in desired} != {_canonical(v) for v in prior}
        return desired != prior

    if strategy == "exact":
        return desired != prior

    if isinstance(desired, dict) and isinstance(prior, dict):
        return any(_values_differ(v, prior.get(k), strategy="partial") for k, v in desired.items())
    return desired != prior


def current_fingerprint(deps: list[str], records: Mapping[str, StateRecord]) -> str | None:
    """Fingerprint of *deps* from committed records, or None if any is missing."""
    ids: dict[str, str] = {}
    for dep in deps:
        record = records.get(dep)
        if record is None:
            return None
        ids[dep] = record.remote_id
    return compute_dependency_fingerprint(ids)


def _has_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(_has_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(_has_unknown(v) for v in value)
    return False


class Differ:
    """Classify every resource as create, update, replace, delete or no-op.

    Resources are visited in dependency order so that each reference can be
    resolved against the outcome already decided for its target: a target
    being created or replaced yields ``UNKNOWN``; a target being updated
    yields its planned value; otherwise the stored value is used.
    """

    def __init__(self, registry: ResourceKindRegistry) -> None:
        self._registry = registry

    def diff(
        self, graph: ResourceGraph, records: Mapping[str, StateRecord]
    ) -> list[ResourceChange]:
        actions: dict[str, Action] = {}
        resolved: dict[str, dict[str, Any]] = {}
        changes: list[ResourceChange] = []

        def lookup(ref: Ref) -> Any:
            action = actions[ref.address]
            if action in (Action.CREATE, Action.REPLACE):
                return UNKNOWN
            record = records[ref.address]
            if ref.attribute == "id":
                return record.remote_id
            planned = resolved[ref.address]
            if action == Action.UPDATE and ref.attribute in planned:
                return planned[ref.attribute]
            return record.attributes.get(ref.attribute, UNKNOWN)

        for addr in graph.topological_order():
            node = graph.node(addr)
            planned = resolve_references(dict(node.attributes), lookup)
            resolved[addr] = planned
            change = self._classify(node, planned, records, actions)
            actions[addr] = change.action
            changes.append(change)

        for addr in sorted(set(records) - set(graph.nodes)):
            changes.append(self.delete_change(records[addr]))
        return changes

    def delete_change(self, record: StateRecord) -> ResourceChange:
        self._registry.get(record.kind)  # fail early if unknown
        logger.debug("Classified %s as delete", record.address)
        return ResourceChange(
            address=record.address,
            kind=record.kind,
            action=Action.DELETE,
            prior=dict(record.attributes),
            dependencies=list(record.dependencies),
            prior_id=record.remote_id,
            prior_fingerprint=record.dependency_fingerprint,
        )

    def _classify(
        self,
        node: ResourceNode,
        planned: dict[str, Any],
        records: Mapping[str, StateRecord],
        actions: Mapping[str, Action],
    ) -> ResourceChange:
        schema = self._registry.get(node.kind).schema
        record = records.get(node.address)
        deps = list(node.dependencies)
        base: dict[str, Any] = {
            "address": node.address,
            "kind": node.kind,
            "desired": dict(node.raw_attributes),
            "planned": render(planned),
            "dependencies": deps,
        }

        if record is None:
            logger.debug("Classified %s as create", node.address)
            return ResourceChange(action=Action.CREATE, **base)

        prior = dict(record.attributes)
        diff = {
            k: {"from": prior.get(k), "to": v}
            for k, v in planned.items()
            if _has_unknown(v) or _values_differ(v, prior.get(k), strategy=schema.compare.get(k))
        }
        # Dropped attributes with a known default are reset to it.
        for k in sorted(schema.defaults.keys() - planned.keys()):
            default = schema.defaults[k]
            strategy = "set" if schema.compare.get(k) == "set" else "exact"
            if k in prior and _values_differ(default, prior[k], strategy=strategy):
                diff[k] = {"from": prior[k], "to": default}
        requires_replace = sorted(k for k in diff if schema.requires_replace(k))

        if requires_replace:
            action = Action.REPLACE
        elif diff:
            action = Action.UPDATE
        elif self._dependencies_changed(deps, record, actions, records):
            # Only the dependency set or their ids moved: state-only update.
            action = Action.UPDATE
        else:
            action = Action.NOOP

        logger.debug("Classified %s as %s", node.address, action.value)
        return ResourceChange(
            action=action,
            prior=prior,
            diff=render(diff) if diff else None,
            requires_replace=requires_replace,
            prior_id=record.remote_id,
            prior_fingerprint=record.dependency_fingerprint,
            **base,
        )

    @staticmethod
    def _dependencies_changed(
        deps: list[str],
        record: StateRecord,
        actions: Mapping[str, Action],
        records: Mapping[str, StateRecord],
    ) -> bool:
        if sorted(record.dependencies) != deps:
            return True
        if any(actions.get(d) in (Action.CREATE, Action.REPLACE) for d in deps):
            return True
        return current_fingerprint(deps, records) != record.dependency_fingerprint
