"""Tests for change classification."""

from __future__ import annotations

from typing import Any

import pytest

from infra_provisioner.config.registry import default_registry
from infra_provisioner.core.state import StateRecord
from infra_provisioner.engine.builder import build_graph
from infra_provisioner.engine.differ import Differ, _values_differ, current_fingerprint
from infra_provisioner.engine.registry import ResourceKindRegistry
from infra_provisioner.engine.types import Action
from infra_provisioner.resources.base import Resource
from infra_provisioner.resources.references import UNKNOWN, UNKNOWN_VALUE


def _r(kind: str, name: str, **attributes: Any) -> Resource:
    return Resource(kind=kind, name=name, attributes=attributes)


def _record(
    address: str,
    remote_id: str,
    attributes: dict[str, Any],
    *,
    records: dict[str, StateRecord] | None = None,
    dependencies: list[str] | None = None,
) -> StateRecord:
    kind, name = address.split(".", 1)
    deps = dependencies or []
    fingerprint = current_fingerprint(deps, records or {})
    return StateRecord(
        address=address,
        kind=kind,
        name=name,
        remote_id=remote_id,
        attributes=attributes,
        dependencies=deps,
        dependency_fingerprint=fingerprint or "",
    )


def _diff(registry: ResourceKindRegistry, resources: list[Resource], records: dict) -> dict:
    changes = Differ(registry).diff(build_graph(resources, registry), records)
    return {c.address: c for c in changes}


class TestValuesDiffer:
    def test_partial_ignores_extra_prior_keys(self) -> None:
        assert not _values_differ({"a": 1}, {"a": 1, "b": 2})
        assert _values_differ({"a": 1}, {"a": 2})

    def test_exact_sees_extra_keys(self) -> None:
        assert _values_differ({"a": 1}, {"a": 1, "b": 2}, strategy="exact")

    def test_set_ignores_order(self) -> None:
        assert not _values_differ([{"x": 1}, {"y": 2}], [{"y": 2}, {"x": 1}], strategy="set")
        assert _values_differ(["a"], ["a", "b"], strategy="set")

    def test_unknown_always_differs(self) -> None:
        assert _values_differ(UNKNOWN, "anything")


class TestClassification:
    def test_create_when_not_in_state(self, registry: ResourceKindRegistry) -> None:
        changes = _diff(registry, [_r("net", "vpc", label="vpc")], {})
        change = changes["net.vpc"]
        assert change.action == Action.CREATE
        assert change.planned == {"label": "vpc"}
        assert change.desired == {"label": "vpc"}

    def test_noop_when_equal(self, registry: ResourceKindRegistry) -> None:
        records = {"net.vpc": _record("net.vpc", "net-1", {"label": "vpc", "arn": "arn:1"})}
        changes = _diff(registry, [_r("net", "vpc", label="vpc")], records)
        assert changes["net.vpc"].action == Action.NOOP

    def test_update_for_updatable_attribute(self, registry: ResourceKindRegistry) -> None:
        records = {"net.vpc": _record("net.vpc", "net-1", {"label": "vpc", "size": 1})}
        change = _diff(registry, [_r("net", "vpc", label="vpc", size=2)], records)["net.vpc"]
        assert change.action == Action.UPDATE
        assert change.diff == {"size": {"from": 1, "to": 2}}
        assert change.requires_replace == []

    def test_replace_for_replace_only_attribute(self, registry: ResourceKindRegistry) -> None:
        records = {"net.vpc": _record("net.vpc", "net-1", {"label": "vpc", "zone": "a"})}
        change = _diff(
            registry, [_r("net", "vpc", label="vpc", zone="b", size=3)], records
        )["net.vpc"]
        assert change.action == Action.REPLACE
        assert change.requires_replace == ["zone"]
        assert set(change.diff) == {"zone", "size"}

    def test_set_comparison_from_schema(self, registry: ResourceKindRegistry) -> None:
        records = {"net.vpc": _record("net.vpc", "net-1", {"label": "vpc", "peers": ["a", "b"]})}
        change = _diff(registry, [_r("net", "vpc", label="vpc", peers=["b", "a"])], records)
        assert change["net.vpc"].action == Action.NOOP

    def test_dropped_attribute_resets_to_default(self, registry: ResourceKindRegistry) -> None:
        records = {
            "net.vpc": _record("net.vpc", "net-1", {"label": "vpc", "tags": {"env": "prod"}})
        }
        change = _diff(registry, [_r("net", "vpc", label="vpc")], records)["net.vpc"]
        assert change.action == Action.UPDATE
        assert change.diff == {"tags": {"from": {"env": "prod"}, "to": {}}}

    def test_dropped_attribute_already_at_default(self, registry: ResourceKindRegistry) -> None:
        records = {
            "net.a": _record("net.a", "net-1", {"label": "a", "tags": {}, "peers": []}),
            "net.b": _record("net.b", "net-2", {"label": "b"}),
        }
        changes = _diff(registry, [_r("net", "a", label="a"), _r("net", "b", label="b")], records)
        assert changes["net.a"].action == Action.NOOP
        assert changes["net.b"].action == Action.NOOP

    def test_dropped_attribute_without_default_is_kept(
        self, registry: ResourceKindRegistry
    ) -> None:
        records = {"net.vpc": _record("net.vpc", "net-1", {"label": "vpc", "size": 3})}
        change = _diff(registry, [_r("net", "vpc", label="vpc")], records)["net.vpc"]
        assert change.action == Action.NOOP

    def test_delete_when_only_in_state(self, registry: ResourceKindRegistry) -> None:
        records = {"net.old": _record("net.old", "net-9", {"label": "old"})}
        change = _diff(registry, [], records)["net.old"]
        assert change.action == Action.DELETE
        assert change.prior_id == "net-9"


class TestReferences:
    def test_reference_to_created_resource_is_unknown(
        self, registry: ResourceKindRegistry
    ) -> None:
        changes = _diff(
            registry,
            [
                _r("net", "vpc", label="vpc"),
                _r("app", "web", label="web", parent_id="${net.vpc.id}"),
            ],
            {},
        )
        assert changes["app.web"].action == Action.CREATE
        assert changes["app.web"].planned["parent_id"] == UNKNOWN_VALUE
        assert changes["app.web"].desired["parent_id"] == "${net.vpc.id}"

    def test_reference_resolves_from_state(self, registry: ResourceKindRegistry) -> None:
        vpc = _record("net.vpc", "net-1", {"label": "vpc"})
        records = {"net.vpc": vpc}
        records["app.web"] = _record(
            "app.web",
            "app-2",
            {"label": "web", "parent_id": "net-1"},
            records=records,
            dependencies=["net.vpc"],
        )
        changes = _diff(
            registry,
            [
                _r("net", "vpc", label="vpc"),
                _r("app", "web", label="web", parent_id="${net.vpc.id}"),
            ],
            records,
        )
        assert changes["app.web"].action == Action.NOOP

    def test_replaced_target_forces_replace_of_dependent(
        self, registry: ResourceKindRegistry
    ) -> None:
        records = {"net.vpc": _record("net.vpc", "net-1", {"label": "vpc", "zone": "a"})}
        records["app.web"] = _record(
            "app.web",
            "app-2",
            {"label": "web", "parent_id": "net-1"},
            records=records,
            dependencies=["net.vpc"],
        )
        changes = _diff(
            registry,
            [
                _r("net", "vpc", label="vpc", zone="b"),
                _r("app", "web", label="web", parent_id="${net.vpc.id}"),
            ],
            records,
        )
        assert changes["net.vpc"].action == Action.REPLACE
        assert changes["app.web"].action == Action.REPLACE
        assert changes["app.web"].diff["parent_id"] == {"from": "net-1", "to": UNKNOWN_VALUE}

    def test_updated_target_propagates_planned_value(
        self, registry: ResourceKindRegistry
    ) -> None:
        records = {"net.vpc": _record("net.vpc", "net-1", {"label": "vpc", "size": 1})}
        records["app.web"] = _record(
            "app.web",
            "app-2",
            {"label": "web", "size": 1},
            records=records,
            dependencies=["net.vpc"],
        )
        changes = _diff(
            registry,
            [
                _r("net", "vpc", label="vpc", size=2),
                _r("app", "web", label="web", size="${net.vpc.size}"),
            ],
            records,
        )
        assert changes["app.web"].action == Action.UPDATE
        assert changes["app.web"].diff == {"size": {"from": 1, "to": 2}}

    @pytest.mark.parametrize("extra_dep", [True, False])
    def test_dependency_set_change_is_state_only_update(
        self, registry: ResourceKindRegistry, extra_dep: bool
    ) -> None:
        records = {
            "net.a": _record("net.a", "net-1", {"label": "a"}),
            "net.b": _record("net.b", "net-2", {"label": "b"}),
        }
        stored_deps = ["net.a", "net.b"] if extra_dep else ["net.a"]
        records["app.web"] = _record(
            "app.web", "app-3", {"label": "web"}, records=records, dependencies=stored_deps
        )
        resource = Resource(
            kind="app",
            name="web",
            attributes={"label": "web"},
            depends_on=["net.a"] if extra_dep else ["net.a", "net.b"],
        )
        changes = _diff(
            registry,
            [_r("net", "a", label="a"), _r("net", "b", label="b"), resource],
            records,
        )
        change = changes["app.web"]
        assert change.action == Action.UPDATE
        assert change.diff is None


class TestAwsDefaults:
    def test_dropped_subnet_settings_are_reset(self) -> None:
        registry = default_registry()
        records = {
            "aws_subnet.pub": _record(
                "aws_subnet.pub",
                "subnet-1",
                {
                    "vpc_id": "vpc-1",
                    "cidr_block": "10.0.1.0/24",
                    "availability_zone": "eu-west-1a",
                    "map_public_ip_on_launch": True,
                    "tags": {"Name": "pub"},
                },
            )
        }
        desired = [_r("aws_subnet", "pub", vpc_id="vpc-1", cidr_block="10.0.1.0/24")]

        change = _diff(registry, desired, records)["aws_subnet.pub"]

        # The provider-chosen zone has no default and is left alone.
        assert change.action == Action.UPDATE
        assert change.diff == {
            "map_public_ip_on_launch": {"from": True, "to": False},
            "tags": {"from": {"Name": "pub"}, "to": {}},
        }
