"""End-to-end plan/apply/destroy tests against the in-memory handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from infra_provisioner.core.state import State
from infra_provisioner.engine.errors import (
    CycleError,
    EngineError,
    StalePlanError,
    StateLockError,
    TransientError,
    UnresolvedReferenceError,
    ValidationError,
)
from infra_provisioner.engine.lock import StateLock
from infra_provisioner.engine.types import Action, OutcomeStatus, Plan
from infra_provisioner.resources.base import Resource
from infra_provisioner.resources.references import UNKNOWN_VALUE

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from conftest import FakeCloud

    from infra_provisioner.engine import ReconcileEngine
    from infra_provisioner.engine.registry import ResourceKindRegistry


def _res(kind: str, name: str, **attributes: Any) -> Resource:
    return Resource(kind=kind, name=name, attributes={"label": name, **attributes})


def _network() -> list[Resource]:
    return [
        _res("net", "vpc", size=1),
        _res("app", "s1", parent_id="${net.vpc.id}"),
        _res("app", "s2", parent_id="${net.vpc.id}", link_id="${app.s1.arn}"),
    ]


@pytest.fixture
def engine(make_engine: Callable[..., ReconcileEngine]) -> ReconcileEngine:
    return make_engine()


def _state(tmp_path: Path) -> State:
    return State.load(tmp_path / "state.json")


class TestPlan:
    def test_initial_plan_creates_everything(self, engine: ReconcileEngine) -> None:
        plan = engine.plan(_network())

        assert plan.summary()["create"] == 3
        assert plan.batches == [["net.vpc"], ["app.s1"], ["app.s2"]]
        assert plan.change("app.s2").planned["link_id"] == UNKNOWN_VALUE
        assert plan.metadata.state_serial == 0
        assert not plan.metadata.destroy

    def test_plan_does_not_write_state(self, engine: ReconcileEngine, tmp_path: Path) -> None:
        engine.plan(_network())
        assert not (tmp_path / "state.json").exists()

    def test_validation_errors_name_the_address(self, engine: ReconcileEngine) -> None:
        bad = Resource(kind="app", name="x", attributes={"arn": "nope"})
        with pytest.raises(ValidationError) as exc:
            engine.plan([bad])
        assert exc.value.errors == [
            "app.x: missing required attribute 'label'",
            "app.x: attribute 'arn' is computed and cannot be set",
        ]

    def test_cycle_is_reported_before_state_access(
        self, engine: ReconcileEngine, tmp_path: Path
    ) -> None:
        resources = [
            _res("app", "a", link_id="${app.b.id}"),
            _res("app", "b", link_id="${app.a.id}"),
        ]
        with pytest.raises(CycleError):
            engine.plan(resources)
        with pytest.raises(CycleError):
            engine.plan(resources, destroy=True)
        assert not (tmp_path / "state.json").exists()

    def test_unresolved_reference(self, engine: ReconcileEngine) -> None:
        with pytest.raises(UnresolvedReferenceError):
            engine.plan([_res("app", "a", parent_id="${net.nowhere.id}")])

    def test_plan_fails_while_state_is_locked(
        self, engine: ReconcileEngine, tmp_path: Path
    ) -> None:
        with StateLock(tmp_path / "state.json"), pytest.raises(StateLockError):
            engine.plan(_network())

    def test_plan_without_refresh_ignores_lock(
        self, engine: ReconcileEngine, tmp_path: Path
    ) -> None:
        with StateLock(tmp_path / "state.json"):
            plan = engine.plan(_network(), refresh=False)
        assert plan.summary()["create"] == 3


class TestApply:
    def test_apply_creates_and_resolves_references(
        self, engine: ReconcileEngine, tmp_path: Path
    ) -> None:
        result = engine.apply(engine.plan(_network()))

        assert result.ok
        assert result.summary()["create"] == 3
        state = _state(tmp_path)
        vpc = state.resources["net.vpc"]
        s1 = state.resources["app.s1"]
        s2 = state.resources["app.s2"]
        assert s1.attributes["parent_id"] == vpc.remote_id
        assert s2.attributes["link_id"] == s1.attributes["arn"]
        assert s2.dependencies == ["app.s1", "net.vpc"]
        assert state.pending == {}

    def test_reapply_is_a_noop(self, engine: ReconcileEngine, cloud: FakeCloud) -> None:
        engine.apply(engine.plan(_network()))
        calls = len(cloud.calls)

        plan = engine.plan(_network())

        assert plan.is_empty()
        assert plan.batches == []
        result = engine.apply(plan)
        assert {o.status for o in result.outcomes} == {OutcomeStatus.SKIPPED}
        assert len(cloud.calls) == calls

    def test_vpc_with_two_subnets(self, engine: ReconcileEngine, tmp_path: Path) -> None:
        resources = [
            _res("net", "vpc"),
            _res("app", "s1", parent_id="${net.vpc.id}"),
            _res("app", "s2", parent_id="${net.vpc.id}"),
        ]

        plan = engine.plan(resources)
        assert plan.batches == [["net.vpc"], ["app.s1", "app.s2"]]

        result = engine.apply(plan)
        assert result.ok
        assert sorted(_state(tmp_path).resources) == ["app.s1", "app.s2", "net.vpc"]
        assert engine.plan(resources).is_empty()

    def test_each_mutation_bumps_serial(self, engine: ReconcileEngine, tmp_path: Path) -> None:
        engine.apply(engine.plan(_network()))
        # begin + commit per create
        assert _state(tmp_path).serial == 6

    def test_update_in_place_keeps_remote_id(
        self, engine: ReconcileEngine, tmp_path: Path, cloud: FakeCloud
    ) -> None:
        engine.apply(engine.plan(_network()))
        before = _state(tmp_path).resources["net.vpc"].remote_id

        resources = _network()
        resources[0] = _res("net", "vpc", size=2)
        plan = engine.plan(resources)

        assert plan.change("net.vpc").action == Action.UPDATE
        assert plan.batches == [["net.vpc"]]
        assert engine.apply(plan).ok
        after = _state(tmp_path).resources["net.vpc"]
        assert after.remote_id == before
        assert after.attributes["size"] == 2
        assert cloud.labels("update") == ["vpc"]

    def test_replace_cascades_to_dependents(
        self, engine: ReconcileEngine, tmp_path: Path, cloud: FakeCloud
    ) -> None:
        engine.apply(engine.plan(_network()))
        old = _state(tmp_path).resources

        resources = _network()
        resources[0] = _res("net", "vpc", size=1, zone="b")
        plan = engine.plan(resources)

        assert plan.change("net.vpc").action == Action.REPLACE
        assert plan.change("app.s1").action == Action.REPLACE
        assert plan.change("app.s2").action == Action.REPLACE
        assert plan.batches == [
            ["app.s2"],
            ["app.s1"],
            ["net.vpc"],
            ["net.vpc"],
            ["app.s1"],
            ["app.s2"],
        ]

        assert engine.apply(plan).ok
        new = _state(tmp_path).resources
        assert new["net.vpc"].remote_id != old["net.vpc"].remote_id
        assert new["app.s1"].attributes["parent_id"] == new["net.vpc"].remote_id
        assert cloud.labels("delete") == ["s2", "s1", "vpc"]
        assert cloud.labels("create")[-3:] == ["vpc", "s1", "s2"]

    @pytest.mark.parametrize(
        "resources",
        [
            pytest.param(
                [
                    _res("net", "vpc", size=1, zone="b"),
                    _res("app", "s1", parent_id="${net.vpc.id}"),
                    _res("app", "s2", parent_id="${net.vpc.id}", link_id="${app.s1.arn}"),
                ],
                id="dependents-replaced",
            ),
            pytest.param(
                [
                    _res("net", "vpc", size=1, zone="b"),
                    _res("app", "s1", parent_id="${net.vpc.id}"),
                ],
                id="dependent-removed",
            ),
        ],
    )
    def test_replace_never_deletes_a_referenced_object(
        self,
        engine: ReconcileEngine,
        registry: ResourceKindRegistry,
        cloud: FakeCloud,
        monkeypatch: pytest.MonkeyPatch,
        resources: list[Resource],
    ) -> None:
        engine.apply(engine.plan(_network()))
        handler = registry.get("net").handler
        delete = handler.delete

        def delete_unreferenced(ctx: Any, prior: Any) -> None:
            if any(o.get("parent_id") == prior.remote_id for o in cloud.objects.values()):
                raise TransientError("DependencyViolation")
            delete(ctx, prior)

        monkeypatch.setattr(handler, "delete", delete_unreferenced)

        result = engine.apply(engine.plan(resources))

        assert result.ok, result.outcomes
        assert engine.plan(resources).is_empty()

    def test_dropped_attribute_is_reset_remotely(
        self, engine: ReconcileEngine, cloud: FakeCloud
    ) -> None:
        engine.apply(engine.plan([_res("net", "vpc", tags={"env": "prod"})]))

        plan = engine.plan([_res("net", "vpc")])

        assert plan.change("net.vpc").action == Action.UPDATE
        assert plan.change("net.vpc").diff == {"tags": {"from": {"env": "prod"}, "to": {}}}
        assert engine.apply(plan).ok
        (obj,) = cloud.objects.values()
        assert obj["tags"] == {}
        assert engine.plan([_res("net", "vpc")]).is_empty()

    def test_removed_resource_is_destroyed_after_dependents_move(
        self, engine: ReconcileEngine, tmp_path: Path, cloud: FakeCloud
    ) -> None:
        engine.apply(engine.plan(_network()))

        resources = [_res("net", "vpc", size=1), _res("app", "s1", parent_id="${net.vpc.id}")]
        plan = engine.plan(resources)

        assert plan.change("app.s2").action == Action.DELETE
        assert engine.apply(plan).ok
        assert "app.s2" not in _state(tmp_path).resources
        assert cloud.labels("delete") == ["s2"]

    def test_stale_plan_is_rejected(self, engine: ReconcileEngine) -> None:
        first = engine.plan(_network())
        second = engine.plan(_network())
        engine.apply(second)

        with pytest.raises(StalePlanError, match="re-run plan"):
            engine.apply(first)

    def test_saved_plan_round_trip(self, engine: ReconcileEngine, tmp_path: Path) -> None:
        engine.plan(_network()).save(tmp_path / "plan.json")

        result = engine.apply(Plan.load(tmp_path / "plan.json"))

        assert result.ok
        assert len(_state(tmp_path).resources) == 3


class TestRefresh:
    def test_remote_deletion_is_recreated(
        self, engine: ReconcileEngine, cloud: FakeCloud
    ) -> None:
        engine.apply(engine.plan(_network()))
        obj_id = next(k for k, v in cloud.objects.items() if v["label"] == "s2")
        del cloud.objects[obj_id]

        plan = engine.plan(_network())

        assert plan.change("app.s2").action == Action.CREATE
        assert plan.change("app.s1").action == Action.NOOP

    def test_drift_is_corrected(self, engine: ReconcileEngine, cloud: FakeCloud) -> None:
        engine.apply(engine.plan(_network()))
        obj = next(v for v in cloud.objects.values() if v["label"] == "vpc")
        obj["size"] = 5

        plan = engine.plan(_network())

        assert plan.change("net.vpc").diff == {"size": {"from": 5, "to": 1}}

    def test_refresh_returns_snapshot_and_new_state(
        self, engine: ReconcileEngine, cloud: FakeCloud, tmp_path: Path
    ) -> None:
        engine.apply(engine.plan(_network()))
        serial = _state(tmp_path).serial
        next(v for v in cloud.objects.values() if v["label"] == "vpc")["size"] = 9

        before, after = engine.refresh()

        assert before.resources["net.vpc"].attributes["size"] == 1
        assert after.resources["net.vpc"].attributes["size"] == 9
        assert _state(tmp_path).serial == serial

        engine.refresh(persist=True)
        assert _state(tmp_path).serial == serial + 1


class TestDestroy:
    def test_destroy_in_reverse_dependency_order(
        self, engine: ReconcileEngine, cloud: FakeCloud, tmp_path: Path
    ) -> None:
        engine.apply(engine.plan(_network()))

        plan = engine.plan(_network(), destroy=True)
        assert plan.batches == [["app.s2"], ["app.s1"], ["net.vpc"]]

        result = engine.apply(plan)

        assert result.ok
        assert cloud.labels("delete") == ["s2", "s1", "vpc"]
        assert _state(tmp_path).resources == {}
        assert cloud.objects == {}

    def test_destroy_shortcut(self, engine: ReconcileEngine) -> None:
        engine.apply(engine.plan(_network()))
        result = engine.destroy(_network())
        assert result.summary()["delete"] == 3

    def test_destroy_empty_state(self, engine: ReconcileEngine) -> None:
        plan = engine.plan([], destroy=True)
        assert plan.changes == []


class TestForget:
    def test_forget_drops_record_only(
        self, engine: ReconcileEngine, cloud: FakeCloud, tmp_path: Path
    ) -> None:
        engine.apply(engine.plan(_network()))
        objects = len(cloud.objects)

        record = engine.forget("app.s2")

        assert record is not None
        assert record.address == "app.s2"
        assert "app.s2" not in _state(tmp_path).resources
        assert len(cloud.objects) == objects

    def test_forget_unknown_address(self, engine: ReconcileEngine) -> None:
        with pytest.raises(EngineError, match="No resource"):
            engine.forget("app.ghost")
