"""Tests for the resource graph builder."""

from __future__ import annotations

import pytest

from infra_provisioner.engine.builder import build_graph, find_cycle
from infra_provisioner.engine.errors import (
    CycleError,
    DuplicateAddressError,
    UnknownResourceKindError,
    UnresolvedReferenceError,
)
from infra_provisioner.engine.registry import ResourceKindRegistry
from infra_provisioner.resources.base import Resource
from infra_provisioner.resources.references import Ref


def _r(kind: str, name: str, **attributes: object) -> Resource:
    depends_on = attributes.pop("depends_on", [])
    return Resource(kind=kind, name=name, attributes=attributes, depends_on=depends_on)


class TestEdges:
    def test_reference_creates_edge(self, registry: ResourceKindRegistry) -> None:
        graph = build_graph(
            [
                _r("net", "vpc", label="vpc"),
                _r("app", "web", label="web", parent_id="${net.vpc.id}"),
            ],
            registry,
        )
        assert graph.dependencies("app.web") == ("net.vpc",)
        assert graph.dependents("net.vpc") == ["app.web"]
        assert graph.edges() == [("app.web", "net.vpc")]

    def test_nested_references_and_depends_on(self, registry: ResourceKindRegistry) -> None:
        graph = build_graph(
            [
                _r("net", "a", label="a"),
                _r("net", "b", label="b"),
                _r("net", "c", label="c"),
                _r(
                    "app",
                    "web",
                    label="web",
                    peers=["${net.a.id}", {"via": "${net.b.arn}"}],
                    depends_on=["net.c"],
                ),
            ],
            registry,
        )
        node = graph.node("app.web")
        assert node.dependencies == ("net.a", "net.b", "net.c")
        assert node.attributes["peers"][1]["via"] == Ref("net", "b", "arn")
        assert node.raw_attributes["peers"][1]["via"] == "${net.b.arn}"

    def test_duplicate_references_collapse(self, registry: ResourceKindRegistry) -> None:
        graph = build_graph(
            [
                _r("net", "vpc", label="vpc"),
                _r(
                    "app",
                    "web",
                    label="web",
                    parent_id="${net.vpc.id}",
                    link_id="${net.vpc.arn}",
                    depends_on=["net.vpc"],
                ),
            ],
            registry,
        )
        assert graph.dependencies("app.web") == ("net.vpc",)

    def test_topological_order_uses_priority(self, registry: ResourceKindRegistry) -> None:
        graph = build_graph([_r("app", "a", label="a"), _r("net", "z", label="z")], registry)
        assert graph.topological_order() == ["net.z", "app.a"]

    def test_without_registry(self) -> None:
        graph = build_graph([_r("anything", "x"), _r("other", "y", ref="${anything.x.foo}")])
        assert graph.dependencies("other.y") == ("anything.x",)
        assert len(graph) == 2


class TestErrors:
    def test_unresolved_reference(self, registry: ResourceKindRegistry) -> None:
        with pytest.raises(UnresolvedReferenceError, match=r"net\.missing"):
            build_graph([_r("app", "web", label="web", parent_id="${net.missing.id}")], registry)

    def test_unresolved_depends_on(self, registry: ResourceKindRegistry) -> None:
        with pytest.raises(UnresolvedReferenceError, match="depends_on"):
            build_graph([_r("app", "web", label="web", depends_on=["net.ghost"])], registry)

    def test_unknown_attribute_on_target(self, registry: ResourceKindRegistry) -> None:
        with pytest.raises(UnresolvedReferenceError, match="has no attribute 'bogus'"):
            build_graph(
                [
                    _r("net", "vpc", label="vpc"),
                    _r("app", "web", label="web", parent_id="${net.vpc.bogus}"),
                ],
                registry,
            )

    def test_self_reference_is_cycle(self, registry: ResourceKindRegistry) -> None:
        with pytest.raises(CycleError) as exc:
            build_graph([_r("app", "web", label="web", link_id="${app.web.id}")], registry)
        assert exc.value.addresses == ["app.web", "app.web"]

    def test_two_node_cycle(self, registry: ResourceKindRegistry) -> None:
        with pytest.raises(CycleError) as exc:
            build_graph(
                [
                    _r("app", "a", label="a", link_id="${app.b.id}"),
                    _r("app", "b", label="b", link_id="${app.a.id}"),
                ],
                registry,
            )
        assert exc.value.addresses == ["app.a", "app.b", "app.a"]
        assert "app.a -> app.b -> app.a" in str(exc.value)

    def test_duplicate_address(self, registry: ResourceKindRegistry) -> None:
        with pytest.raises(DuplicateAddressError):
            build_graph([_r("app", "a", label="a"), _r("app", "a", label="b")], registry)

    def test_unknown_kind(self, registry: ResourceKindRegistry) -> None:
        with pytest.raises(UnknownResourceKindError, match="aws_nope"):
            build_graph([_r("aws_nope", "x")], registry)


class TestFindCycle:
    def test_acyclic(self) -> None:
        assert find_cycle({"a": ["b"], "b": ["c"], "c": []}) is None

    def test_reports_path(self) -> None:
        assert find_cycle({"a": ["b"], "b": ["c"], "c": ["b"]}) == ["b", "c", "b"]

    def test_long_chain_does_not_recurse(self) -> None:
        deps = {f"n{i}": [f"n{i + 1}"] for i in range(5000)}
        assert find_cycle(deps) is None
