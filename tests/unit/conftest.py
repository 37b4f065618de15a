"""Shared fixtures for unit tests."""

from __future__ import annotations

import itertools
import threading
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from infra_provisioner.config import load
from infra_provisioner.core import AwsProvider
from infra_provisioner.engine import ReconcileEngine
from infra_provisioner.engine.errors import ResourceNotFoundError
from infra_provisioner.engine.handlers import EngineContext, ResourceHandler
from infra_provisioner.engine.registry import ResourceKindRegistry
from infra_provisioner.engine.retry import RetryPolicy
from infra_provisioner.resources.schema import ResourceSchema

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from infra_provisioner.config.schema import Config
    from infra_provisioner.core.state import StateRecord

_ENV_VARS = (
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
    "AWS_PROFILE",
    "AWS_ENDPOINT_URL",
    "INFRA_PARALLELISM",
    "INFRA_ON_FAILURE",
    "INFRA_RETRY_MAX_ATTEMPTS",
    "INFRA_RETRY_BACKOFF",
    "INFRA_RETRY_MAX_BACKOFF",
    "INFRA_RETRY_JITTER",
    "INFRA_LOCK_TIMEOUT",
    "INFRA_LOG",
    "NO_COLOR",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove AWS_* / INFRA_* env vars so unit tests don't leak host config."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory fixture: write YAML + optional .env, return loaded Config."""

    def _make(yaml_str: str, *, dotenv: str | None = None) -> Config:
        (tmp_path / "config.yaml").write_text(yaml_str)
        if dotenv is not None:
            (tmp_path / ".env").write_text(dotenv)
        return load(tmp_path / "config.yaml")

    return _make


# ── In-memory provider ──────────────────────────────────────────────


class FakeCloud:
    """Remote objects keyed by id, with scripted failures per (operation, label)."""

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list[BaseException]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, operation: str, label: str, *errors: BaseException) -> None:
        """Raise *errors* (one per call, in order) on the next *operation* of *label*."""
        self._failures[(operation, label)] = list(errors)

    def record(self, operation: str, label: str) -> None:
        with self._lock:
            self.calls.append((operation, label))
            pending = self._failures.get((operation, label))
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def new_id(self, kind: str) -> str:
        with self._lock:
            return f"{kind}-{next(self._ids)}"

    def labels(self, operation: str) -> list[str]:
        return [label for op, label in self.calls if op == operation]


class MemoryHandler(ResourceHandler):
    """Handler backed by a ``FakeCloud``.

    ``label`` identifies the object in scripted failures. ``parent_id`` and
    ``zone`` force replacement; ``link_id``, ``size``, ``peers``, ``secret``
    and ``tags`` update in place. Dropping ``peers`` or ``tags`` empties them.
    """

    def __init__(self, cloud: FakeCloud, kind: str, *, priority: int = 100) -> None:
        self.cloud = cloud
        self.schema = ResourceSchema(
            kind=kind,
            required=frozenset({"label"}),
            replace_only=frozenset({"label", "zone", "parent_id"}),
            updatable=frozenset({"link_id", "size", "peers", "secret", "tags"}),
            computed=frozenset({"arn"}),
            sensitive=frozenset({"secret"}),
            compare={"peers": "set"},
            defaults={"peers": [], "tags": {}},
            plan_priority=priority,
        )

    def read(self, ctx: EngineContext, prior: StateRecord) -> dict[str, Any] | None:
        _ = ctx
        obj = self.cloud.objects.get(prior.remote_id)
        return dict(obj) if obj is not None else None

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        _ = ctx
        self.cloud.record("create", attributes["label"])
        remote_id = self.cloud.new_id(self.schema.kind)
        stored = {**attributes, "arn": f"arn:test:{remote_id}"}
        self.cloud.objects[remote_id] = stored
        return remote_id, dict(stored)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        _ = ctx
        self.cloud.record("update", prior.attributes["label"])
        obj = self.cloud.objects.get(prior.remote_id)
        if obj is None:
            raise ResourceNotFoundError(prior.remote_id)
        for key, change in diff.items():
            obj[key] = change["to"]
        return dict(obj)

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        _ = ctx
        self.cloud.record("delete", prior.attributes["label"])
        if self.cloud.objects.pop(prior.remote_id, None) is None:
            raise ResourceNotFoundError(prior.remote_id)


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def registry(cloud: FakeCloud) -> ResourceKindRegistry:
    """Two kinds: ``net`` (planned early) and ``app``."""
    reg = ResourceKindRegistry()
    reg.register(MemoryHandler(cloud, "net", priority=10))
    reg.register(MemoryHandler(cloud, "app"))
    return reg


@pytest.fixture
def make_engine(tmp_path: Path, registry: ResourceKindRegistry) -> Callable[..., ReconcileEngine]:
    def _make(**kwargs: Any) -> ReconcileEngine:
        kwargs.setdefault("retry", RetryPolicy(max_attempts=3, backoff_factor=0.0))
        return ReconcileEngine(
            provider=AwsProvider.from_session(MagicMock()),
            state_path=tmp_path / "state.json",
            registry=registry,
            **kwargs,
        )

    return _make


# ── Mocked boto3 client ─────────────────────────────────────────────


@pytest.fixture
def aws_client() -> MagicMock:
    """A single mocked boto3 client shared by every service."""
    return MagicMock()


@pytest.fixture
def aws_ctx(aws_client: MagicMock) -> EngineContext:

    session = MagicMock()
    session.client.return_value = aws_client
    return EngineContext(provider=AwsProvider.from_session(session))


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, operation)
