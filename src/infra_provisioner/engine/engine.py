"""Plan/apply engine."""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from infra_provisioner import __version__
from infra_provisioner.core.state import (
    StateRecord,
    StateStore,
    compute_attributes_hash,
    compute_state_digest,
)
from infra_provisioner.engine.builder import build_graph
from infra_provisioner.engine.differ import Differ
from infra_provisioner.engine.errors import (
    EngineError,
    StalePlanError,
    UnknownStateError,
    ValidationError,
)
from infra_provisioner.engine.executor import Executor, FailurePolicy, ProgressCallback
from infra_provisioner.engine.handlers import EngineContext
from infra_provisioner.engine.lock import StateLock
from infra_provisioner.engine.planner import Planner
from infra_provisioner.engine.retry import RetryPolicy
from infra_provisioner.engine.types import ApplyResult, Plan, PlanMetadata

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    import threading
    from collections.abc import Sequence
    from pathlib import Path

    from infra_provisioner.core import AwsProvider
    from infra_provisioner.core.state import State
    from infra_provisioner.engine.builder import ResourceGraph
    from infra_provisioner.engine.registry import ResourceKindRegistry
    from infra_provisioner.resources.base import Resource


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _sha256_hex(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _compute_config_digest(resources: Sequence[Resource]) -> str:
    items = [r.model_dump(exclude={"address"}) for r in resources]
    items.sort(key=lambda x: (x["kind"], x["name"]))
    return _sha256_hex(_canonical_json(items))


class ReconcileEngine:
    """Terraform-like plan/apply engine.

    Collaborators (provider, registry, state location) are passed in
    explicitly so that independent engines can run side by side in tests.
    """

    def __init__(
        self,
        *,
        provider: AwsProvider,
        state_path: Path,
        registry: ResourceKindRegistry,
        parallelism: int = 10,
        on_failure: FailurePolicy = "abort",
        retry: RetryPolicy | None = None,
        lock_timeout: float = 0.0,
    ) -> None:
        self._provider = provider
        self._state_path = state_path
        self._registry = registry
        self._parallelism = parallelism
        self._on_failure = on_failure
        self._retry = retry or RetryPolicy()
        self._lock_timeout = lock_timeout

    @property
    def state_path(self) -> Path:
        return self._state_path

    def _ctx(self) -> EngineContext:
        return EngineContext(provider=self._provider)

    def _lock(self) -> StateLock:
        return StateLock(self._state_path, timeout=self._lock_timeout)

    def _load_store(self) -> StateStore:
        store = StateStore(self._state_path)
        records = store.load()
        logger.debug("State loaded: serial=%d, %d resources", store.state.serial, len(records))
        return store

    def _refresh_in_place(self, state: State) -> bool:
        logger.debug("Refreshing state from the provider")
        changed = False
        ctx = self._ctx()

        for address, rec in list(state.resources.items()):
            handler = self._registry.get(rec.kind).handler
            attrs = self._retry.call(handler.read, ctx, rec, description=f"read {address}")
            if attrs is None:
                logger.info("%s no longer exists remotely; dropping it from state", address)
                del state.resources[address]
                changed = True
                continue

            new_hash = compute_attributes_hash(attrs)
            if attrs != rec.attributes or new_hash != rec.attributes_hash:
                rec.attributes = attrs
                rec.attributes_hash = new_hash
                rec.updated_at = datetime.now(UTC)
                changed = True

        logger.debug("State refreshed, changed=%s", changed)
        return changed

    def refresh(self, *, persist: bool = False) -> tuple[State, State]:
        """Refresh state from the provider. Returns (pre_refresh, post_refresh)."""
        with self._lock():
            store = self._load_store()
            snapshot = store.state.model_copy(deep=True)
            changed = self._refresh_in_place(store.state)
            if changed and persist:
                store.save()
            return snapshot, store.state

    def validate(self, resources: Sequence[Resource]) -> ResourceGraph:
        """Build the graph and run handler validation. No state or remote access."""
        graph = build_graph(resources, self._registry)
        ctx = self._ctx()
        errors: list[str] = []
        for r in resources:
            handler = self._registry.get(r.kind).handler
            errors.extend(f"{r.address}: {e}" for e in handler.validate(ctx, r))
        if errors:
            raise ValidationError(errors)
        return graph

    def plan(
        self, resources: Sequence[Resource], *, destroy: bool = False, refresh: bool = True
    ) -> Plan:
        """Compute the batched plan. Only a refresh ever writes state."""
        logger.info(
            "Planning %d resources (destroy=%s, refresh=%s)", len(resources), destroy, refresh
        )
        # Configuration errors surface before state is touched.
        graph = build_graph(resources, self._registry) if destroy else self.validate(resources)

        # Only lock when refresh may write state.
        lock_cm = self._lock() if refresh else contextlib.nullcontext()
        with lock_cm:
            store = self._load_store()
            state = store.state

            unknown = sorted(
                a for a, p in state.pending.items() if a not in state.resources
            )
            if unknown:
                raise UnknownStateError(unknown)
            for address, pending in sorted(state.pending.items()):
                logger.warning(
                    "%s has an uncommitted %s; it will be re-attempted",
                    address,
                    pending.operation,
                )

            if refresh and self._refresh_in_place(state):
                store.save()

            differ = Differ(self._registry)
            records = dict(state.resources)
            if destroy:
                changes = [differ.delete_change(records[a]) for a in sorted(records)]
            else:
                changes = differ.diff(graph, records)

            priorities = {
                c.address: self._registry.get(c.kind).schema.plan_priority for c in changes
            }
            batches = Planner(priorities).batches(changes, records)

            metadata = PlanMetadata(
                created_at=datetime.now(UTC),
                destroy=destroy,
                refresh=refresh,
                state_lineage=state.lineage,
                state_serial=state.serial,
                state_digest=compute_state_digest(state),
                config_digest=_compute_config_digest([] if destroy else resources),
                engine_version=__version__,
            )
            return Plan(metadata=metadata, changes=changes, batches=batches)

    def apply(
        self,
        plan: Plan,
        *,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> ApplyResult:
        """Execute *plan*. Per-resource failures are reported in the result.

        Setting *cancel* from another thread stops further dispatch; in-flight
        operations finish and are committed. Raises ``ApplyCanceled``
        (carrying the partial result) when cancellation or Ctrl-C kept any
        action from running.
        """
        with self._lock():
            store = self._load_store()
            state = store.state

            # Stale plan detection
            if state.lineage != plan.metadata.state_lineage:
                if state.serial != 0 or state.resources:
                    raise StalePlanError("State lineage changed; re-run plan")
                # Fresh state bootstrapped from the plan (saved-plan semantics).
                state.lineage = plan.metadata.state_lineage
            if state.serial != plan.metadata.state_serial:
                raise StalePlanError("State serial changed; re-run plan")
            if compute_state_digest(state) != plan.metadata.state_digest:
                raise StalePlanError("State digest changed; re-run plan")

            executor = Executor(
                ctx=self._ctx(),
                registry=self._registry,
                store=store,
                parallelism=self._parallelism,
                on_failure=self._on_failure,
                retry=self._retry,
                progress=progress,
                cancel=cancel,
            )
            logger.info(
                "Applying %d batches (parallelism=%d, on_failure=%s)",
                len(plan.batches),
                self._parallelism,
                self._on_failure,
            )
            result = executor.run(plan)
            logger.info("Apply finished: %s", result.status_counts())
            return result

    def destroy(
        self,
        resources: Sequence[Resource],
        *,
        refresh: bool = True,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> ApplyResult:
        """Plan and apply the destruction of every resource in state."""
        plan = self.plan(resources, destroy=True, refresh=refresh)
        return self.apply(plan, progress=progress, cancel=cancel)

    def forget(self, address: str) -> StateRecord | None:
        """Drop *address* (record and pending marker) from state without touching the remote.

        Returns the dropped record, or None if only a pending marker existed.
        """
        with self._lock():
            store = self._load_store()
            record = store.get(address)
            if record is None and address not in store.pending():
                raise EngineError(f"No resource or pending operation for {address} in state")
            store.remove(address)
            logger.info("Removed %s from state", address)
            return record
