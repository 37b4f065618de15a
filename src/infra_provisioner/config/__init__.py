"""YAML configuration loading and convenience plan/apply API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from infra_provisioner.config.loader import ConfigError, load_config
from infra_provisioner.config.registry import default_registry
from infra_provisioner.config.schema import Config, EngineSettings, ProviderConfig
from infra_provisioner.core.provider import AwsProvider
from infra_provisioner.core.state import State
from infra_provisioner.engine.engine import ReconcileEngine
from infra_provisioner.engine.errors import StaleStateError
from infra_provisioner.engine.lock import StateLock
from infra_provisioner.engine.retry import RetryPolicy
from infra_provisioner.engine.types import Action, ResourceChange

if TYPE_CHECKING:
    import threading
    from pathlib import Path

    from infra_provisioner.core.state import StateRecord
    from infra_provisioner.engine.builder import ResourceGraph
    from infra_provisioner.engine.executor import ProgressCallback
    from infra_provisioner.engine.registry import ResourceKindRegistry
    from infra_provisioner.engine.types import ApplyResult, Plan

__all__ = [
    "Config",
    "ConfigError",
    "EngineSettings",
    "ProviderConfig",
    "State",
    "apply",
    "destroy",
    "drift",
    "engine_from_config",
    "forget",
    "load",
    "load_config",
    "plan",
    "plan_and_apply",
    "refresh",
    "save_state",
    "validate",
]


def load(path: Path | str) -> Config:
    """Load a YAML configuration file."""
    return load_config(path)


def engine_from_config(
    config: Config,
    *,
    provider: AwsProvider | None = None,
    registry: ResourceKindRegistry | None = None,
) -> ReconcileEngine:
    """Build a ``ReconcileEngine`` from a ``Config`` instance."""
    if provider is None:
        provider = AwsProvider(
            region=config.provider.region,
            profile=config.provider.profile,
            endpoint_url=config.provider.endpoint_url,
        )
    settings = config.engine
    return ReconcileEngine(
        provider=provider,
        state_path=config.state_path,
        registry=registry or default_registry(),
        parallelism=settings.parallelism,
        on_failure=settings.on_failure,
        retry=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            backoff_factor=settings.retry_backoff,
            max_backoff_wait=settings.retry_max_backoff,
            backoff_jitter=settings.retry_jitter,
        ),
        lock_timeout=settings.lock_timeout,
    )


def validate(config: Config) -> ResourceGraph:
    """Check the configuration without touching state or AWS."""
    return engine_from_config(config).validate(config.resources)


def plan(config: Config, *, destroy: bool = False, refresh: bool = True) -> Plan:
    """Plan changes for the given configuration."""
    engine = engine_from_config(config)
    return engine.plan(config.resources, destroy=destroy, refresh=refresh)


def apply(
    plan_obj: Plan,
    config: Config,
    *,
    progress: ProgressCallback | None = None,
    cancel: threading.Event | None = None,
) -> ApplyResult:
    """Apply a previously computed plan.

    Set *cancel* from another thread to stop the run after in-flight
    operations finish; ``ApplyCanceled`` then carries the partial result.
    """
    engine = engine_from_config(config)
    return engine.apply(plan_obj, progress=progress, cancel=cancel)


def plan_and_apply(
    config: Config,
    *,
    destroy: bool = False,
    refresh: bool = True,
    cancel: threading.Event | None = None,
) -> ApplyResult:
    """Plan and apply in one step."""
    plan_obj = plan(config, destroy=destroy, refresh=refresh)
    return apply(plan_obj, config, cancel=cancel)


def destroy(
    config: Config, *, refresh: bool = True, cancel: threading.Event | None = None
) -> ApplyResult:
    """Destroy every resource tracked in state."""
    engine = engine_from_config(config)
    return engine.destroy(config.resources, refresh=refresh, cancel=cancel)


def refresh(config: Config) -> tuple[list[ResourceChange], State]:
    """Refresh state from AWS (not persisted).

    Returns the list of drift changes and the new state. Call
    :func:`save_state` to persist the returned state to disk.
    """
    engine = engine_from_config(config)
    old_state, new_state = engine.refresh()
    return _build_drift_changes(old_state, new_state), new_state


def save_state(config: Config, state: State) -> None:
    """Persist a refreshed *state* to disk.

    Raises ``StaleStateError`` if the state file changed since *state* was
    read, so a refresh never overwrites the work of a later apply.
    """
    with StateLock(config.state_path, timeout=config.engine.lock_timeout):
        if config.state_path.exists():
            current = State.load(config.state_path)
            if current.lineage != state.lineage or current.serial != state.serial:
                raise StaleStateError(
                    f"State file is at serial {current.serial}, the refreshed copy at "
                    f"{state.serial}; re-run refresh"
                )
        state.serial += 1
        state.save(config.state_path)


def drift(config: Config) -> list[ResourceChange]:
    """Detect drift between state file and live AWS objects."""
    changes, _ = refresh(config)
    return changes


def forget(config: Config, address: str) -> StateRecord | None:
    """Drop *address* from state without touching AWS."""
    return engine_from_config(config).forget(address)


def _build_drift_changes(old_state: State, new_state: State) -> list[ResourceChange]:
    """Compare old vs new state and return a list of drift changes."""
    old_attrs = {addr: rec.attributes.copy() for addr, rec in old_state.resources.items()}
    changes: list[ResourceChange] = []
    for addr, rec in sorted(new_state.resources.items()):
        old = old_attrs.get(addr)
        if old is None:
            continue
        if old != rec.attributes:
            all_keys = sorted(set(old) | set(rec.attributes))
            diff = {
                k: {"from": old.get(k), "to": rec.attributes.get(k)}
                for k in all_keys
                if old.get(k) != rec.attributes.get(k)
            }
            changes.append(
                ResourceChange(
                    address=addr,
                    kind=rec.kind,
                    action=Action.UPDATE,
                    prior=old,
                    planned=dict(rec.attributes),
                    diff=diff,
                    prior_id=rec.remote_id,
                )
            )
    for addr in sorted(set(old_attrs) - set(new_state.resources)):
        rec = old_state.resources[addr]
        changes.append(
            ResourceChange(
                address=addr,
                kind=rec.kind,
                action=Action.DELETE,
                prior=old_attrs[addr],
                prior_id=rec.remote_id,
            )
        )
    return changes
