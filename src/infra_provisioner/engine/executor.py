"""Plan execution.

Batches run strictly in order; the actions of one batch run concurrently on a
bounded thread pool and must all reach a terminal state before the next batch
is released. Every confirmed remote operation is committed to the state store
immediately, so an interrupted run can be resumed by re-planning.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from infra_provisioner.core.state import StateRecord, compute_attributes_hash
from infra_provisioner.engine.differ import current_fingerprint
from infra_provisioner.engine.errors import (
    ApplyCanceled,
    ProviderError,
    ResourceNotFoundError,
    StateConflictError,
    TransientError,
)
from infra_provisioner.engine.retry import RetryPolicy
from infra_provisioner.engine.types import (
    Action,
    ApplyResult,
    OutcomeStatus,
    ResourceOutcome,
)
from infra_provisioner.resources.references import (
    contains_unknown,
    parse_references,
    resolve_references,
)

if TYPE_CHECKING:
    from infra_provisioner.core.state import Operation, StateStore
    from infra_provisioner.engine.handlers import EngineContext
    from infra_provisioner.engine.registry import ResourceKindRegistry
    from infra_provisioner.engine.types import Plan, ResourceChange
    from infra_provisioner.resources.references import Ref

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["ResourceChange", Literal["start", "done"]], None]
FailurePolicy = Literal["abort", "continue"]

_CANCELED = "apply canceled"


def _outcome(
    change: ResourceChange, status: OutcomeStatus, reason: str | None = None
) -> ResourceOutcome:
    return ResourceOutcome(
        address=change.address, action=change.action, status=status, reason=reason
    )


class Executor:
    """Apply a plan's batches against the provider handlers.

    ``on_failure="abort"`` stops dispatching after the batch in which an
    action failed; ``"continue"`` keeps running every action that does not
    wait on a failed or pending address.

    A replace runs as two steps in separate batches: the first destroys the
    old object, the second creates the new one.

    ``cancel`` may be shared with the caller; setting it from any thread
    stops further dispatch the same way :meth:`cancel` does.
    """

    def __init__(
        self,
        *,
        ctx: EngineContext,
        registry: ResourceKindRegistry,
        store: StateStore,
        parallelism: int = 10,
        on_failure: FailurePolicy = "abort",
        retry: RetryPolicy | None = None,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self._ctx = ctx
        self._registry = registry
        self._store = store
        self._parallelism = parallelism
        self._on_failure = on_failure
        self._retry = retry or RetryPolicy()
        self._progress = progress
        self._sleep = sleep
        self._cancel = cancel if cancel is not None else threading.Event()

    def cancel(self) -> None:
        """Stop dispatching; in-flight operations finish and are committed."""
        self._cancel.set()

    @property
    def canceled(self) -> bool:
        return self._cancel.is_set()

    def run(self, plan: Plan) -> ApplyResult:
        """Run every batch of *plan*.

        Raises ``ApplyCanceled`` carrying the partial result when cancellation
        (``cancel()``, the shared event or Ctrl-C) kept any action from running.
        """
        outcomes: dict[str, ResourceOutcome] = {
            c.address: _outcome(c, OutcomeStatus.SKIPPED, "no changes")
            for c in plan.changes
            if c.action == Action.NOOP
        }
        halted: set[str] = set()
        seen: set[str] = set()
        aborted_by: str | None = None

        batches = plan.batch_changes()
        with ThreadPoolExecutor(
            max_workers=self._parallelism, thread_name_prefix="infra-apply"
        ) as pool:
            for index, batch in enumerate(batches, start=1):
                runnable: list[tuple[ResourceChange, bool]] = []
                for change in batch:
                    destroying = change.action == Action.REPLACE and change.address not in seen
                    seen.add(change.address)
                    reason = self._blocked_reason(change, destroying, halted, aborted_by)
                    if reason is not None:
                        # A failed destroy half keeps its outcome.
                        earlier = outcomes.get(change.address)
                        if earlier is None or earlier.status == OutcomeStatus.APPLIED:
                            outcomes[change.address] = _outcome(
                                change, OutcomeStatus.PENDING, reason
                            )
                        halted.add(change.address)
                    else:
                        runnable.append((change, destroying))
                if not runnable:
                    continue

                logger.info("Batch %d/%d: %d action(s)", index, len(batches), len(runnable))
                futures = {pool.submit(self._run_change, c, d): c for c, d in runnable}
                try:
                    wait(futures)
                except KeyboardInterrupt:
                    logger.warning("Interrupted; waiting for in-flight operations to finish")
                    self.cancel()
                    wait(futures)

                for future, change in futures.items():
                    outcome = future.result()
                    outcomes[change.address] = outcome
                    if outcome.status != OutcomeStatus.APPLIED:
                        halted.add(change.address)
                    if (
                        outcome.status == OutcomeStatus.FAILED
                        and self._on_failure == "abort"
                        and aborted_by is None
                    ):
                        aborted_by = change.address

        result = ApplyResult(
            outcomes=[
                outcomes.get(c.address) or _outcome(c, OutcomeStatus.PENDING, "not scheduled")
                for c in plan.changes
            ]
        )
        if any(o.reason == _CANCELED for o in result.pending):
            raise ApplyCanceled("Apply canceled", result=result)
        return result

    def _blocked_reason(
        self,
        change: ResourceChange,
        destroying: bool,
        halted: set[str],
        aborted_by: str | None,
    ) -> str | None:
        if self._cancel.is_set():
            return _CANCELED
        if aborted_by is not None:
            return f"apply aborted after {aborted_by} failed"
        if change.action == Action.REPLACE and not destroying and change.address in halted:
            return "the old object was not destroyed"
        waits = change.destroy_wait_for if destroying else change.wait_for
        blockers = [a for a in waits if a in halted]
        if blockers:
            return f"blocked by {', '.join(blockers)}"
        return None

    # ── Per-action execution (runs on worker threads) ───────────────

    def _run_change(self, change: ResourceChange, destroying: bool = False) -> ResourceOutcome:
        if self._cancel.is_set():
            return _outcome(change, OutcomeStatus.PENDING, _CANCELED)

        step = "destroy" if destroying else change.action.value
        logger.debug("Applying %s: %s", change.address, step)
        if self._progress:
            self._progress(change, "start")
        try:
            match change.action:
                case Action.CREATE:
                    self._create(change)
                case Action.UPDATE:
                    self._update(change)
                case Action.REPLACE if destroying:
                    self._delete(change)
                case Action.REPLACE:
                    self._create(change)
                case Action.DELETE:
                    self._delete(change)
                case _:
                    raise ValueError(f"Unexpected action in batch: {change.action}")
        except (ProviderError, StateConflictError) as exc:
            logger.error("%s %s failed: %s", change.action.value, change.address, exc)
            return _outcome(change, OutcomeStatus.FAILED, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error applying %s", change.address)
            return _outcome(change, OutcomeStatus.FAILED, f"{type(exc).__name__}: {exc}")

        # A replace is done once its successor exists.
        if self._progress and not destroying:
            self._progress(change, "done")
        return _outcome(change, OutcomeStatus.APPLIED)

    def _call(self, address: str, operation: Operation, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return self._retry.call(
                fn, self._ctx, *args, description=f"{operation} {address}", sleep=self._sleep
            )
        except ProviderError as exc:
            # An outright rejection means nothing happened remotely. Exhausted
            # transient retries are ambiguous, so the journal entry is kept.
            if not isinstance(exc.__cause__, TransientError):
                self._store.abandon(address)
            raise

    def _create(self, change: ResourceChange) -> None:
        address = change.address
        if self._store.get(address) is not None:
            raise StateConflictError(address, "a state record appeared after the plan was made")
        attrs = self._resolve_inputs(change)
        fingerprint = self._fingerprint(change)

        handler = self._registry.get(change.kind).handler
        self._store.begin(address, "create")
        remote_id, stored = self._call(address, "create", handler.create, attrs)

        now = datetime.now(UTC)
        record = StateRecord(
            address=address,
            kind=change.kind,
            name=address.split(".", 1)[1],
            remote_id=remote_id,
            attributes=stored,
            attributes_hash=compute_attributes_hash(stored),
            dependencies=list(change.dependencies),
            dependency_fingerprint=fingerprint,
            created_at=now,
            updated_at=now,
        )
        self._store.commit(address, record)
        logger.info("Created %s (%s)", address, remote_id)

    def _update(self, change: ResourceChange) -> None:
        address = change.address
        record = self._check_prior(change)
        fingerprint = self._fingerprint(change)
        update: dict[str, Any] = {
            "dependencies": list(change.dependencies),
            "dependency_fingerprint": fingerprint,
            "updated_at": datetime.now(UTC),
        }

        if change.diff:
            kind = self._registry.get(change.kind)
            handler = kind.handler
            attrs = self._resolve_inputs(change)
            # Attributes no longer declared go back to their schema default.
            diff = {
                k: {
                    "from": record.attributes.get(k),
                    "to": attrs[k] if k in attrs else kind.schema.defaults.get(k),
                }
                for k in change.diff
            }
            self._store.begin(address, "update")
            stored = self._call(address, "update", handler.update, record, diff)
            update["attributes"] = stored
            update["attributes_hash"] = compute_attributes_hash(stored)

        self._store.commit(address, record.model_copy(update=update))
        logger.info("Updated %s", address)

    def _delete(self, change: ResourceChange) -> None:
        address = change.address
        record = self._check_prior(change)
        handler = self._registry.get(change.kind).handler

        self._store.begin(address, "delete")
        try:
            self._call(address, "delete", handler.delete, record)
        except ResourceNotFoundError:
            logger.info("%s was already gone", address)
        self._store.remove(address)
        logger.info("Destroyed %s (%s)", address, record.remote_id)

    # ── Conflict checks ─────────────────────────────────────────────

    def _check_prior(self, change: ResourceChange) -> StateRecord:
        address = change.address
        record = self._store.get(address)
        if record is None:
            raise StateConflictError(
                address, "the state record disappeared after the plan was made"
            )
        if record.remote_id != change.prior_id:
            raise StateConflictError(
                address, f"remote id changed from {change.prior_id} to {record.remote_id}"
            )
        if record.dependency_fingerprint != change.prior_fingerprint:
            raise StateConflictError(
                address, "stored dependency fingerprint does not match the plan"
            )
        return record

    def _fingerprint(self, change: ResourceChange) -> str:
        records = {}
        for dep in change.dependencies:
            record = self._store.get(dep)
            if record is None:
                raise StateConflictError(change.address, f"dependency {dep} has no committed state")
            records[dep] = record
        fingerprint = current_fingerprint(change.dependencies, records)
        assert fingerprint is not None
        return fingerprint

    def _resolve_inputs(self, change: ResourceChange) -> dict[str, Any]:
        """Resolve references against committed state and check known planned values."""

        def lookup(ref: Ref) -> Any:
            record = self._store.get(ref.address)
            if record is None:
                raise StateConflictError(
                    change.address,
                    f"{ref} cannot be resolved: {ref.address} has no committed state",
                )
            if ref.attribute == "id":
                return record.remote_id
            if ref.attribute not in record.attributes:
                raise StateConflictError(
                    change.address, f"{ref} cannot be resolved: attribute not in state"
                )
            return record.attributes[ref.attribute]

        attrs = resolve_references(parse_references(change.desired or {}), lookup)
        for key, planned in (change.planned or {}).items():
            if contains_unknown(planned):
                continue
            if attrs.get(key) != planned:
                raise StateConflictError(
                    change.address,
                    f"'{key}' resolved to {attrs.get(key)!r} but the plan expected {planned!r}",
                )
        return attrs
