"""Engine types (plan, changes, outcomes, metadata)."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "no-op"


FORWARD_ACTIONS = frozenset({Action.CREATE, Action.UPDATE, Action.REPLACE})


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    PENDING = "pending"


class PlanMetadata(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool
    refresh: bool
    state_lineage: str
    state_serial: int
    state_digest: str
    config_digest: str
    engine_version: str


class ResourceChange(BaseModel):
    """The planned action for one resource.

    ``desired`` keeps the raw attributes (reference strings intact) so the
    executor can resolve them against committed state at apply time;
    ``planned`` holds the values as known at plan time.
    """

    address: str
    kind: str
    action: Action
    desired: dict[str, Any] | None = None
    prior: dict[str, Any] | None = None
    planned: dict[str, Any] | None = None
    diff: dict[str, Any] | None = None
    requires_replace: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    wait_for: list[str] = Field(default_factory=list)
    destroy_wait_for: list[str] = Field(default_factory=list)
    prior_id: str | None = None
    prior_fingerprint: str | None = None


class Plan(BaseModel):
    """Changes plus the batches they run in.

    A replaced address appears in two batches: the first occurrence destroys
    the old object, the second creates its successor.
    """

    metadata: PlanMetadata
    changes: list[ResourceChange]
    batches: list[list[str]] = Field(default_factory=list)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def change(self, address: str) -> ResourceChange:
        for c in self.changes:
            if c.address == address:
                return c
        raise KeyError(address)

    def batch_changes(self) -> list[list[ResourceChange]]:
        """Batches resolved to their ``ResourceChange`` objects."""
        by_addr = {c.address: c for c in self.changes}
        return [[by_addr[a] for a in batch] for batch in self.batches]

    def is_empty(self) -> bool:
        return all(c.action == Action.NOOP for c in self.changes)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class ResourceOutcome(BaseModel):
    address: str
    action: Action
    status: OutcomeStatus
    reason: str | None = None


class ApplyResult(BaseModel):
    outcomes: list[ResourceOutcome] = Field(default_factory=list)

    def by_status(self, status: OutcomeStatus) -> list[ResourceOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def applied(self) -> list[ResourceOutcome]:
        return self.by_status(OutcomeStatus.APPLIED)

    @property
    def failed(self) -> list[ResourceOutcome]:
        return self.by_status(OutcomeStatus.FAILED)

    @property
    def pending(self) -> list[ResourceOutcome]:
        return self.by_status(OutcomeStatus.PENDING)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.pending

    def outcome(self, address: str) -> ResourceOutcome:
        for o in self.outcomes:
            if o.address == address:
                return o
        raise KeyError(address)

    def summary(self) -> dict[str, int]:
        """Count applied outcomes by action."""
        counts = {a.value: 0 for a in Action}
        for o in self.applied:
            counts[o.action.value] += 1
        return counts

    def status_counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in OutcomeStatus}
        for o in self.outcomes:
            counts[o.status.value] += 1
        return counts
