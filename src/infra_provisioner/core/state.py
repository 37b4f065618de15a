"""State management for tracking deployed resources."""

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Operation = Literal["create", "update", "delete"]


def _canonical_json(obj: Any) -> str:
    # Stable encoding for hashes/digests. `default=str` keeps it robust for
    # datetimes/paths/etc while staying deterministic enough for our use.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_attributes_hash(attrs: Mapping[str, Any]) -> str:
    """Compute a stable hash for a resource's stored attributes."""
    payload = _canonical_json(attrs)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_dependency_fingerprint(dependency_ids: Mapping[str, str]) -> str:
    """Hash of ``{dependency address: remote id}`` for a resource's dependencies."""
    payload = _canonical_json(dict(sorted(dependency_ids.items())))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class StateRecord(BaseModel):
    """A tracked resource in the state file.

    Attributes:
        address: Unique resource address (e.g., "aws_subnet.public")
        kind: Resource kind (e.g., "aws_subnet")
        name: Logical resource name (e.g., "public")
        remote_id: Identifier assigned by the provider
        attributes: Last-applied attribute snapshot
        attributes_hash: SHA256 hash for change detection
        dependencies: Addresses of dependencies at the time of the last apply
        dependency_fingerprint: Hash of the dependencies' remote ids
        created_at: When the resource was created
        updated_at: When the resource was last updated
    """

    address: str
    kind: str
    name: str
    remote_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    attributes_hash: str = ""
    dependencies: list[str] = Field(default_factory=list)
    dependency_fingerprint: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PendingOperation(BaseModel):
    """Journal entry for a remote operation whose outcome is not yet committed."""

    address: str
    operation: Operation
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class State(BaseModel):
    """Terraform-style state file for tracking deployed resources.

    Attributes:
        version: State file format version
        serial: Incremented on every persisted mutation
        lineage: Identity of this state's history
        resources: Mapping of resource addresses to records
        pending: Remote operations started but not yet committed
    """

    version: int = 1
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, StateRecord] = Field(default_factory=dict)
    pending: dict[str, PendingOperation] = Field(default_factory=dict)

    def save(self, path: Path) -> None:
        """Save state to a JSON file.

        - Writes atomically (temp file + rename)
        - Writes a `.backup` copy of the previous state when overwriting
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        backup_path = Path(str(path) + ".backup")
        # Avoid TOCTOU race between exists() and read_bytes().
        with contextlib.suppress(FileNotFoundError):
            backup_path.write_bytes(path.read_bytes())

        data = self.model_dump(mode="json")
        content = json.dumps(data, indent=2, sort_keys=True) + "\n"

        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()
        logger.debug("State saved: serial=%d path=%s", self.serial, path)

    @classmethod
    def load(cls, path: Path) -> "State":
        """Load state from a JSON file."""
        state = cls.model_validate_json(path.read_text(encoding="utf-8"))
        logger.debug("State loaded from %s", path)
        return state

    @classmethod
    def load_or_create(cls, path: Path) -> "State":
        """Load existing state or create a new one."""
        if path.exists():
            return cls.load(path)
        logger.debug("Created new state for %s", path)
        return cls()


def compute_state_digest(state: State) -> str:
    """Compute a stable digest of state content (excluding timestamps).

    Used for stale-plan detection. Timestamps (`created_at`/`updated_at`,
    `started_at`) are left out so that they never force a re-plan.
    """
    resources = []
    for address, rec in sorted(state.resources.items(), key=lambda kv: kv[0]):
        resources.append(
            {
                "address": address,
                "kind": rec.kind,
                "name": rec.name,
                "remote_id": rec.remote_id,
                "attributes_hash": rec.attributes_hash,
                "dependencies": sorted(rec.dependencies),
                "dependency_fingerprint": rec.dependency_fingerprint,
            }
        )

    digestable = {
        "version": state.version,
        "lineage": state.lineage,
        "serial": state.serial,
        "resources": resources,
        "pending": sorted(f"{p.address}:{p.operation}" for p in state.pending.values()),
    }
    payload = _canonical_json(digestable)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class StateStore:
    """Single-writer handle on a state file.

    Every mutation (``begin``, ``commit``, ``remove``, ``abandon``) bumps the
    serial and rewrites the file atomically before returning. Mutations are
    serialized with a lock so that concurrent workers never interleave writes.
    Reads return copies.
    """

    def __init__(self, path: Path, state: State | None = None) -> None:
        self._path = Path(path)
        self._state = state
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state(self) -> State:
        if self._state is None:
            self._state = State.load_or_create(self._path)
        return self._state

    def load(self) -> dict[str, StateRecord]:
        """(Re)load state from disk and return the records by address."""
        with self._lock:
            self._state = State.load_or_create(self._path)
            return {a: r.model_copy(deep=True) for a, r in self._state.resources.items()}

    def get(self, address: str) -> StateRecord | None:
        with self._lock:
            rec = self.state.resources.get(address)
            return rec.model_copy(deep=True) if rec is not None else None

    def pending(self) -> dict[str, PendingOperation]:
        with self._lock:
            return dict(self.state.pending)

    def begin(self, address: str, operation: Operation) -> None:
        """Journal that a remote *operation* on *address* is about to start."""
        with self._lock:
            self.state.pending[address] = PendingOperation(address=address, operation=operation)
            self._persist()

    def commit(self, address: str, record: StateRecord) -> None:
        """Upsert *record* after a confirmed remote create/update."""
        if record.address != address:
            raise ValueError(f"Record address mismatch: {record.address} != {address}")
        with self._lock:
            self.state.resources[address] = record
            self.state.pending.pop(address, None)
            self._persist()

    def remove(self, address: str) -> None:
        """Drop the record for *address* after a confirmed remote delete."""
        with self._lock:
            self.state.resources.pop(address, None)
            self.state.pending.pop(address, None)
            self._persist()

    def abandon(self, address: str) -> None:
        """Clear the journal entry for an operation the provider definitely rejected."""
        with self._lock:
            if self.state.pending.pop(address, None) is not None:
                self._persist()

    def save(self) -> None:
        with self._lock:
            self._persist()

    def _persist(self) -> None:
        state = self.state
        state.serial += 1
        state.save(self._path)
