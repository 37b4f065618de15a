"""Engine error types."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from infra_provisioner.engine.types import ApplyResult


class EngineError(Exception):
    """Base exception for engine errors."""


# ── Configuration errors (raised before any remote call) ────────────


class ConfigurationError(EngineError):
    """The desired-state description cannot be planned."""


class UnknownResourceKindError(ConfigurationError):
    """Raised when a resource kind has no registered handler."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"Unknown resource kind: {kind}")
        self.kind = kind


class DuplicateAddressError(ConfigurationError):
    """Raised when multiple desired resources share the same address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Duplicate resource address: {address}")
        self.address = address


class UnresolvedReferenceError(ConfigurationError):
    """Raised when a resource references an address that is not declared."""

    def __init__(self, address: str, target: str, *, detail: str = "") -> None:
        msg = f"Resource '{address}' references unknown '{target}'"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.address = address
        self.target = target


class CycleError(ConfigurationError):
    """Raised when dependencies contain a cycle."""

    def __init__(self, addresses: list[str]) -> None:
        msg = "Dependency cycle detected"
        if addresses:
            msg += f": {' -> '.join(addresses)}"
        super().__init__(msg)
        self.addresses = addresses


class ValidationError(ConfigurationError):
    """One or more resources failed plan validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)


# ── Per-resource errors (isolated to a resource's subtree) ──────────


class ProviderError(EngineError):
    """The remote API rejected an operation."""


class TransientError(ProviderError):
    """Network or throttling failure that may succeed on retry."""


class ResourceNotFoundError(ProviderError):
    """The remote object no longer exists."""


class StateConflictError(EngineError):
    """Stored state does not match what the plan expected at apply time."""

    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"State conflict on {address}: {message}")
        self.address = address


class UnknownStateError(StateConflictError):
    """A remote operation started but its outcome was never committed."""

    def __init__(self, addresses: list[str]) -> None:
        super().__init__(
            ", ".join(addresses),
            "an operation was started but never committed; inspect the remote "
            "objects, then run `forget` for each address",
        )
        self.addresses = addresses


# ── Run-level errors ────────────────────────────────────────────────


class StaleStateError(EngineError):
    """The state file moved on since a snapshot of it was taken."""


class StalePlanError(StaleStateError):
    """Raised when applying a plan against a different state than planned."""


class StateLockError(EngineError):
    """Raised when the state lock cannot be acquired or released."""


class ApplyCanceled(EngineError):
    """Raised when an apply is canceled (e.g., Ctrl-C)."""

    def __init__(self, message: str = "Apply canceled", *, result: ApplyResult | None = None):
        super().__init__(message)
        self.result = result
