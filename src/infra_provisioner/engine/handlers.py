"""Engine-facing handler interfaces (the provider adapter contract)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from infra_provisioner.core import AwsProvider
    from infra_provisioner.core.state import StateRecord
    from infra_provisioner.resources.base import Resource
    from infra_provisioner.resources.schema import ResourceSchema


@dataclass(frozen=True)
class EngineContext:
    """Context passed to handlers."""

    provider: AwsProvider


class ResourceHandler:
    """Base class for resource handlers.

    Handlers are responsible for translating resources into remote API calls.
    Subclass, set ``schema`` and override the CRUD methods. Validation is
    optional and defaults to the schema checks.

    Attribute dicts passed to ``create`` and ``update`` are fully resolved:
    references have been replaced with the committed outputs of the
    resources they point to.
    """

    schema: ClassVar[ResourceSchema]

    def validate(self, ctx: EngineContext, desired: Resource) -> list[str]:
        """Single-resource validation. Return list of error messages (empty = valid)."""
        _ = ctx
        return self.schema.validate(desired.attributes)

    def read(self, ctx: EngineContext, prior: StateRecord) -> dict[str, Any] | None:
        """Read the remote object. Return None if it no longer exists."""
        raise NotImplementedError

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create the remote object. Return ``(remote_id, stored attributes)``."""
        raise NotImplementedError

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply ``{attr: {"from": old, "to": new}}`` in place. Return stored attributes."""
        raise NotImplementedError

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        """Delete the remote object.

        Raise ``ResourceNotFoundError`` if it is already gone.
        """
        raise NotImplementedError
