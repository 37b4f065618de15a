"""Resource kind registry for handler dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from infra_provisioner.engine.errors import UnknownResourceKindError

if TYPE_CHECKING:
    from infra_provisioner.engine.handlers import ResourceHandler
    from infra_provisioner.resources.schema import ResourceSchema


@dataclass(frozen=True)
class ResourceKindRegistration:
    kind: str
    schema: ResourceSchema
    handler: ResourceHandler


class ResourceKindRegistry:
    """Registry mapping kind -> (schema, handler)."""

    def __init__(self) -> None:
        self._registrations: dict[str, ResourceKindRegistration] = {}

    def register(self, handler: ResourceHandler) -> None:
        schema = getattr(handler, "schema", None)
        kind = getattr(schema, "kind", None)
        if not isinstance(kind, str) or not kind:
            raise ValueError("Resource handler must define a `schema` with a non-empty `kind`")

        if kind in self._registrations:
            raise ValueError(f"Resource kind already registered: {kind}")

        self._registrations[kind] = ResourceKindRegistration(
            kind=kind,
            schema=handler.schema,
            handler=handler,
        )

    def get(self, kind: str) -> ResourceKindRegistration:
        try:
            return self._registrations[kind]
        except KeyError as e:
            raise UnknownResourceKindError(kind) from e

    def __contains__(self, kind: object) -> bool:
        return kind in self._registrations

    def kinds(self) -> list[str]:
        return sorted(self._registrations)
