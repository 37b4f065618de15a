"""Desired-state resource entries."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from infra_provisioner.resources.references import Ref, collect_references, parse_references


class Resource(BaseModel):
    """One resource of the desired-state description.

    Resources are pure data - they define the desired state.
    Handlers know how to CRUD resources.

    Attribute values may be (or contain) ``${kind.name.attr}`` reference
    strings; they become typed ``Ref`` markers when the graph is built.
    """

    model_config = ConfigDict(extra="forbid")

    kind: str = Field(pattern=r"^[a-z][a-z0-9_]*$")
    name: str = Field(pattern=r"^[a-zA-Z0-9_]+$")
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Lifecycle
    depends_on: list[str] = []

    def references(self) -> list[Ref]:
        """Typed references found in the attribute values."""
        return collect_references(parse_references(self.attributes))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def address(self) -> str:
        """Unique address for this resource (e.g., 'aws_vpc.main')."""
        return f"{self.kind}.{self.name}"
