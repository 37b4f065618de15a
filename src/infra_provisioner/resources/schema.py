"""Static attribute metadata for a resource kind.

Each provider handler declares a ``ResourceSchema`` describing how the engine
treats every attribute of its kind:

- ``updatable``: can be changed in place by the handler's ``update``
- ``replace_only``: a change forces destroy + create
- ``computed``: populated by the provider, never set in desired state
- ``sensitive``: masked in plan output
- ``compare``: per-attribute comparison strategy used by the differ
- ``defaults``: the value an attribute returns to once it is no longer declared;
  attributes without one keep whatever the provider holds
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, TypeAlias

if TYPE_CHECKING:
    from collections.abc import Mapping

CompareStrategy: TypeAlias = Literal["partial", "exact", "set"]


@dataclass(frozen=True, slots=True)
class ResourceSchema:
    kind: str
    required: frozenset[str] = frozenset()
    updatable: frozenset[str] = frozenset()
    replace_only: frozenset[str] = frozenset()
    computed: frozenset[str] = frozenset()
    sensitive: frozenset[str] = frozenset()
    compare: Mapping[str, CompareStrategy] = field(default_factory=dict)
    defaults: Mapping[str, Any] = field(default_factory=dict)
    plan_priority: int = 100

    @property
    def settable(self) -> frozenset[str]:
        """Attributes that may appear in desired state."""
        return self.updatable | self.replace_only

    @property
    def referenceable(self) -> frozenset[str]:
        """Attributes other resources may reference (``id`` is always allowed)."""
        return self.settable | self.computed | {"id"}

    def requires_replace(self, attribute: str) -> bool:
        """Undeclared attributes are treated as replace-only."""
        return attribute not in self.updatable

    def validate(self, attributes: Mapping[str, Any]) -> list[str]:
        """Check required and unknown attributes. Return error messages."""
        errors: list[str] = []
        for attr in sorted(self.required - set(attributes)):
            errors.append(f"missing required attribute '{attr}'")
        for attr in sorted(set(attributes) - self.settable):
            if attr in self.computed:
                errors.append(f"attribute '{attr}' is computed and cannot be set")
            else:
                errors.append(f"unsupported attribute '{attr}'")
        return errors
