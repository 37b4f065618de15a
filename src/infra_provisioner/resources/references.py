"""Resource references and unknown values.

A reference is written ``${kind.name.attribute}`` as a whole attribute value,
e.g. ``vpc_id: "${aws_vpc.main.id}"``. References may appear anywhere inside
nested lists and dicts. The ``id`` attribute resolves to the remote identifier;
any other attribute resolves to the last-applied attribute snapshot.

Values that cannot be known until apply (the referenced resource is being
created or replaced) resolve to :data:`UNKNOWN`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from collections.abc import Callable

_REF_PATTERN = re.compile(r"^\$\{([a-z][a-z0-9_]*)\.([A-Za-z0-9_]+)\.([A-Za-z0-9_]+)\}$")

UNKNOWN_VALUE: Final = "(known after apply)"


@dataclass(frozen=True, slots=True)
class Ref:
    """Typed marker for a reference to another resource's output."""

    kind: str
    name: str
    attribute: str = "id"

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def __str__(self) -> str:
        return f"${{{self.kind}.{self.name}.{self.attribute}}}"


class _Unknown:
    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return UNKNOWN_VALUE


UNKNOWN: Final = _Unknown()


def parse_reference(value: str) -> Ref | None:
    """Return a ``Ref`` if *value* is exactly one ``${kind.name.attr}`` expression."""
    m = _REF_PATTERN.match(value)
    if m is None:
        return None
    return Ref(kind=m.group(1), name=m.group(2), attribute=m.group(3))


def parse_references(value: Any) -> Any:
    """Replace reference strings with ``Ref`` markers, recursively."""
    if isinstance(value, str):
        ref = parse_reference(value)
        return ref if ref is not None else value
    if isinstance(value, dict):
        return {k: parse_references(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_references(v) for v in value]
    return value


def collect_references(value: Any) -> list[Ref]:
    """Collect every ``Ref`` marker in *value* (depth-first, in order)."""
    if isinstance(value, Ref):
        return [value]
    if isinstance(value, dict):
        return [r for v in value.values() for r in collect_references(v)]
    if isinstance(value, list):
        return [r for v in value for r in collect_references(v)]
    return []


def resolve_references(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """Substitute each ``Ref`` with ``lookup(ref)``, recursively."""
    if isinstance(value, Ref):
        return lookup(value)
    if isinstance(value, dict):
        return {k: resolve_references(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    """True if *value* holds ``UNKNOWN`` or its rendered placeholder anywhere."""
    if value is UNKNOWN or value == UNKNOWN_VALUE:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def render(value: Any) -> Any:
    """Make a resolved value JSON-safe (``Ref`` -> string, ``UNKNOWN`` -> placeholder)."""
    if value is UNKNOWN:
        return UNKNOWN_VALUE
    if isinstance(value, Ref):
        return str(value)
    if isinstance(value, dict):
        return {k: render(v) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v) for v in value]
    return value
