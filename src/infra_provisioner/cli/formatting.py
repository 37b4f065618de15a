"""Plan and apply output rendering (Terraform-style)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, NamedTuple

import typer

from infra_provisioner.engine.types import Action, OutcomeStatus
from infra_provisioner.resources.references import UNKNOWN_VALUE

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from infra_provisioner.engine.registry import ResourceKindRegistry
    from infra_provisioner.engine.types import ApplyResult, Plan, ResourceChange

SENSITIVE_VALUE = "(sensitive value)"


class _ActionStyle(NamedTuple):
    color: str
    symbol: str
    progress_verb: str
    done_verb: str


_ACTION_STYLES: dict[str, _ActionStyle] = {
    "create": _ActionStyle("green", "+", "Creating", "Creation complete"),
    "update": _ActionStyle("yellow", "~", "Updating", "Update complete"),
    "replace": _ActionStyle("magenta", "-/+", "Replacing", "Replacement complete"),
    "delete": _ActionStyle("red", "-", "Destroying", "Destroy complete"),
    "no-op": _ActionStyle("bright_black", " ", "", ""),
}

_ACTION_DESC: dict[str, str] = {
    "create": "will be created",
    "update": "will be updated in-place",
    "replace": "must be replaced",
    "delete": "will be destroyed",
    "no-op": "is up-to-date",
}

_STATUS_COLORS: dict[str, str] = {
    "applied": "green",
    "skipped": "bright_black",
    "failed": "red",
    "pending": "yellow",
}


def styler(color: bool) -> Callable[..., str]:
    """Return ``typer.style`` when *color* is True, otherwise a passthrough."""
    if color:
        return typer.style
    return lambda text, **_kw: text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def has_actionable_changes(plan: Plan) -> bool:
    """Return True if the plan contains any non-NOOP changes."""
    return any(c.action != Action.NOOP for c in plan.changes)


def sensitive_attributes(registry: ResourceKindRegistry) -> dict[str, frozenset[str]]:
    """Map kind -> attributes whose values must not be printed."""
    return {kind: registry.get(kind).schema.sensitive for kind in registry.kinds()}


def _align_values(items: dict[str, str]) -> list[tuple[str, str]]:
    """Right-pad keys so ``=`` signs align."""
    if not items:
        return []
    max_key = max(len(k) for k in items)
    return [(k.ljust(max_key), v) for k, v in items.items()]


def _format_value(value: Any) -> str:
    """Format a value for display in a plan diff block."""
    if value == UNKNOWN_VALUE:
        return UNKNOWN_VALUE
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------------------------------------------------------
# Plan rendering
# ---------------------------------------------------------------------------


def _change_attrs(change: ResourceChange, hidden: frozenset[str]) -> dict[str, str]:
    """Extract displayable ``key -> formatted value`` pairs from a change."""

    def fmt(key: str, value: Any) -> str:
        return SENSITIVE_VALUE if key in hidden else _format_value(value)

    if change.action == Action.CREATE and change.planned:
        return {k: fmt(k, v) for k, v in change.planned.items()}
    if change.action in (Action.UPDATE, Action.REPLACE) and change.diff:
        attrs = {}
        for k, d in change.diff.items():
            line = f"{fmt(k, d['from'])} -> {fmt(k, d['to'])}"
            if k in change.requires_replace:
                line += " # forces replacement"
            attrs[k] = line
        return attrs
    if change.action == Action.DELETE and change.prior_id:
        return {"id": _format_value(change.prior_id)}
    return {}


def format_change(
    change: ResourceChange,
    *,
    color: bool = True,
    sensitive: Mapping[str, frozenset[str]] | None = None,
) -> str:
    """Render a single ResourceChange as a Terraform-style block."""
    style = styler(color)
    action_val = change.action.value
    sc = {"fg": _ACTION_STYLES[action_val].color}
    symbol = _ACTION_STYLES[action_val].symbol
    hidden = (sensitive or {}).get(change.kind, frozenset())

    name = change.address.split(".", 1)[1] if "." in change.address else change.address
    desc = _ACTION_DESC[action_val]
    if change.action == Action.UPDATE and not change.diff:
        desc += " (dependencies changed, state only)"
    lines = [
        style(f"  # {change.address} {desc}", bold=True, **sc),
        style(f'  {symbol} resource "{change.kind}" "{name}" {{', **sc),
        *[
            style(f"      {symbol} {k} = {v}", **sc)
            for k, v in _align_values(_change_attrs(change, hidden))
        ],
        style("    }", **sc),
    ]
    return "\n".join(lines)


def format_changes(
    changes: list[ResourceChange],
    *,
    color: bool = True,
    sensitive: Mapping[str, frozenset[str]] | None = None,
) -> str:
    """Render a list of changes as Terraform-style diff blocks."""
    blocks = [
        format_change(c, color=color, sensitive=sensitive)
        for c in changes
        if c.action != Action.NOOP
    ]
    if not blocks:
        return "No changes. Resources are up-to-date."
    return "\n\n".join(blocks)


def format_batches(plan: Plan, *, color: bool = True) -> str:
    """Render the execution order, one numbered line per batch."""
    style = styler(color)
    if not plan.batches:
        return ""
    lines = ["Execution order:"]
    seen: set[str] = set()
    for i, batch in enumerate(plan.batch_changes(), start=1):
        entries = []
        for c in batch:
            # First sighting of a replace is its destroy half.
            if c.action == Action.REPLACE and c.address not in seen:
                s = _ACTION_STYLES[Action.DELETE.value]
                entries.append(style(f"{s.symbol} {c.address} (old)", fg=s.color))
            else:
                s = _ACTION_STYLES[c.action.value]
                entries.append(style(f"{s.symbol} {c.address}", fg=s.color))
            seen.add(c.address)
        lines.append(f"  {i}. {', '.join(entries)}")
    return "\n".join(lines)


def format_plan(
    plan: Plan,
    *,
    color: bool = True,
    sensitive: Mapping[str, frozenset[str]] | None = None,
) -> str:
    """Render the full plan output with per-change diff blocks and batches."""
    out = format_changes(plan.changes, color=color, sensitive=sensitive)
    batches = format_batches(plan, color=color)
    return f"{out}\n\n{batches}" if batches else out


# ---------------------------------------------------------------------------
# Apply report
# ---------------------------------------------------------------------------


def format_apply_report(result: ApplyResult, *, color: bool = True) -> str:
    """Per-resource outcome lines for everything that was not simply applied."""
    style = styler(color)
    lines = []
    for o in result.outcomes:
        if o.status in (OutcomeStatus.APPLIED, OutcomeStatus.SKIPPED):
            continue
        line = f"  {o.status.value:<8} {o.address} ({o.action.value})"
        if o.reason:
            line += f": {o.reason}"
        lines.append(style(line, fg=_STATUS_COLORS[o.status.value]))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_PLAN_VERBS = ("to add", "to change", "to replace", "to destroy")
_APPLY_VERBS = ("added", "changed", "replaced", "destroyed")
_SUMMARY_COLORS = ("green", "yellow", "magenta", "red")


def _format_summary(summary: dict[str, int], verbs: tuple[str, ...], *, color: bool) -> str:
    """Build the ``N verb, N verb, ...`` part of a summary line."""
    style = styler(color)
    counts = (
        summary.get("create", 0),
        summary.get("update", 0),
        summary.get("replace", 0),
        summary.get("delete", 0),
    )
    parts = [
        style(f"{n} {verb}", fg=fg) if n and color else f"{n} {verb}"
        for n, verb, fg in zip(counts, verbs, _SUMMARY_COLORS, strict=True)
    ]
    return ", ".join(parts)


def changes_summary(changes: list[ResourceChange]) -> dict[str, int]:
    """Count changes by action type."""
    summary: dict[str, int] = {"create": 0, "update": 0, "replace": 0, "delete": 0}
    for c in changes:
        if c.action != Action.NOOP:
            summary[c.action.value] += 1
    return summary


def format_plan_summary(
    summary: dict[str, int], *, color: bool = True, header: str = "Plan"
) -> str:
    """Render ``Plan: 2 to add, 1 to change, 0 to replace, 0 to destroy.``"""
    return f"{header}: {_format_summary(summary, _PLAN_VERBS, color=color)}."


def format_apply_summary(result: ApplyResult, *, color: bool = True) -> str:
    """Render ``Apply complete! Resources: 2 added, ...`` (or the failure variant)."""
    style = styler(color)
    counts = _format_summary(result.summary(), _APPLY_VERBS, color=color)
    if result.ok:
        header = style("Apply complete!", fg="green", bold=True)
        return f"{header} Resources: {counts}."
    status = result.status_counts()
    header = style("Apply incomplete.", fg="red", bold=True)
    return (
        f"{header} Resources: {counts}. "
        f"{status['failed']} failed, {status['pending']} pending."
    )
