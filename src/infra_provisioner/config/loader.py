"""YAML configuration file loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML

from infra_provisioner.config.schema import Config

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from infra_provisioner.resources.base import Resource


class ConfigError(Exception):
    """Raised for configuration loading / validation errors."""


# Field name -> environment variables, first match wins.
_PROVIDER_ENV_MAP: dict[str, tuple[str, ...]] = {
    "region": ("AWS_REGION", "AWS_DEFAULT_REGION"),
    "profile": ("AWS_PROFILE",),
    "endpoint_url": ("AWS_ENDPOINT_URL",),
}

_ENGINE_ENV_MAP: dict[str, tuple[str, ...]] = {
    "parallelism": ("INFRA_PARALLELISM",),
    "on_failure": ("INFRA_ON_FAILURE",),
    "retry_max_attempts": ("INFRA_RETRY_MAX_ATTEMPTS",),
    "retry_backoff": ("INFRA_RETRY_BACKOFF",),
    "retry_max_backoff": ("INFRA_RETRY_MAX_BACKOFF",),
    "lock_timeout": ("INFRA_LOCK_TIMEOUT",),
}


def _resolve_section(
    raw: Mapping[str, Any] | None,
    env_map: Mapping[str, tuple[str, ...]],
    dotenv_vals: Mapping[str, str | None],
    section: str,
) -> dict[str, Any]:
    """Resolve one section from YAML, env vars, and ``.env`` file.

    Priority (highest wins): YAML value > env var > ``.env`` file.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{section}' must be a mapping")
    unknown = sorted(set(raw) - set(env_map))
    if unknown:
        raise ConfigError(f"Unknown {section} setting(s): {', '.join(unknown)}")

    resolved: dict[str, Any] = {}
    for field, env_keys in env_map.items():
        val = raw.get(field)
        if val is None:
            val = next((os.environ[k] for k in env_keys if os.environ.get(k)), None)
        if val is None:
            val = next((dotenv_vals[k] for k in env_keys if dotenv_vals.get(k)), None)
        if val is not None:
            resolved[field] = val
    return resolved


def _validate_unique_addresses(resources: list[Resource]) -> list[str]:
    """Check that no two resources share the same ``kind.name`` address."""
    seen: dict[str, int] = {}
    errors: list[str] = []
    for i, r in enumerate(resources):
        if r.address in seen:
            errors.append(
                f"Duplicate resource address '{r.address}': "
                f"found at resources[{seen[r.address]}] and resources[{i}]"
            )
        else:
            seen[r.address] = i
    return errors


def load_config(path: Path | str) -> Config:
    """Load a YAML configuration file and return a ``Config`` object.

    Raises:
        ConfigError: On YAML parse errors, missing sections, or validation failures.
    """
    path = Path(path)

    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    env_file = path.parent / ".env"
    dotenv_vals = dotenv_values(env_file, encoding="utf-8-sig") if env_file.is_file() else {}

    try:
        raw["provider"] = _resolve_section(
            raw.get("provider"), _PROVIDER_ENV_MAP, dotenv_vals, "provider"
        )
        raw["engine"] = _resolve_section(raw.get("engine"), _ENGINE_ENV_MAP, dotenv_vals, "engine")
        config = Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    config.config_dir = path.parent

    errors = _validate_unique_addresses(config.resources)
    if errors:
        raise ConfigError("\n".join(errors))

    logger.info("Loaded config from %s (%d resources)", path, len(config.resources))
    return config
