"""Configuration models for YAML-based provisioning."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from infra_provisioner.resources.base import Resource  # noqa: TC001 - Pydantic needs this at runtime


class ProviderConfig(BaseSettings):
    """AWS connection settings.

    Fields can be set via YAML (constructor kwargs) or environment variables
    with the ``AWS_`` prefix. Constructor kwargs take precedence. Credentials
    are never part of the configuration: boto3 resolves them from the usual
    chain (environment, shared credentials file, instance role).
    """

    model_config = SettingsConfigDict(env_prefix="AWS_")

    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None


class EngineSettings(BaseSettings):
    """Execution knobs, overridable with ``INFRA_`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="INFRA_")

    parallelism: int = Field(default=10, ge=1)
    on_failure: Literal["abort", "continue"] = "abort"
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=0.5, ge=0)
    retry_max_backoff: float = Field(default=30.0, ge=0)
    retry_jitter: float = Field(default=0.0, ge=0)
    lock_timeout: float = Field(default=0.0, ge=0)


def _none_to_list(v: Any) -> Any:
    return v if v is not None else []


def _none_to_dict(v: Any) -> Any:
    return v if v is not None else {}


class Config(BaseModel):
    """Provisioning configuration: validates YAML structure directly."""

    provider: Annotated[ProviderConfig, BeforeValidator(_none_to_dict)] = Field(
        default_factory=ProviderConfig
    )
    engine: Annotated[EngineSettings, BeforeValidator(_none_to_dict)] = Field(
        default_factory=EngineSettings
    )
    state_path: Path = Path(".infra-state.json")
    resources: Annotated[list[Resource], BeforeValidator(_none_to_list)] = []
    config_dir: Path = Path()
