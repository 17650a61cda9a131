"""Application configuration for the drive gateway."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_PORT = 49833


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class GatewaySettings(BaseSettings):
    """Runtime settings for a standalone gateway process."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    host: Optional[str] = env_field(None, "DRIVEGATE_HOST")
    port: int = env_field(DEFAULT_PORT, "DRIVEGATE_PORT")
    any_port: bool = env_field(True, "DRIVEGATE_ANY_PORT")
    root: Optional[Path] = env_field(None, "DRIVEGATE_ROOT")
    aliases: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="DRIVEGATE_ALIASES")
    identifier_param: str = env_field("drive", "DRIVEGATE_IDENTIFIER_PARAM")
    drain_timeout_seconds: float = env_field(5.0, "DRIVEGATE_DRAIN_TIMEOUT")
    metrics_path: Optional[str] = env_field(None, "DRIVEGATE_METRICS_PATH")
    metrics_token: Optional[SecretStr] = env_field(None, "DRIVEGATE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "DRIVEGATE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "DRIVEGATE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "DRIVEGATE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "DRIVEGATE_OTEL_SAMPLER_RATIO")

    @field_validator("aliases", mode="before")
    @classmethod
    def _split_aliases(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return value

    @field_validator("metrics_path")
    @classmethod
    def _check_metrics_path(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith("/"):
            return "/" + value
        return value or None

    def alias_map(self) -> dict[str, Path]:
        """Parse ``name=path`` alias entries."""

        mapping: dict[str, Path] = {}
        for item in self.aliases:
            name, sep, path = item.partition("=")
            if not sep or not name.strip() or not path.strip():
                raise ValueError(f"invalid alias {item!r}; expected NAME=PATH")
            mapping[name.strip()] = Path(path.strip()).expanduser()
        return mapping
