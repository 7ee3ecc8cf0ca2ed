"""Client configuration handling.

Settings come from three layers, later ones winning: field defaults, a YAML
file grouped into sections, then ``KINDSTORE_*`` environment variables (plus
the conventional ``DATASTORE_EMULATOR_HOST``).
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "KINDSTORE_"
EMULATOR_HOST_ENV = "DATASTORE_EMULATOR_HOST"
DEFAULT_CONFIG_PATH = Path("~/.config/kindstore/config.yaml")

# YAML section -> {key in section: Settings field}
SECTIONS: Mapping[str, Mapping[str, str]] = {
    "client": {
        "project_id": "project_id",
        "database_id": "database_id",
        "api_url": "api_url",
        "emulator_host": "emulator_host",
        "transaction_attempts": "transaction_attempts",
    },
    "auth": {
        "metadata_url": "metadata_url",
        "credentials_path": "credentials_path",
        "skip_adc": "skip_adc",
    },
    "transport": {
        "timeout_seconds": "request_timeout_seconds",
        "max_retries": "max_retries",
        "backoff_seconds": "retry_backoff_seconds",
        "max_body_bytes": "max_body_bytes",
    },
    "codec": {"max_depth": "max_depth"},
    "logging": {"level": "log_level", "json": "log_json"},
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    project_id: str = ""
    database_id: str = ""
    api_url: str = "https://datastore.googleapis.com/v1"
    emulator_host: str = ""
    metadata_url: str = "http://metadata.google.internal/computeMetadata/v1"
    credentials_path: Path | None = None
    skip_adc: bool = False
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_backoff_seconds: float = Field(default=0.1, ge=0)
    max_body_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    max_depth: int = Field(default=32, ge=1)
    transaction_attempts: int = Field(default=3, ge=1)
    log_level: str = "INFO"
    log_json: bool = True

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("credentials_path", mode="before")
    @classmethod
    def _expand_credentials_path(cls, value: Any) -> Path | None:
        if value is None or value == "":
            return None
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("credentials_path must be a path or string")

    @field_validator("api_url", "metadata_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def endpoint(self) -> str:
        """Base URL requests are sent to, honouring an emulator host."""
        if self.emulator_host:
            return f"http://{self.emulator_host}/v1"
        return self.api_url

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Build settings from ``path`` (or the discovered config file) and the environment."""
        values = read_config_file(path or config_path())
        values.update(environment_overrides())
        return cls(**values)


def config_path() -> Path | None:
    """``KINDSTORE_CONFIG`` if set, else the default location when it exists."""
    explicit = os.environ.get(ENV_PREFIX + "CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    default = DEFAULT_CONFIG_PATH.expanduser()
    return default if default.is_file() else None


def read_config_file(path: Path | None) -> dict[str, Any]:
    """Map a sectioned YAML document onto Settings field names.

    Top-level keys that already are field names are accepted as well;
    unknown keys are ignored. A missing file yields no values.
    """
    if path is None:
        return {}
    path = path.expanduser()
    if not path.is_file():
        return {}
    document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    values: dict[str, Any] = {}
    for section, content in document.items():
        if isinstance(content, Mapping):
            fields = SECTIONS.get(section, {})
            values.update({fields[name]: value for name, value in content.items() if name in fields})
        elif section in Settings.model_fields:
            values[section] = content
    return values


def environment_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {
        name: os.environ[ENV_PREFIX + name.upper()]
        for name in Settings.model_fields
        if ENV_PREFIX + name.upper() in os.environ
    }
    if os.environ.get(EMULATOR_HOST_ENV) and "emulator_host" not in overrides:
        overrides["emulator_host"] = os.environ[EMULATOR_HOST_ENV]
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings shared by clients and the CLI; tests clear the cache between runs."""
    return Settings.from_yaml()


__all__ = ["Settings", "config_path", "environment_overrides", "get_settings", "read_config_file"]
