"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Engine definitions live in lazy.toml. Secrets referenced by
``repository_auth`` (``password_env = "DOCKER_PW"``) stay in the process
environment and are resolved at install time, never stored here.
Environment variables override the file using the ``LAZY_`` prefix and
``__`` as the nested delimiter (e.g. ``LAZY_SERVER__PORT``).

Priority (highest wins): init args > env vars > .env > lazy.toml

Usage::

    from lazy.config import get_settings

    s = get_settings()
    for name, engine in s.engines.items():
        print(name, engine.image)
"""

from __future__ import annotations

import os
import re
from typing import Any

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

DEFAULT_CONFIG_FILE = "lazy.toml"

_ENGINE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in lazy.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class EngineConfig(_StrictModel):
    """One ``[engines.<name>]`` table (the ``[ui]`` table has the same shape)."""

    image: str
    command: str | None = None
    env: list[str] = []  # ["KEY=value", ...] passed through verbatim
    import_env: list[str] = []  # names copied from lazy's own environment
    volumes: list[str] = []  # docker bind specs, "src:dst[:mode]"
    working_dir: str | None = None
    repository_auth: dict[str, str] = {}  # overrides the top-level default
    port: int = 80
    meta: dict[str, Any] = {}
    languages: list[str] = []  # empty = engine is consulted for every language
    healthcheck_path: str | None = None

    @field_validator("image")
    @classmethod
    def _validate_image(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("image cannot be empty")
        return v


class ServerConfig(_StrictModel):
    host: str = "0.0.0.0"
    port: int = 80


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LAZY_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    id: str = "default"
    engines: dict[str, EngineConfig] = {}  # [engines.<name>]
    ui: EngineConfig | None = None
    repository_auth: dict[str, str] = {}
    service_url: str = "http://localhost"
    private_api_port: int = 17013
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()

    @field_validator("id", mode="before")
    @classmethod
    def _default_id(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "default"
        return v

    @field_validator("engines")
    @classmethod
    def _validate_engine_names(cls, v: dict[str, EngineConfig]) -> dict[str, EngineConfig]:
        for name in v:
            if not _ENGINE_NAME_RE.match(name):
                raise ValueError(f"invalid engine name {name!r}")
            if name == "ui":
                raise ValueError("engine name 'ui' is reserved for the [ui] table")
        return v

    @field_validator("service_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > lazy.toml > file secrets."""
        toml_file = os.environ.get("LAZY_CONFIG_FILE", DEFAULT_CONFIG_FILE)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
