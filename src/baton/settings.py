from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, StringConstraints, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import ConfigError, resolve_config_path
from .listener import parse_address

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


def _default_control_socket() -> Path:
    return Path(tempfile.gettempdir()) / f"baton-{os.getuid()}.sock"


class BatonSettings(BaseSettings):
    """Server configuration; frozen once loaded and passed to each component."""

    model_config = SettingsConfigDict(
        frozen=True,
        extra="forbid",
        env_prefix="BATON__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    addr: NonEmptyStr = ":8000"
    control_socket: Path = Field(default_factory=_default_control_socket)
    shutdown_timeout: float = Field(default=10.0, gt=0)
    child_timeout: float = Field(default=5.0, gt=0)

    root: Path | None = None
    pid_file: Path | None = None
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_format: Literal["console", "json"] = "console"

    @field_validator("addr")
    @classmethod
    def _validate_addr(cls, value: str) -> str:
        parse_address(value)
        return value

    @field_validator("control_socket", "root", "pid_file")
    @classmethod
    def _expand_user(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_settings(
    path: str | Path | None = None, **overrides: Any
) -> tuple[BatonSettings, Path]:
    """Load settings from TOML (if present) and ``BATON__*`` env vars.

    Keyword *overrides* that are not ``None`` win over both.
    """
    cfg_path = resolve_config_path(path)
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.") from None
    return _load_settings_from_path(cfg_path, overrides), cfg_path


def _load_settings_from_path(cfg_path: Path, overrides: dict[str, Any]) -> BatonSettings:
    cfg = dict(BatonSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "BatonSettingsBound",
        (BatonSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    init = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Bound(**init)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"Failed to load config {cfg_path}: {exc}") from exc
