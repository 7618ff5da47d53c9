from __future__ import annotations

import os
from pathlib import Path

HOME_CONFIG_PATH = Path.home() / ".baton" / "baton.toml"
CONFIG_PATH_ENV = "BATON_CONFIG_PATH"


class ConfigError(RuntimeError):
    pass


def display_path(path: Path) -> str:
    try:
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            return f"./{path.relative_to(cwd).as_posix()}"
        home = Path.home()
        if path.is_relative_to(home):
            return f"~/{path.relative_to(home).as_posix()}"
    except Exception:
        return str(path)
    return str(path)


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return HOME_CONFIG_PATH
