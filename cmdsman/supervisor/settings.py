"""Supervisor runtime settings: defaults, optional JSON file, CMDSMAN_* env overrides."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

CMDSMAN_DIR = Path.home() / ".cmdsman"
SETTINGS_PATH = CMDSMAN_DIR / "settings.json"
ALLOWED_STORE_BACKENDS = {"json", "sqlite", "memory"}
ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
ENV_PREFIX = "CMDSMAN_"


@dataclass(frozen=True)
class SupervisorSettings:
    data_dir: Path = CMDSMAN_DIR / "data"
    store_backend: str = "json"
    host: str = "127.0.0.1"
    port: int = 5000
    log_level: str = "INFO"
    log_file: str = ""
    stop_poll_interval: float = 0.1
    stop_timeout: float = 10.0
    kill_grace: float = 2.0
    reset_settle_delay: float = 0.5
    max_emits: int = 10000
    default_tail_lines: int = 100


_FIELD_TYPES: dict[str, type] = {
    "data_dir": Path,
    "store_backend": str,
    "host": str,
    "port": int,
    "log_level": str,
    "log_file": str,
    "stop_poll_interval": float,
    "stop_timeout": float,
    "kill_grace": float,
    "reset_settle_delay": float,
    "max_emits": int,
    "default_tail_lines": int,
}


def _coerce(name: str, value: Any) -> Any:
    kind = _FIELD_TYPES[name]
    try:
        if kind is Path:
            return Path(str(value)).expanduser()
        if kind is str:
            return str(value).strip()
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid value for {name}: {value!r}") from exc


def validate_settings(settings: SupervisorSettings) -> SupervisorSettings:
    """Check cross-field constraints and normalize enum-like values."""
    backend = settings.store_backend.lower()
    if backend not in ALLOWED_STORE_BACKENDS:
        raise ValueError(f"unsupported store_backend: {settings.store_backend}")
    level = settings.log_level.upper()
    if level not in ALLOWED_LOG_LEVELS:
        raise ValueError(f"unsupported log_level: {settings.log_level}")
    if not 0 < settings.port < 65536:
        raise ValueError("port must be between 1 and 65535")
    if settings.stop_poll_interval <= 0:
        raise ValueError("stop_poll_interval must be positive")
    if settings.kill_grace < 0 or settings.reset_settle_delay < 0:
        raise ValueError("kill_grace and reset_settle_delay must not be negative")
    if settings.max_emits < 1:
        raise ValueError("max_emits must be at least 1")
    if settings.default_tail_lines < 1:
        raise ValueError("default_tail_lines must be at least 1")
    return replace(settings, store_backend=backend, log_level=level)


def _read_settings_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"unreadable settings file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("settings file must contain an object")
    return raw


def load_settings(
    environ: Mapping[str, str] | None = None,
    path: Path | None = None,
) -> SupervisorSettings:
    """Build settings from defaults, the JSON settings file, then the environment."""
    env = os.environ if environ is None else environ
    if path is None:
        path = Path(env.get(f"{ENV_PREFIX}SETTINGS_FILE", str(SETTINGS_PATH))).expanduser()

    overrides: dict[str, Any] = {}
    known = {f.name for f in fields(SupervisorSettings)}
    for key, value in _read_settings_file(path).items():
        if key in known:
            overrides[key] = _coerce(key, value)
    for name in known:
        env_value = env.get(f"{ENV_PREFIX}{name.upper()}")
        if env_value is not None and env_value.strip():
            overrides[name] = _coerce(name, env_value)
    return validate_settings(replace(SupervisorSettings(), **overrides))
