"""
Environment-driven settings for the engine, loader and CLI.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class ChorusSettings:
    idle_timeout: float = 0.5
    search_path: List[str] = field(default_factory=lambda: ["."])
    log_level: str = "WARNING"
    record_trace: bool = True


def _env_float(environ, name: str, default: float) -> float:
    try:
        return float(environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_bool(environ, name: str, default: bool = True) -> bool:
    val = environ.get(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def load_settings(env: Optional[dict] = None) -> ChorusSettings:
    environ = env if env is not None else os.environ
    search_path = ["."]
    raw_path = environ.get("CHORUS_SEARCH_PATH")
    if raw_path:
        search_path += [entry for entry in raw_path.split(os.pathsep) if entry]
    return ChorusSettings(
        idle_timeout=_env_float(environ, "CHORUS_IDLE_TIMEOUT", 0.5),
        search_path=search_path,
        log_level=(environ.get("CHORUS_LOG_LEVEL") or "WARNING").upper(),
        record_trace=_env_bool(environ, "CHORUS_TRACE", True),
    )


def get_settings() -> ChorusSettings:
    """
    Resolve settings from the current environment on every call so tests can
    monkeypatch variables.
    """
    return load_settings()
