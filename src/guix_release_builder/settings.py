from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

APP_DIR_NAME = "guix-release-builder"
TRACE = 5

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}


@dataclass(frozen=True)
class RuntimeSettings:
    """Process settings loaded from environment with fail-fast validation."""

    config_dir: str = ""
    state_dir: str = ""
    log_level: str = "info"
    lock_stale_seconds: int = 300
    heartbeat_seconds: int = 30
    recursion_limit: int = 200

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            config_dir=os.getenv("GRB_CONFIG_DIR", ""),
            state_dir=os.getenv("GRB_STATE_DIR", ""),
            log_level=os.getenv("GRB_LOG", "info"),
            lock_stale_seconds=_get_env_int("GRB_LOCK_STALE_SECONDS", default=300, minimum=5),
            heartbeat_seconds=_get_env_int("GRB_HEARTBEAT_SECONDS", default=30, minimum=1),
            recursion_limit=_get_env_int("GRB_RECURSION_LIMIT", default=200, minimum=25),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        log_level = self.log_level.strip().lower()
        if log_level not in LOG_LEVELS:
            raise ValueError(f"GRB_LOG must be one of: {', '.join(sorted(LOG_LEVELS))}, got: {self.log_level!r}")
        if self.heartbeat_seconds >= self.lock_stale_seconds:
            raise ValueError(
                "GRB_HEARTBEAT_SECONDS must be smaller than GRB_LOCK_STALE_SECONDS, "
                f"got: {self.heartbeat_seconds} >= {self.lock_stale_seconds}"
            )
        return RuntimeSettings(
            config_dir=self.config_dir.strip(),
            state_dir=self.state_dir.strip(),
            log_level=log_level,
            lock_stale_seconds=self.lock_stale_seconds,
            heartbeat_seconds=self.heartbeat_seconds,
            recursion_limit=self.recursion_limit,
        )

    @property
    def log_level_number(self) -> int:
        return LOG_LEVELS[self.log_level]

    @property
    def config_path(self) -> Path:
        if self.config_dir:
            return Path(self.config_dir)
        return _xdg_dir("XDG_CONFIG_HOME", ".config") / APP_DIR_NAME

    @property
    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir)
        return _xdg_dir("XDG_STATE_HOME", ".local/state") / APP_DIR_NAME

    @property
    def config_file(self) -> Path:
        return self.config_path / "config.json"

    @property
    def registry_path(self) -> Path:
        return self.state_path / "registry"

    @property
    def watcher_record_path(self) -> Path:
        return self.state_path / "watch.json"

    @property
    def watcher_log_path(self) -> Path:
        return self.state_path / "watch.log"

    @property
    def default_build_dir(self) -> Path:
        return self.state_path / "guix-builds"


def _xdg_dir(variable: str, fallback: str) -> Path:
    raw = os.getenv(variable, "").strip()
    return Path(raw) if raw else Path.home() / fallback


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
