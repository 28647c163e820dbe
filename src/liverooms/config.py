"""Server configuration for liverooms.

Settings come from three layers, later layers winning:

1. Defaults on the ``Settings`` dataclass
2. An optional YAML file (``LIVEROOMS_CONFIG`` or an explicit path)
3. ``LIVEROOMS_*`` environment variables

Environment Variables:
    LIVEROOMS_CONFIG: Path to a YAML settings file
    LIVEROOMS_DB: SQLite path, or ":memory:" (read directly by ``liverooms.db``)
    LIVEROOMS_SWEEP_INTERVAL: Seconds between status sweeps (default 60)
    LIVEROOMS_SWEEP_ENABLED: Run the background sweeper (default true)
    LIVEROOMS_BROADCAST_STATUS_TO_GLOBAL: Also push status changes on channel 0
    LIVEROOMS_SUPPRESS_SENDER_ECHO: Skip the originating socket on broadcast
    LIVEROOMS_LOG_LEVEL: Logging level for ``liverooms serve``

Example config.yaml:
    db_path: /var/lib/liverooms/rooms.db
    sweep_interval: 30
    log_level: DEBUG
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "LIVEROOMS_"

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


class LiveroomsConfigError(Exception):
    """Raised when settings are invalid."""

    pass


@dataclass
class Settings:
    """Runtime settings for the server, sweeper and session handler."""

    db_path: str = ":memory:"
    """SQLite database path. ":memory:" keeps everything in process."""

    sweep_interval: float = 60.0
    """Seconds between background status sweeps."""

    sweep_enabled: bool = True
    """Start the sweeper task with the application."""

    broadcast_status_to_global: bool = True
    """Send room_status_update on the global channel as well as the room's."""

    suppress_sender_echo: bool = False
    """Do not echo a live message back to the socket that sent it."""

    log_level: str = "INFO"

    host: str = "0.0.0.0"
    port: int = 8000

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        if self.sweep_interval <= 0:
            raise LiveroomsConfigError(
                f"sweep_interval must be positive, got {self.sweep_interval}"
            )
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise LiveroomsConfigError(f"Unknown log level: {self.log_level!r}")
        self.log_level = self.log_level.upper()
        if not 0 < self.port < 65536:
            raise LiveroomsConfigError(f"Invalid port: {self.port}")

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Settings":
        """Load settings from YAML (if any) and apply environment overrides."""
        data: dict[str, Any] = {}

        config_path = path or os.environ.get(f"{ENV_PREFIX}CONFIG")
        if config_path:
            data.update(_read_yaml(Path(config_path)))

        data.update(_read_env())

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise LiveroomsConfigError(f"Unknown settings: {', '.join(unknown)}")

        return cls(**{name: _coerce(name, value) for name, value in data.items()})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        return asdict(self)


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise LiveroomsConfigError(f"Config file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise LiveroomsConfigError(f"Config file must contain a mapping: {path}")
    return data


def _read_env() -> dict[str, Any]:
    data: dict[str, Any] = {}
    for f in fields(Settings):
        value = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
        if value is not None:
            data[f.name] = value
    # LIVEROOMS_DB is the historical name used by the store
    if "db_path" not in data and os.environ.get(f"{ENV_PREFIX}DB"):
        data["db_path"] = os.environ[f"{ENV_PREFIX}DB"]
    return data


def _coerce(name: str, value: Any) -> Any:
    """Convert YAML/env values to the dataclass field types."""
    default = getattr(Settings, name, None)
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            lowered = str(value).strip().lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(value)
        if isinstance(default, int) and not isinstance(default, bool):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError):
        raise LiveroomsConfigError(f"Invalid value for {name}: {value!r}") from None
    return str(value)


# --- Global singleton ---

_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process settings, loading them on first call."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def set_settings(settings: Settings) -> None:
    """Replace the process settings (tests, CLI overrides)."""
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Forget loaded settings so the next access reloads them."""
    global _settings
    _settings = None
