"""
Service settings.

Precedence: defaults < YAML file (config/config.yaml) < environment variables.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import DeckSyncError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "config.yaml"


class SettingsError(DeckSyncError):
    """A setting has a value of the wrong type."""


@dataclass
class ServiceConfig:
    host: str = "0.0.0.0"
    port: int = 9020
    log_level: str = "INFO"
    storage_path: str = "data/deck_sync.db"
    obs_host: str = "localhost"
    obs_port: int = 4455
    obs_password: str = ""
    action_timeout_seconds: float = 5.0
    connect_timeout_seconds: float = 10.0
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    session_queue_size: int = 100
    session_failure_threshold: int = 3
    session_idle_timeout_seconds: float = 60.0
    default_grid_rows: int = 3
    default_grid_cols: int = 5

    @property
    def obs_url(self) -> str:
        return f"ws://{self.obs_host}:{self.obs_port}"


ENV_MAPPINGS = {
    "HOST": "host",
    "PORT": "port",
    "LOG_LEVEL": "log_level",
    "DECK_STORAGE_PATH": "storage_path",
    "OBS_HOST": "obs_host",
    "OBS_PORT": "obs_port",
    "OBS_PASSWORD": "obs_password",
    "ACTION_TIMEOUT_SECONDS": "action_timeout_seconds",
    "CONNECT_TIMEOUT_SECONDS": "connect_timeout_seconds",
    "RECONNECT_BASE_SECONDS": "reconnect_base_seconds",
    "RECONNECT_MAX_SECONDS": "reconnect_max_seconds",
    "SESSION_QUEUE_SIZE": "session_queue_size",
    "SESSION_FAILURE_THRESHOLD": "session_failure_threshold",
    "SESSION_IDLE_TIMEOUT_SECONDS": "session_idle_timeout_seconds",
    "DEFAULT_GRID_ROWS": "default_grid_rows",
    "DEFAULT_GRID_COLS": "default_grid_cols",
}

_FIELD_TYPES = {f.name: f.type for f in fields(ServiceConfig)}


def _convert(key: str, value: Any) -> Any:
    kind = _FIELD_TYPES[key]
    if kind in ("int", int):
        converter = int
    elif kind in ("float", float):
        converter = float
    else:
        return str(value)
    if isinstance(value, bool):
        raise SettingsError(f"{key} must be a number, got {value!r}")
    try:
        return converter(value)
    except (TypeError, ValueError) as e:
        raise SettingsError(f"{key} must be a number, got {value!r}") from e


def load_config(
    path: str | Path | None = None, environ: Mapping[str, str] | None = None
) -> ServiceConfig:
    """Load settings from file and environment."""
    environ = os.environ if environ is None else environ
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    values: dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
            for key, value in file_config.items():
                if key in _FIELD_TYPES:
                    values[key] = value
                else:
                    logger.warning(f"Unknown setting in {config_path}: {key}")
        except (OSError, yaml.YAMLError, AttributeError) as e:
            logger.warning(f"Failed to load config: {e}")
    elif path is not None:
        logger.warning(f"Config file not found: {config_path}")

    for env_key, config_key in ENV_MAPPINGS.items():
        value = environ.get(env_key)
        if value is None:
            continue
        # An empty value clears a string setting; numbers keep their file or default value
        if value or _FIELD_TYPES[config_key] in ("str", str):
            values[config_key] = value

    return ServiceConfig(**{key: _convert(key, value) for key, value in values.items()})
