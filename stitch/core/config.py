"""Engine configuration loading.

Settings come from the first config.yaml found on the search path
(project .stitch/ first, then the user's ~/.stitch/), then STITCH_* environment
variables override individual keys.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".stitch"
CONFIG_FILE = "config.yaml"

# Environment variable -> config key
_ENV_OVERRIDES = {
    "STITCH_DB_PATH": "db_path",
    "STITCH_TRAVEL_DURATION": "travel_duration",
    "STITCH_TRAVEL_TICK": "travel_tick",
    "STITCH_VERSION_CAS_RETRIES": "version_cas_retries",
}


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class EngineConfig(BaseModel):
    """Runtime settings for the engine, CLI and HTTP server"""

    db_path: Path = Path(CONFIG_DIR) / "state.db"
    travel_duration: float = Field(default=2.0, ge=0.0)  # Seconds for one journey edge
    travel_tick: float = Field(default=0.1, gt=0.0)  # Seconds between progress updates
    layout_horizontal_spacing: float = 300
    layout_vertical_spacing: float = 150
    version_cas_retries: int = Field(default=3, ge=1)


def default_search_paths() -> list[Path]:
    return [
        Path(CONFIG_DIR) / CONFIG_FILE,  # Project-specific
        Path.home() / CONFIG_DIR / CONFIG_FILE,  # User-global
    ]


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__} in {path}")
    return data


def load_config(
    search_paths: list[Path] | None = None,
    environ: dict[str, str] | None = None,
) -> EngineConfig:
    """Load configuration from the first existing file plus environment overrides.

    Raises:
        ConfigError: if the file or an override fails validation
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    for path in search_paths if search_paths is not None else default_search_paths():
        if path.exists():
            data = _load_yaml(path)
            logger.debug(f"Loaded config from {path}")
            break

    for var, key in _ENV_OVERRIDES.items():
        if var in environ:
            data[key] = environ[var]

    try:
        return EngineConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
