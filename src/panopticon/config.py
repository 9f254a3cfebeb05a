"""
Configuration loading for Panopticon.

The config file is a small YAML document merged key by key over
DEFAULT_CONFIG. Only the progress engine's settings live here; timer and UI
settings belong to their own front-ends.
"""
import copy
import yaml
from pathlib import Path
from typing import Any, Dict, Optional, Union
from jsonschema import validate, ValidationError as SchemaValidationError

from .recovery import ConfigError

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "panopticon" / "config.yml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "progress": {
        "pointsPerHour": 2,
        "snapshotInterval": 50,
    },
    "storage": {
        "dataDir": str(Path.home() / ".local" / "share" / "panopticon" / "data"),
        "retryAttempts": 3,
        "retryDelay": 0.05,
    },
    "logging": {
        "level": "WARNING",
    },
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "progress": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "pointsPerHour": {"type": "number", "minimum": 0},
                "snapshotInterval": {"type": "integer", "minimum": 1},
            },
        },
        "storage": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "dataDir": {"type": "string", "minLength": 1},
                "retryAttempts": {"type": "integer", "minimum": 1},
                "retryDelay": {"type": "number", "minimum": 0},
            },
        },
        "logging": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
            },
        },
    },
}

def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged

class Config:
    """Read-only view over the merged configuration."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        overrides = data or {}
        try:
            validate(instance=overrides, schema=CONFIG_SCHEMA)
        except SchemaValidationError as e:
            path = "/".join(str(p) for p in e.absolute_path) or "<root>"
            raise ConfigError(f"Invalid configuration at {path}: {e.message}") from e
        self._data = merge_config(DEFAULT_CONFIG, overrides)

    @classmethod
    def load(cls, path: Union[Path, str, None] = None) -> 'Config':
        """Load a YAML config file; a missing file means all defaults."""
        path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
        if not path.exists():
            return cls()

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"YAML syntax error in {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return cls(data)

    def get(self, section: str, key: str) -> Any:
        return self._data[section][key]

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    @property
    def points_per_hour(self) -> float:
        return float(self.get("progress", "pointsPerHour"))

    @property
    def snapshot_interval(self) -> int:
        return int(self.get("progress", "snapshotInterval"))

    @property
    def data_dir(self) -> Path:
        return Path(self.get("storage", "dataDir")).expanduser()

    @property
    def retry_attempts(self) -> int:
        return int(self.get("storage", "retryAttempts"))

    @property
    def retry_delay(self) -> float:
        return float(self.get("storage", "retryDelay"))

    @property
    def log_level(self) -> str:
        return self.get("logging", "level")
