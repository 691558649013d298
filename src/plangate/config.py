"""YAML configuration for plangate."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .errors import ConfigError
from .validation_loop import MAX_PLAN_VALIDATION_ATTEMPTS

DEFAULT_CONFIG_NAME = "plangate.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "paths": {
        "data": "data",
        "db_path": "data/sessions.sqlite",
        "sessions": "data/sessions",
    },
    "validation": {
        "max_attempts": MAX_PLAN_VALIDATION_ATTEMPTS,
        "require_complexity": True,
    },
    "logging": {
        "level": "INFO",
    },
}


@dataclass(slots=True)
class ValidationSettings:
    max_attempts: int = MAX_PLAN_VALIDATION_ATTEMPTS
    require_complexity: bool = True

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ValidationSettings":
        section = config.get("validation") or {}
        max_attempts = section.get("max_attempts", MAX_PLAN_VALIDATION_ATTEMPTS)
        if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 0:
            raise ConfigError(f"validation.max_attempts must be a non-negative integer, got {max_attempts!r}")
        return cls(
            max_attempts=max_attempts,
            require_complexity=bool(section.get("require_complexity", True)),
        )


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration layered over :data:`DEFAULT_CONFIG_TEMPLATE`."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return _merge(copy_config_template(), data)


def resolve_path(config: Mapping[str, Any], key: str, config_path: Path) -> Path:
    """Resolve ``paths.<key>`` relative to the directory holding the config file."""
    paths = config.get("paths") or {}
    value = paths.get(key) or DEFAULT_CONFIG_TEMPLATE["paths"][key]
    candidate = Path(str(value))
    if not candidate.is_absolute():
        candidate = (config_path.parent / candidate).resolve()
    return candidate


def configure_logging(config: Mapping[str, Any]) -> None:
    level_name = str((config.get("logging") or {}).get("level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ConfigError(f"Unknown logging level: {level_name}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ValidationSettings",
    "configure_logging",
    "copy_config_template",
    "load_config",
    "resolve_path",
    "write_config",
]
