"""Configuration loading for safex.

Settings come from, in increasing order of precedence: built-in defaults, a
YAML config file (``--config`` or ``SAFEX_CONFIG``), ``SAFEX_*`` environment
variables, and finally command-line flags (applied by the CLI). File contents
are validated against ``CONFIG_SCHEMA`` (JSON Schema Draft 2020-12).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from jsonschema import Draft202012Validator

from safex_errors import EXIT_USAGE, ExtractionError
from safex_units import parse_byte_size, parse_duration

# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_BYTES = "8GiB"

ENV_CONFIG = "SAFEX_CONFIG"

# Environment variable -> config key
ENV_OVERRIDES = {
    "SAFEX_LOG_LEVEL": "log_level",
    "SAFEX_LOG_FORMAT": "log_format",
    "SAFEX_MAX_BYTES": "max_bytes",
    "SAFEX_STRIP_COMPONENTS": "strip_components",
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "safex configuration",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "strip_components": {"type": "integer", "minimum": 0},
        "max_bytes": {
            "anyOf": [
                {"type": "integer", "minimum": 0},
                {"type": "string", "pattern": r"^\s*\d+(\.\d+)?\s*[A-Za-z]*\s*$"},
            ]
        },
        "max_time": {
            "anyOf": [
                {"type": "number", "minimum": 0},
                {"type": "string", "minLength": 1},
            ]
        },
        "create_directory": {"type": "boolean"},
        "remove_archive": {"type": "boolean"},
        "log_level": {"enum": ["debug", "info", "warning", "error", "critical"]},
        "log_format": {"enum": ["text", "json"]},
    },
}


class ConfigError(ExtractionError):
    """Raised when a config file or environment override is invalid."""

    exit_code = EXIT_USAGE


@dataclass
class SafexConfig:
    strip_components: int = 0
    max_bytes: int = parse_byte_size(DEFAULT_MAX_BYTES)
    max_time: float = 0.0  # Seconds, 0 = unlimited
    create_directory: bool = False
    remove_archive: bool = False
    log_level: str = "info"
    log_format: str = "text"


# =============================================================================
# Validation
# =============================================================================


def _format_schema_errors(errors: List[Any]) -> str:
    lines = []
    for err in errors[:5]:
        path = err.json_path or "$"
        lines.append(f"{path}: {err.message}")
    if len(errors) > 5:
        lines.append(f"... {len(errors) - 5} more")
    return "\n".join(lines)


def validate_config_data(data: Mapping[str, Any], source: str = "config") -> None:
    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(dict(data)), key=lambda e: e.json_path)
    if errors:
        raise ConfigError(f"Invalid {source}:\n{_format_schema_errors(errors)}")


# =============================================================================
# Loading
# =============================================================================


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read and validate a YAML config file. An empty file is an empty config."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    validate_config_data(data, source=f"config file {path}")
    return data


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for var, key in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        if key == "strip_components":
            try:
                overrides[key] = int(raw)
            except ValueError:
                raise ConfigError(f"{var} must be an integer, got {raw!r}") from None
        elif key in {"log_level", "log_format"}:
            overrides[key] = raw.lower()
        else:
            overrides[key] = raw
    validate_config_data(overrides, source="environment")
    return overrides


def build_config(data: Mapping[str, Any]) -> SafexConfig:
    """Turn validated raw values into a SafexConfig, parsing sizes and durations."""
    config = SafexConfig()
    for key, value in data.items():
        try:
            if key == "max_bytes" and isinstance(value, str):
                value = parse_byte_size(value)
            elif key == "max_time" and isinstance(value, str):
                value = parse_duration(value)
            elif key == "max_time":
                value = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid {key}: {exc}") from exc
        setattr(config, key, value)
    return config


def load_config(
    path: Optional[Union[str, Path]] = None, env: Optional[Mapping[str, str]] = None
) -> SafexConfig:
    """
    Load configuration from defaults, an optional YAML file and the environment.

    Args:
        path: Config file; falls back to $SAFEX_CONFIG when None
        env: Environment mapping (defaults to os.environ)

    Returns:
        SafexConfig

    Raises:
        ConfigError: If any source is invalid
    """
    if env is None:
        env = os.environ

    data: Dict[str, Any] = {}
    config_path = path or env.get(ENV_CONFIG)
    if config_path:
        data.update(load_config_file(config_path))
    data.update(_env_overrides(env))
    return build_config(data)
