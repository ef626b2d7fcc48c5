"""Configuration loading utilities for the vaccination engine.

Provides a centralized way to load and validate the parameters.yaml
configuration file. Every engine component reads its settings from the
validated dictionary returned here.
"""

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .enums import Channel, Language
from .exceptions import ConfigurationError

SCRIPT_DIR = Path(__file__).resolve().parent
ROOT_DIR = SCRIPT_DIR.parent
DEFAULT_CONFIG_PATH = ROOT_DIR / "config" / "parameters.yaml"

DEFAULTS: Dict[str, Any] = {
    "scheduling": {
        "grace_period_days": 0,
        "regenerate_by_default": False,
        "catch_up_days": 30,
    },
    "reminders": {
        "default_lead_days": 7,
    },
    "notifications": {
        "completion_channels": ["email"],
        "notify_on_cancel": False,
        "language": "en",
    },
    "delivery": {
        "max_retries": 5,
        "backoff_base_minutes": 1,
        "backoff_factor": 2,
        "max_workers": 3,
        "lease_seconds": 300,
    },
    "sweep": {
        "max_conflict_retries": 3,
    },
    "cleanup": {
        "retention_days": 30,
    },
    "logging": {
        "level": "INFO",
        "log_dir": None,
    },
    "catalog": {
        "path": "config/vaccine_catalog.yaml",
    },
}


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load and parse the parameters.yaml configuration file.

    Missing sections and keys are filled from ``DEFAULTS``; the merged result
    is validated before it is returned, so a bad file fails fast.

    Parameters
    ----------
    config_path : Path, optional
        Path to the configuration file. If not provided, uses the default
        location (config/parameters.yaml in the project root).

    Returns
    -------
    Dict[str, Any]
        Parsed, merged and validated configuration.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    yaml.YAMLError
        If the configuration file is invalid YAML.
    ConfigurationError
        If the configuration fails validation (see validate_config).
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Configuration root must be a mapping, got {type(raw).__name__}"
        )

    config = merge_defaults(raw)
    validate_config(config)
    return config


def merge_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay a (possibly partial) config on top of ``DEFAULTS``."""
    merged = deepcopy(DEFAULTS)
    for section, values in config.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def _require_int(config: Dict[str, Any], section: str, key: str, minimum: int) -> None:
    value = config.get(section, {}).get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(
            f"{section}.{key} must be an integer, got {type(value).__name__}"
        )
    if value < minimum:
        raise ConfigurationError(f"{section}.{key} must be >= {minimum}, got {value}")


def _require_bool(config: Dict[str, Any], section: str, key: str) -> None:
    value = config.get(section, {}).get(key)
    if not isinstance(value, bool):
        raise ConfigurationError(
            f"{section}.{key} must be a boolean, got {type(value).__name__}"
        )


def validate_config(config: Dict[str, Any]) -> None:
    """Validate the configuration for consistency and required values.

    Parameters
    ----------
    config : Dict[str, Any]
        Configuration dictionary (merged with defaults).

    Raises
    ------
    ConfigurationError
        If a value is missing, of the wrong type, or out of range.

    Notes
    -----
    **Validation checks:**

    - **Scheduling:** grace_period_days is a non-negative integer
    - **Reminders:** default_lead_days is a non-negative integer
    - **Notifications:** completion_channels lists known channels; language is supported
    - **Delivery:** max_retries, backoff_base_minutes, backoff_factor, max_workers
      and lease_seconds are integers >= 1
    - **Sweep / Cleanup:** max_conflict_retries >= 1, retention_days >= 0
    """
    _require_int(config, "scheduling", "grace_period_days", 0)
    _require_bool(config, "scheduling", "regenerate_by_default")
    _require_int(config, "scheduling", "catch_up_days", 0)
    _require_int(config, "reminders", "default_lead_days", 0)

    notifications = config.get("notifications", {})
    channels = notifications.get("completion_channels")
    if not isinstance(channels, list) or not channels:
        raise ConfigurationError(
            "notifications.completion_channels must be a non-empty list of channels"
        )
    for channel in channels:
        try:
            Channel.from_string(channel)
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid notifications.completion_channels entry: {exc}"
            ) from exc
    _require_bool(config, "notifications", "notify_on_cancel")
    try:
        Language.from_string(notifications.get("language"))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid notifications.language: {exc}") from exc

    _require_int(config, "delivery", "max_retries", 1)
    _require_int(config, "delivery", "backoff_base_minutes", 1)
    _require_int(config, "delivery", "backoff_factor", 1)
    _require_int(config, "delivery", "max_workers", 1)
    _require_int(config, "delivery", "lease_seconds", 1)
    _require_int(config, "sweep", "max_conflict_retries", 1)
    _require_int(config, "cleanup", "retention_days", 0)

    level = config.get("logging", {}).get("level")
    if not isinstance(level, str) or level.upper() not in {
        "DEBUG",
        "INFO",
        "WARNING",
        "ERROR",
        "CRITICAL",
    }:
        raise ConfigurationError(f"logging.level is not a valid level: {level}")


def resolve_path(relative: str | Path) -> Path:
    """Resolve a config-relative path against the project root."""
    path = Path(relative)
    return path if path.is_absolute() else ROOT_DIR / path
