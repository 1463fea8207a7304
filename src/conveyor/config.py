# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration loading for Conveyor.

Search order (first hit wins):
1. Explicit --config path (must exist)
2. $CONVEYOR_CONFIG
3. ~/.conveyor/config.yaml

Values are merged over DEFAULTS. Pipeline `settings:` and CLI flags
override the merged config at run time.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from conveyor.errors import ValidationError

DEFAULT_CONFIG_PATH = "~/.conveyor/config.yaml"

DEFAULTS: Dict[str, Any] = {
    "concurrency": 4,
    "run_timeout_s": 3600,
    "stage_timeout_s": 900,
    "retries": 0,
    "backoff_base_s": 2.0,
    "backoff_max_s": 60.0,
    "cancel_grace_s": 10.0,
    "fail_fast": True,
    "history_dir": "~/.conveyor/runs",
    "events_log": "~/.conveyor/events.jsonl",
    "log_level": "INFO",
    "notify": {"channel": "log"},
}

# Keys a pipeline's `settings:` block may override
RUN_SETTINGS = (
    "concurrency",
    "run_timeout_s",
    "stage_timeout_s",
    "retries",
    "backoff_base_s",
    "backoff_max_s",
    "cancel_grace_s",
    "fail_fast",
)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def resolve_config_path(config_path: Optional[str] = None) -> Optional[Path]:
    """Return the config file to load, or None if no file applies."""
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return path

    env_path = os.environ.get("CONVEYOR_CONFIG")
    if env_path:
        path = Path(env_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file from $CONVEYOR_CONFIG not found: {path}")
        return path

    default = Path(DEFAULT_CONFIG_PATH).expanduser()
    return default if default.exists() else None


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration merged over DEFAULTS.

    Raises:
        FileNotFoundError: Explicit or $CONVEYOR_CONFIG path missing
        ValidationError: File is not a YAML mapping or a value is invalid
    """
    path = resolve_config_path(config_path)
    data: Dict[str, Any] = {}
    if path is not None:
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML in {path}: {e}")
        if not isinstance(data, dict):
            raise ValidationError(f"Config must be a mapping: {path}")

    config = _merge(DEFAULTS, data)
    validate_settings(config)
    return config


def run_settings(config: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Pick executor settings from config, applying pipeline/CLI overrides."""
    settings = {key: config.get(key, DEFAULTS[key]) for key in RUN_SETTINGS}
    for key, value in (overrides or {}).items():
        if key not in RUN_SETTINGS:
            raise ValidationError(f"Unknown setting: {key}")
        if value is not None:
            settings[key] = value
    validate_settings(settings)
    return settings


def validate_settings(settings: Dict[str, Any]) -> None:
    """Check numeric settings are in range."""
    if "concurrency" in settings:
        if not isinstance(settings["concurrency"], int) or settings["concurrency"] < 1:
            raise ValidationError("concurrency must be a positive integer")
    if "retries" in settings:
        if not isinstance(settings["retries"], int) or settings["retries"] < 0:
            raise ValidationError("retries must be a non-negative integer")
    for key in ("run_timeout_s", "stage_timeout_s"):
        if key in settings:
            value = settings[key]
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                raise ValidationError(f"{key} must be a positive number")
    for key in ("backoff_base_s", "backoff_max_s", "cancel_grace_s"):
        if key in settings:
            value = settings[key]
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                raise ValidationError(f"{key} must be a non-negative number")
