"""
Shared YAML configuration loading.

Services describe their configuration as pydantic models and obtain a
cached loader from create_settings_loader().
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import yaml
from pydantic import BaseModel

if TYPE_CHECKING:
    from collections.abc import Callable

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = ("secret", "password", "token", "private_key")

SettingsT = TypeVar("SettingsT", bound=BaseModel)


def get_config_path(env_var_name: str, default_filename: str) -> Path:
    """Resolve the configuration file path from an environment variable."""
    configured = os.environ.get(env_var_name)
    if configured:
        return Path(configured)
    return Path.cwd() / default_filename


def load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Read a YAML file that must contain a mapping at the top level."""
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open(encoding="utf-8") as handle:
        data = yaml.safe_load(handle)

    if not isinstance(data, dict):
        msg = f"Configuration file must contain a mapping: {config_path}"
        raise ValueError(msg)
    return data


def create_settings_loader(
    settings_model: type[SettingsT],
    config_path_resolver: Callable[[], Path],
) -> tuple[Callable[[], SettingsT], Callable[[], None]]:
    """
    Build a cached settings getter and its cache-clearing companion.

    Returns:
        (get_settings, clear_settings_cache)
    """

    @lru_cache(maxsize=1)
    def get_settings() -> SettingsT:
        return settings_model.model_validate(load_yaml_config(config_path_resolver()))

    def clear_settings_cache() -> None:
        get_settings.cache_clear()

    return get_settings, clear_settings_cache


def _redact(value: Any, marker: str) -> Any:
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            if any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS):
                redacted[key] = marker
            else:
                redacted[key] = _redact(item, marker)
        return redacted
    if isinstance(value, list):
        return [_redact(item, marker) for item in value]
    return value


def get_safe_model_config(settings: BaseModel, marker: str) -> dict[str, Any]:
    """Dump settings to a dict with sensitive values replaced by the marker."""
    return _redact(settings.model_dump(), marker)
