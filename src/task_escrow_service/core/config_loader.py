"""YAML settings loading with caching and secret redaction."""

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

_SENSITIVE_KEY_PARTS: tuple[str, ...] = ("api_key", "private_key", "secret", "token", "password")

SettingsT = TypeVar("SettingsT", bound=BaseModel)


def get_config_path(env_var_name: str, default_filename: str) -> Path:
    """
    Resolve the configuration file path.

    The environment variable wins; otherwise the default filename is
    looked up in the current working directory.
    """
    configured = os.environ.get(env_var_name)
    if configured:
        return Path(configured)
    return Path.cwd() / default_filename


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Read a YAML mapping from disk."""
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise FileNotFoundError(msg)

    with path.open(encoding="utf-8") as handle:
        data = yaml.safe_load(handle)

    if not isinstance(data, dict):
        msg = f"Configuration file must contain a mapping: {path}"
        raise ValueError(msg)
    return data


def create_settings_loader(
    settings_class: type[SettingsT],
    path_resolver: Callable[[], Path],
) -> tuple[Callable[[], SettingsT], Callable[[], None]]:
    """
    Build a cached ``get_settings`` function and its cache-clearing companion.

    Validation errors from the settings model propagate unchanged so that a
    broken configuration fails startup immediately.
    """

    @lru_cache(maxsize=1)
    def get_settings() -> SettingsT:
        return settings_class.model_validate(load_yaml_config(path_resolver()))

    def clear_settings_cache() -> None:
        get_settings.cache_clear()

    return get_settings, clear_settings_cache


def _redact(value: Any, marker: str) -> Any:
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS) and item is not None:
                redacted[key] = marker
            else:
                redacted[key] = _redact(item, marker)
        return redacted
    if isinstance(value, list):
        return [_redact(item, marker) for item in value]
    return value


def get_safe_model_config(settings: BaseModel, marker: str) -> dict[str, Any]:
    """Dump settings with sensitive values replaced by the redaction marker."""
    result: dict[str, Any] = _redact(settings.model_dump(mode="json"), marker)
    return result
