"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars

Env vars come from the process environment and from `.env` files (user,
then project). Only `TILLSYNC_*` keys are read from `.env` files, and the
process environment always wins over them. Nothing is written back to
`os.environ`.
"""

import json
import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

from .models import TillsyncConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "TILLSYNC_"

# Global cache to avoid reloading config multiple times per process
_config_cache: TillsyncConfig | None = None


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """
    Get path to user configuration file.

    Returns:
        Path to ~/.config/tillsync/config.json (or XDG equivalent)
    """
    return get_xdg_config_home() / "tillsync" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """
    Get path to project configuration file.

    Args:
        cwd: Working directory to search from (defaults to current directory)

    Returns:
        Path to .tillsync.json in the project root
    """
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".tillsync.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`. Nested
    dicts are merged, not replaced.

    Example:
        >>> deep_merge({"sync": {"batch_size": 50}}, {"sync": {"concurrency": 2}})
        {'sync': {'batch_size': 50, 'concurrency': 2}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON as dict, or None if file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            return None
    except (json.JSONDecodeError, OSError) as e:
        # Config system stays resilient: a broken file falls back to lower layers
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None


def _set_nested(config_dict: dict[str, Any], section: str, key: str, value: Any) -> None:
    if not isinstance(config_dict.get(section), dict):
        config_dict[section] = {}
    config_dict[section][key] = value


def get_env_file_paths(project_dir: Path | None = None) -> list[Path]:
    """Return the .env files read by load_config, lowest precedence first."""
    base = project_dir or Path.cwd()
    return [
        get_xdg_config_home() / "tillsync" / ".env",
        base / ".env",
        base / ".env.local",
    ]


def read_env_files(paths: Iterable[Path]) -> dict[str, str]:
    """
    Collect TILLSYNC_* settings from .env files; later files win.

    Other keys are ignored, since a till project's .env usually belongs to
    the point-of-sale application itself.
    """
    values: dict[str, str] = {}
    for path in paths:
        if not path.exists():
            continue
        for key, value in dotenv_values(path).items():
            if key and value is not None and key.startswith(ENV_PREFIX):
                values[key] = value
    return values


def apply_env_overrides(
    config_dict: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence and override all config files.

    Supported env vars:
        TILLSYNC_API_URL - overrides remote.base_url
        TILLSYNC_API_TOKEN - overrides remote.token
        TILLSYNC_DB_PATH - overrides storage.db_path
        TILLSYNC_SYNC_INTERVAL - overrides sync.auto_sync_interval_seconds
        TILLSYNC_PULL_ENABLED - overrides sync.pull_enabled

    Args:
        config_dict: Configuration dictionary to override
        environ: Variables to read (defaults to the process environment)

    Returns:
        Configuration dictionary with env var overrides applied
    """
    env = os.environ if environ is None else environ
    result = config_dict.copy()

    if api_url := env.get("TILLSYNC_API_URL"):
        _set_nested(result, "remote", "base_url", api_url)

    if api_token := env.get("TILLSYNC_API_TOKEN"):
        _set_nested(result, "remote", "token", api_token)

    if db_path := env.get("TILLSYNC_DB_PATH"):
        _set_nested(result, "storage", "db_path", db_path)

    if interval_str := env.get("TILLSYNC_SYNC_INTERVAL"):
        try:
            interval = int(interval_str)
            if interval < 0:
                logger.warning(
                    "TILLSYNC_SYNC_INTERVAL must be >= 0, got %d, ignoring", interval
                )
            else:
                _set_nested(result, "sync", "auto_sync_interval_seconds", interval)
        except ValueError:
            logger.warning("Invalid TILLSYNC_SYNC_INTERVAL value '%s', ignoring", interval_str)

    if pull_str := env.get("TILLSYNC_PULL_ENABLED"):
        _set_nested(result, "sync", "pull_enabled", pull_str.lower() not in ("false", "0", ""))

    return result


def get_default_config() -> dict[str, Any]:
    """
    Get hardcoded default configuration.

    Returns:
        Dictionary with default configuration values
    """
    return {
        "sync": {"batch_size": 50, "concurrency": 4, "auto_sync_interval_seconds": 300},
        "retry": {"base_delay_seconds": 2.0, "multiplier": 2.0, "max_delay_seconds": 300.0},
    }


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> TillsyncConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (TILLSYNC_*), then .env files
        2. Project config (.tillsync.json)
        3. User config (~/.config/tillsync/config.json)
        4. Hardcoded defaults

    Args:
        project_dir: Project directory to load .tillsync.json from (defaults to cwd)
        use_cache: If True, return cached config from previous load

    Returns:
        Validated TillsyncConfig instance

    Raises:
        ValidationError: If the merged config fails Pydantic validation

    Example:
        >>> config = load_config()
        >>> config.retry.max_delay_seconds
        300.0
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged = get_default_config()

    user_config_path = get_user_config_path()
    if user_config := load_json_file(user_config_path):
        merged = deep_merge(merged, user_config)

    project_config_path = get_project_config_path(project_dir)
    if project_config := load_json_file(project_config_path):
        merged = deep_merge(merged, project_config)

    process_env = {k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)}
    environ = {**read_env_files(get_env_file_paths(project_dir)), **process_env}
    merged = apply_env_overrides(merged, environ)

    config = TillsyncConfig(**merged)

    # Relative database paths are anchored to the project directory
    db_path = Path(config.storage.db_path)
    if not db_path.is_absolute() and config.storage.db_path != ":memory:":
        config.storage.db_path = str((project_dir or Path.cwd()) / db_path)

    _config_cache = config

    return config


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None
