"""
Configuration models and loading.

This module provides Pydantic models for tillsync configuration
with multi-layer merging: defaults < user < project < env vars.
"""

from .loader import (
    clear_cache,
    get_project_config_path,
    get_user_config_path,
    get_xdg_config_home,
    load_config,
    read_env_files,
)
from .models import (
    ConnectivityConfig,
    RemoteConfig,
    RetryConfig,
    StorageConfig,
    SyncConfig,
    TillsyncConfig,
)

__all__ = [
    # Models
    "ConnectivityConfig",
    "RemoteConfig",
    "RetryConfig",
    "StorageConfig",
    "SyncConfig",
    "TillsyncConfig",
    # Loader functions
    "clear_cache",
    "get_project_config_path",
    "get_user_config_path",
    "get_xdg_config_home",
    "load_config",
    "read_env_files",
]
