"""
Configuration management for uchelper.

This module handles loading, validating, and saving configuration settings,
as well as the encrypted credential store for per-tool secrets.
"""

from uchelper.config.credentials import (
    CredentialEntry,
    CredentialError,
    CredentialStoreCorruptedError,
    SecureCredentialStore,
    StorageType,
    composite_key,
    env_var_name,
)
from uchelper.config.settings import (
    PLATFORM_ENDPOINTS,
    SUPPORTED_PLATFORMS,
    ConfigurationError,
    Settings,
    get_api_key,
    get_state_dir,
    load_config,
    revoke_api_key,
    save_config,
    set_api_key,
)

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "save_config",
    "get_api_key",
    "get_state_dir",
    "set_api_key",
    "revoke_api_key",
    "ConfigurationError",
    "PLATFORM_ENDPOINTS",
    "SUPPORTED_PLATFORMS",
    # Credentials
    "SecureCredentialStore",
    "CredentialEntry",
    "StorageType",
    "CredentialError",
    "CredentialStoreCorruptedError",
    "composite_key",
    "env_var_name",
]
