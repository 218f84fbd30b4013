"""
Configuration settings management for uchelper.

This module handles loading, validating, and saving the user configuration
from YAML, with support for environment variable overrides. Platform API
keys in the config are protected with the password codec from
uchelper.security.crypto.

Configuration is loaded from ~/.unified-coding-helper/config.yaml by
default, with the path overridable via the UCHELPER_CONFIG environment
variable.

File Structure:
    lang: en_US
    platform: glm
    active_platform: glm
    plan: global
    log_level: INFO
    glm:
      api_key: ""              # legacy plaintext, read only without a password
      encrypted_api_key: ...   # PasswordCodec blob
      endpoint: ""
      plan: ""
    minimax: {...}
    credential_storage:
      type: env
    master_password_hash: ...  # PasswordCodec blob of a fixed verifier
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from uchelper.security.crypto import DecryptionError, decrypt, encrypt

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".unified-coding-helper"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

SUPPORTED_PLATFORMS = ("glm", "minimax")
SUPPORTED_LANGUAGES = ("en_US", "zh_CN")
SUPPORTED_PLANS = ("global", "china")
STORAGE_TYPES = ("env", "wrapper", "keychain")

MASTER_PASSWORD_VERIFIER = "master_password_verifier"

PLATFORM_ENDPOINTS: dict[str, dict[str, str]] = {
    "glm": {
        "name": "GLM (Z.AI)",
        "global": "https://open.bigmodel.cn/api/paas/v4/",
        "china": "https://open.bigmodel.cn/api/paas/v4/",
    },
    "minimax": {
        "name": "MiniMax",
        "global": "https://api.minimax.io/anthropic",
        "china": "https://api.minimaxi.com/anthropic",
    },
}


@dataclass
class PlatformConfig:
    """Configuration for a single model platform."""

    api_key: str = ""
    encrypted_api_key: str = ""
    endpoint: str = ""
    plan: str = ""


@dataclass
class CredentialStorageConfig:
    """Default storage strategy for tool credentials."""

    type: str = "env"


@dataclass
class Settings:
    """
    Complete uchelper configuration settings.

    Attributes:
        lang: Interface language.
        platform: Platform chosen in the last setup.
        active_platform: Platform used when none is given explicitly.
        plan: Default plan (global or china endpoints).
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        glm: GLM platform configuration.
        minimax: MiniMax platform configuration.
        credential_storage: Default credential storage strategy.
        master_password_hash: Encrypted verifier for the master password.
    """

    lang: str = "en_US"
    platform: str = "glm"
    active_platform: str = "glm"
    plan: str = "global"
    log_level: str = "INFO"

    glm: PlatformConfig = field(default_factory=PlatformConfig)
    minimax: PlatformConfig = field(default_factory=PlatformConfig)

    credential_storage: CredentialStorageConfig = field(
        default_factory=CredentialStorageConfig
    )
    master_password_hash: str = ""


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from UCHELPER_CONFIG environment variable if set,
    otherwise returns the default path.
    """
    env_path = os.environ.get("UCHELPER_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def get_state_dir() -> Path:
    """
    Get the directory for the credential store, machine key and scripts.

    Returns UCHELPER_STATE_DIR if set, otherwise the default config directory.
    """
    env_dir = os.environ.get("UCHELPER_STATE_DIR")
    if env_dir:
        return Path(env_dir)
    return DEFAULT_CONFIG_DIR


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses UCHELPER_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file with owner-only permissions.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_data = _settings_to_dict(settings)
    temp_path = config_path.with_suffix(".tmp")

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
        temp_path.replace(config_path)
    except OSError as e:
        if temp_path.exists():
            temp_path.unlink()
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def get_platform_config(settings: Settings, platform: str | None = None) -> PlatformConfig:
    """
    Return the config block for a platform (default: the active one).

    Raises:
        ConfigurationError: If the platform is not supported.
    """
    plat = platform or settings.active_platform
    if plat not in SUPPORTED_PLATFORMS:
        raise ConfigurationError(
            f"Unsupported platform: {plat}. "
            f"Must be one of: {', '.join(SUPPORTED_PLATFORMS)}"
        )
    config: PlatformConfig = getattr(settings, plat)
    return config


def get_api_key(
    settings: Settings,
    platform: str | None = None,
    password: str | None = None,
) -> str | None:
    """
    Resolve a platform API key.

    With a password, only encrypted_api_key is consulted; the legacy
    plaintext field is not read. Without one, the legacy api_key is
    returned if present.

    Returns:
        The API key, or None if nothing is stored.

    Raises:
        DecryptionError: If the encrypted key does not open with password.
    """
    config = get_platform_config(settings, platform)

    if password:
        if not config.encrypted_api_key:
            return None
        return decrypt(config.encrypted_api_key, password)

    return config.api_key or None


def set_api_key(settings: Settings, platform: str, api_key: str, password: str) -> None:
    """
    Encrypt and store a platform API key.

    Any legacy plaintext key for the platform is dropped so the secret
    is no longer on disk in the clear.
    """
    config = get_platform_config(settings, platform)
    config.encrypted_api_key = encrypt(api_key, password)
    config.api_key = ""


def revoke_api_key(settings: Settings, platform: str) -> None:
    """Remove both the plaintext and the encrypted key for a platform."""
    config = get_platform_config(settings, platform)
    config.api_key = ""
    config.encrypted_api_key = ""


def get_endpoint(settings: Settings, platform: str | None = None) -> str:
    """Return the configured endpoint, falling back to the plan default."""
    plat = platform or settings.active_platform
    config = get_platform_config(settings, plat)
    if config.endpoint:
        return config.endpoint
    plan = config.plan or settings.plan
    return PLATFORM_ENDPOINTS[plat][plan]


def set_master_password(settings: Settings, password: str) -> None:
    """Store an encrypted verifier for the master password."""
    settings.master_password_hash = encrypt(MASTER_PASSWORD_VERIFIER, password)


def verify_master_password(settings: Settings, password: str) -> bool:
    """
    Check a password against the stored verifier.

    Returns:
        True if the verifier decrypts with this password. False if it does
        not, or if no master password has been set.
    """
    if not settings.master_password_hash:
        return False
    try:
        return decrypt(settings.master_password_hash, password) == MASTER_PASSWORD_VERIFIER
    except DecryptionError:
        return False


def _apply_platform_data(config: PlatformConfig, data: dict[str, Any]) -> None:
    """Apply one platform block from parsed YAML."""
    config.api_key = str(data.get("api_key") or "")
    config.encrypted_api_key = str(data.get("encrypted_api_key") or "")
    config.endpoint = str(data.get("endpoint") or "")
    config.plan = str(data.get("plan") or "")


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    if "lang" in data:
        settings.lang = str(data["lang"])
    if "platform" in data:
        settings.platform = str(data["platform"])
        settings.active_platform = settings.platform
    if "active_platform" in data:
        settings.active_platform = str(data["active_platform"])
    if "plan" in data:
        settings.plan = str(data["plan"])
    if "log_level" in data:
        settings.log_level = str(data["log_level"]).upper()

    for platform in SUPPORTED_PLATFORMS:
        block = data.get(platform)
        if isinstance(block, dict):
            _apply_platform_data(getattr(settings, platform), block)

    storage = data.get("credential_storage", {})
    if isinstance(storage, dict):
        if "type" in storage:
            settings.credential_storage.type = str(storage["type"])

    if data.get("master_password_hash"):
        settings.master_password_hash = str(data["master_password_hash"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "UCHELPER_LANG": ("lang", str),
        "UCHELPER_PLATFORM": ("active_platform", str),
        "UCHELPER_PLAN": ("plan", str),
        "UCHELPER_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "UCHELPER_STORAGE_TYPE": ("credential_storage.type", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.lang not in SUPPORTED_LANGUAGES:
        raise ConfigurationError(
            f"Invalid lang: {settings.lang}. "
            f"Must be one of: {', '.join(SUPPORTED_LANGUAGES)}"
        )

    for name in ("platform", "active_platform"):
        value = getattr(settings, name)
        if value not in SUPPORTED_PLATFORMS:
            raise ConfigurationError(
                f"Invalid {name}: {value}. "
                f"Must be one of: {', '.join(SUPPORTED_PLATFORMS)}"
            )

    plans = [settings.plan] + [
        getattr(settings, p).plan for p in SUPPORTED_PLATFORMS if getattr(settings, p).plan
    ]
    for plan in plans:
        if plan not in SUPPORTED_PLANS:
            raise ConfigurationError(
                f"Invalid plan: {plan}. Must be one of: {', '.join(SUPPORTED_PLANS)}"
            )

    if settings.credential_storage.type not in STORAGE_TYPES:
        raise ConfigurationError(
            f"Invalid credential storage type: {settings.credential_storage.type}. "
            f"Must be one of: {', '.join(STORAGE_TYPES)}"
        )


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    data: dict[str, Any] = {
        "lang": settings.lang,
        "platform": settings.platform,
        "active_platform": settings.active_platform,
        "plan": settings.plan,
        "log_level": settings.log_level,
    }

    for platform in SUPPORTED_PLATFORMS:
        config: PlatformConfig = getattr(settings, platform)
        block = {
            "api_key": config.api_key,
            "encrypted_api_key": config.encrypted_api_key,
            "endpoint": config.endpoint,
            "plan": config.plan,
        }
        # Empty fields are left out so a revoked key leaves no trace
        data[platform] = {key: value for key, value in block.items() if value}

    data["credential_storage"] = {
        "type": settings.credential_storage.type,
    }

    if settings.master_password_hash:
        data["master_password_hash"] = settings.master_password_hash

    return data
