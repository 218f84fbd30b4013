"""Tests for configuration settings and platform API keys."""

import os
import shutil
import stat
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from uchelper.config.settings import (
    DEFAULT_CONFIG_DIR,
    DEFAULT_CONFIG_FILE,
    PLATFORM_ENDPOINTS,
    ConfigurationError,
    PlatformConfig,
    Settings,
    _apply_environment_overrides,
    _set_nested_attr,
    _settings_to_dict,
    _validate_config,
    get_api_key,
    get_config_path,
    get_endpoint,
    get_platform_config,
    get_state_dir,
    load_config,
    revoke_api_key,
    save_config,
    set_api_key,
    set_master_password,
    verify_master_password,
)
from uchelper.security.crypto import DecryptionError


class TestDefaultConstants(unittest.TestCase):
    """Tests for default paths and tables."""

    def test_default_paths(self) -> None:
        """Test the default state directory layout."""
        self.assertEqual(DEFAULT_CONFIG_DIR, Path.home() / ".unified-coding-helper")
        self.assertEqual(DEFAULT_CONFIG_FILE, DEFAULT_CONFIG_DIR / "config.yaml")

    def test_endpoint_table(self) -> None:
        """Test that every platform has both plans."""
        for table in PLATFORM_ENDPOINTS.values():
            self.assertIn("global", table)
            self.assertIn("china", table)
        self.assertEqual(PLATFORM_ENDPOINTS["minimax"]["china"], "https://api.minimaxi.com/anthropic")


class TestSettings(unittest.TestCase):
    """Tests for the Settings dataclass."""

    def test_defaults(self) -> None:
        """Test default values."""
        settings = Settings()

        self.assertEqual(settings.lang, "en_US")
        self.assertEqual(settings.active_platform, "glm")
        self.assertEqual(settings.plan, "global")
        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.credential_storage.type, "env")
        self.assertEqual(settings.glm, PlatformConfig())
        self.assertEqual(settings.master_password_hash, "")


class TestGetConfigPath(unittest.TestCase):
    """Tests for get_config_path and get_state_dir."""

    def test_default_path(self) -> None:
        """Test that the default path is used without an override."""
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_config_path(), DEFAULT_CONFIG_FILE)
            self.assertEqual(get_state_dir(), DEFAULT_CONFIG_DIR)

    def test_env_override(self) -> None:
        """Test UCHELPER_CONFIG and UCHELPER_STATE_DIR."""
        with patch.dict(os.environ, {
            "UCHELPER_CONFIG": "/custom/config.yaml",
            "UCHELPER_STATE_DIR": "/custom/state",
        }):
            self.assertEqual(get_config_path(), Path("/custom/config.yaml"))
            self.assertEqual(get_state_dir(), Path("/custom/state"))


class TestLoadConfig(unittest.TestCase):
    """Tests for load_config function."""

    def setUp(self) -> None:
        """Create temporary directory for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "config.yaml"

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_nonexistent_file_returns_defaults(self) -> None:
        """Test loading config when file doesn't exist returns defaults."""
        settings = load_config(self.config_path)
        self.assertEqual(settings, Settings())

    def test_load_from_yaml(self) -> None:
        """Test loading config from YAML file."""
        self.config_path.write_text(
            """
lang: zh_CN
platform: minimax
plan: china
log_level: debug
glm:
  api_key: legacy-plain
minimax:
  endpoint: https://proxy.example.com/anthropic
credential_storage:
  type: wrapper
"""
        )

        settings = load_config(self.config_path)

        self.assertEqual(settings.lang, "zh_CN")
        self.assertEqual(settings.platform, "minimax")
        self.assertEqual(settings.active_platform, "minimax")
        self.assertEqual(settings.plan, "china")
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.glm.api_key, "legacy-plain")
        self.assertEqual(settings.minimax.endpoint, "https://proxy.example.com/anthropic")
        self.assertEqual(settings.credential_storage.type, "wrapper")

    def test_empty_file(self) -> None:
        """Test that an empty file yields defaults."""
        self.config_path.write_text("")
        self.assertEqual(load_config(self.config_path), Settings())

    def test_invalid_yaml(self) -> None:
        """Test that malformed YAML raises ConfigurationError."""
        self.config_path.write_text("lang: [unclosed")

        with self.assertRaises(ConfigurationError) as cm:
            load_config(self.config_path)

        self.assertIn("Invalid YAML", str(cm.exception))

    def test_non_mapping(self) -> None:
        """Test that a top-level list is rejected."""
        self.config_path.write_text("- a\n- b\n")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_invalid_values(self) -> None:
        """Test that unknown platforms, plans and storage types are rejected."""
        for content in (
            "platform: openai\n",
            "plan: moon\n",
            "credential_storage:\n  type: vault\n",
            "lang: fr_FR\n",
            "glm:\n  plan: moon\n",
        ):
            self.config_path.write_text(content)
            with self.assertRaises(ConfigurationError, msg=content):
                load_config(self.config_path)

    def test_env_overrides_file(self) -> None:
        """Test that environment variables win over the file."""
        self.config_path.write_text("platform: glm\n")

        with patch.dict(os.environ, {"UCHELPER_PLATFORM": "minimax", "UCHELPER_STORAGE_TYPE": "keychain"}):
            settings = load_config(self.config_path)

        self.assertEqual(settings.platform, "glm")
        self.assertEqual(settings.active_platform, "minimax")
        self.assertEqual(settings.credential_storage.type, "keychain")


class TestSaveConfig(unittest.TestCase):
    """Tests for save_config function."""

    def setUp(self) -> None:
        """Create temporary directory for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "nested" / "config.yaml"

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_save_and_reload(self) -> None:
        """Test that saved settings load back unchanged."""
        settings = Settings(lang="zh_CN", plan="china")
        settings.minimax.endpoint = "https://example.com"

        save_config(settings, self.config_path)

        self.assertEqual(load_config(self.config_path), settings)

    @unittest.skipIf(sys.platform == "win32", "POSIX permissions only")
    def test_permissions(self) -> None:
        """Test that the config file is owner read/write only."""
        save_config(Settings(), self.config_path)

        mode = stat.S_IMODE(os.stat(self.config_path).st_mode)
        self.assertEqual(mode, 0o600)
        self.assertFalse(self.config_path.with_suffix(".tmp").exists())

    def test_empty_platform_fields_omitted(self) -> None:
        """Test that a revoked key leaves no field behind."""
        save_config(Settings(), self.config_path)

        data = yaml.safe_load(self.config_path.read_text())
        self.assertEqual(data["glm"], {})
        self.assertNotIn("master_password_hash", data)


class TestApiKeys(unittest.TestCase):
    """Tests for encrypted platform API keys."""

    def test_set_and_get(self) -> None:
        """Test that a key is encrypted and readable with the password."""
        settings = Settings()
        settings.glm.api_key = "legacy"

        set_api_key(settings, "glm", "sk-glm", "pw")

        self.assertEqual(settings.glm.api_key, "")
        self.assertNotIn("sk-glm", settings.glm.encrypted_api_key)
        self.assertEqual(get_api_key(settings, "glm", "pw"), "sk-glm")

    def test_wrong_password_raises(self) -> None:
        """Test that a wrong password is an error, not a silent None."""
        settings = Settings()
        set_api_key(settings, "glm", "sk-glm", "pw")

        with self.assertRaises(DecryptionError):
            get_api_key(settings, "glm", "wrong")

    def test_password_ignores_plaintext_key(self) -> None:
        """Test that a password only reads the encrypted field."""
        settings = Settings()
        settings.glm.api_key = "legacy"

        self.assertIsNone(get_api_key(settings, "glm", "pw"))
        self.assertEqual(get_api_key(settings, "glm"), "legacy")

    def test_defaults_to_active_platform(self) -> None:
        """Test that the active platform is used when none is given."""
        settings = Settings(active_platform="minimax")
        settings.minimax.api_key = "mm"
        self.assertEqual(get_api_key(settings), "mm")

    def test_revoke(self) -> None:
        """Test that revoking clears both fields."""
        settings = Settings()
        set_api_key(settings, "glm", "sk-glm", "pw")
        settings.glm.api_key = "legacy"

        revoke_api_key(settings, "glm")

        self.assertIsNone(get_api_key(settings, "glm"))
        self.assertIsNone(get_api_key(settings, "glm", "pw"))

    def test_unknown_platform(self) -> None:
        """Test that an unsupported platform is rejected."""
        with self.assertRaises(ConfigurationError):
            get_platform_config(Settings(), "openai")


class TestMasterPassword(unittest.TestCase):
    """Tests for the master password verifier."""

    def test_not_set(self) -> None:
        """Test that nothing verifies before a password is set."""
        self.assertFalse(verify_master_password(Settings(), "pw"))

    def test_verify(self) -> None:
        """Test right and wrong passwords."""
        settings = Settings()
        set_master_password(settings, "pw")

        self.assertTrue(verify_master_password(settings, "pw"))
        self.assertFalse(verify_master_password(settings, "other"))


class TestGetEndpoint(unittest.TestCase):
    """Tests for get_endpoint function."""

    def test_plan_default(self) -> None:
        """Test the endpoint from the global plan."""
        settings = Settings(active_platform="minimax")
        self.assertEqual(get_endpoint(settings), PLATFORM_ENDPOINTS["minimax"]["global"])

    def test_platform_plan_wins(self) -> None:
        """Test that a per-platform plan overrides the global one."""
        settings = Settings()
        settings.minimax.plan = "china"
        self.assertEqual(get_endpoint(settings, "minimax"), PLATFORM_ENDPOINTS["minimax"]["china"])

    def test_explicit_endpoint_wins(self) -> None:
        """Test that a configured endpoint is used as-is."""
        settings = Settings()
        settings.glm.endpoint = "https://proxy.local/v4"
        self.assertEqual(get_endpoint(settings, "glm"), "https://proxy.local/v4")


class TestHelpers(unittest.TestCase):
    """Tests for private helpers."""

    def test_apply_environment_overrides(self) -> None:
        """Test UCHELPER_LOG_LEVEL is upper-cased."""
        with patch.dict(os.environ, {"UCHELPER_LOG_LEVEL": "warning"}):
            settings = _apply_environment_overrides(Settings())
        self.assertEqual(settings.log_level, "WARNING")

    def test_set_nested_attr(self) -> None:
        """Test dotted attribute paths."""
        settings = Settings()
        _set_nested_attr(settings, "credential_storage.type", "wrapper")
        self.assertEqual(settings.credential_storage.type, "wrapper")

    def test_validate_log_level(self) -> None:
        """Test that an unknown log level is rejected."""
        with self.assertRaises(ConfigurationError):
            _validate_config(Settings(log_level="LOUD"))

    def test_settings_to_dict(self) -> None:
        """Test the serialized structure."""
        settings = Settings()
        settings.master_password_hash = "blob"

        data = _settings_to_dict(settings)

        self.assertEqual(data["credential_storage"], {"type": "env"})
        self.assertEqual(data["master_password_hash"], "blob")
        self.assertEqual(data["minimax"], {})


if __name__ == "__main__":
    unittest.main()
