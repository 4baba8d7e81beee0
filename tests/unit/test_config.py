"""Unit tests for config module."""

import os
from datetime import timedelta

import pytest

from microdeploy.config import ConfigError, ConfigManager, DeployerConfig, get_config_int


class TestDeployerConfig:
    """Tests for DeployerConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = DeployerConfig()
        assert config.agent_endpoint is None
        assert config.agent_user == "admin"
        assert config.ping_timeout == timedelta(seconds=60)
        assert config.ping_delay == timedelta(seconds=5)

    def test_to_dict_drops_none(self):
        data = DeployerConfig(agent_endpoint="https://10.0.0.6:6868").to_dict()
        assert data["agent_endpoint"] == "https://10.0.0.6:6868"
        assert "resource_group" not in data

    def test_from_dict_ignores_unknown_keys(self):
        config = DeployerConfig.from_dict({"resource_group": "rg", "legacy_key": 1})
        assert config.resource_group == "rg"

    def test_ssh_tunnel_options_empty_without_host(self):
        assert DeployerConfig().ssh_tunnel_options(password="pw").is_empty()

    def test_ssh_tunnel_options(self):
        config = DeployerConfig(ssh_tunnel_host="10.0.0.6", ssh_tunnel_user="vcap")

        options = config.ssh_tunnel_options(password="pw")

        assert options.host == "10.0.0.6"
        assert options.port == 22
        assert options.user == "vcap"
        assert options.password == "pw"
        assert options.private_key == ""
        assert options.local_forward_port == 6901
        assert options.remote_forward_port == 6901

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MICRODEPLOY_AGENT_ENDPOINT", "https://agent:6868")
        monkeypatch.setenv("MICRODEPLOY_PING_TIMEOUT", "15")

        config = DeployerConfig(agent_endpoint="https://other:6868").apply_env_overrides()

        assert config.agent_endpoint == "https://agent:6868"
        assert config.ping_timeout_seconds == 15


class TestGetConfigInt:
    def test_invalid_value_uses_default(self, monkeypatch):
        monkeypatch.setenv("MICRODEPLOY_TEST_INT", "abc")
        assert get_config_int("MICRODEPLOY_TEST_INT", 7) == 7

    def test_unset_uses_default(self):
        assert get_config_int("MICRODEPLOY_UNSET_INT", 3) == 3


class TestConfigManager:
    """Tests for ConfigManager class."""

    def test_load_missing_file_returns_defaults(self, mock_config_path):
        config = ConfigManager.load_config()
        assert config == DeployerConfig()

    def test_save_and_load(self, mock_config_path):
        config = DeployerConfig(
            agent_endpoint="https://10.0.0.6:6868",
            resource_group="micro-rg",
            ping_timeout_seconds=30,
        )

        path = ConfigManager.save_config(config)

        assert path == mock_config_path
        assert os.stat(path).st_mode & 0o777 == 0o600
        assert ConfigManager.load_config() == config

    def test_save_preserves_comments(self, mock_config_path):
        mock_config_path.write_text('# deployer settings\nresource_group = "old"\n')

        ConfigManager.save_config(DeployerConfig(resource_group="new"))

        content = mock_config_path.read_text()
        assert "# deployer settings" in content
        assert 'resource_group = "new"' in content

    def test_fixes_insecure_permissions(self, mock_config_path):
        mock_config_path.write_text('resource_group = "rg"\n')
        os.chmod(mock_config_path, 0o644)

        ConfigManager.load_config()

        assert os.stat(mock_config_path).st_mode & 0o777 == 0o600

    def test_malformed_toml(self, mock_config_path):
        mock_config_path.write_text("agent_endpoint = [unclosed\n")

        with pytest.raises(ConfigError, match="Failed to load config"):
            ConfigManager.load_config()

    def test_custom_path_must_exist(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigManager.get_config_path(str(tmp_path / "missing.toml"))

    def test_custom_path(self, tmp_path):
        custom = tmp_path / "custom.toml"
        custom.write_text('agent_endpoint = "https://custom:6868"\n')

        config = ConfigManager.load_config(str(custom))

        assert config.agent_endpoint == "https://custom:6868"


class TestSetValue:
    """Tests for DeployerConfig.set_value."""

    def test_int_field(self):
        config = DeployerConfig()
        config.set_value("ssh_tunnel_port", "2222")
        assert config.ssh_tunnel_port == 2222

    def test_optional_string_field(self):
        config = DeployerConfig(resource_group="old")
        config.set_value("resource_group", "new")
        assert config.resource_group == "new"

    def test_empty_clears_optional_field(self):
        config = DeployerConfig(resource_group="old")
        config.set_value("resource_group", "")
        assert config.resource_group is None

    def test_required_string_field(self):
        config = DeployerConfig()
        config.set_value("agent_user", "vcap")
        assert config.agent_user == "vcap"

    def test_invalid_int(self):
        with pytest.raises(ConfigError, match="must be an integer"):
            DeployerConfig().set_value("ping_delay_seconds", "soon")

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown config key"):
            DeployerConfig().set_value("region", "westus")


class TestLoadWithoutEnv:
    def test_env_not_applied(self, mock_config_path, monkeypatch):
        monkeypatch.setenv("MICRODEPLOY_AGENT_ENDPOINT", "https://from-env:6868")

        assert ConfigManager.load_config(apply_env=False).agent_endpoint is None
        assert ConfigManager.load_config().agent_endpoint == "https://from-env:6868"
