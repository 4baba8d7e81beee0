"""Pytest configuration and fixtures for microdeploy tests.

CRITICAL: Protects production configuration from test modifications.
"""

import os
from pathlib import Path

import pytest


@pytest.fixture(scope="session", autouse=True)
def prevent_real_cloud_operations():
    """Mark test mode and keep real agent endpoints out of tests."""
    os.environ["MICRODEPLOY_TEST_MODE"] = "true"
    os.environ.pop("MICRODEPLOY_AGENT_ENDPOINT", None)
    os.environ.pop("MICRODEPLOY_PING_TIMEOUT", None)

    yield

    os.environ.pop("MICRODEPLOY_TEST_MODE", None)


@pytest.fixture
def isolated_config(tmp_path):
    """Provide isolated config directory for tests.

    Use this fixture instead of modifying ~/.microdeploy/config.toml.
    """
    config_dir = tmp_path / ".microdeploy"
    config_dir.mkdir(parents=True)
    return config_dir


@pytest.fixture
def mock_config_path(isolated_config, monkeypatch):
    """Point ConfigManager's default path at the isolated config directory."""
    config_file = isolated_config / "config.toml"

    from microdeploy.config import ConfigManager

    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_DIR", isolated_config)
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_file)

    return Path(config_file)
