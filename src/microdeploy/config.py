"""Configuration management module.

Persistent deployer settings stored as TOML at ~/.microdeploy/config.toml:
agent endpoint and credentials, cloud resource group, SSH tunnel defaults
and the ping policy used when deleting an instance.

Precedence: CLI flags > environment > config file > defaults.

Security:
- Config file permissions: 0600 (owner read/write only)
- Passwords never logged
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

import tomli
import tomlkit

from microdeploy.sshtunnel import SSHTunnelOptions

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


def get_config_int(env_var: str, default: int) -> int:
    """Get integer config from environment with safe fallback."""
    try:
        return int(os.getenv(env_var, default))
    except (ValueError, TypeError):
        logger.warning(f"Invalid {env_var} value, using default {default}")
        return default


@dataclass
class DeployerConfig:
    """Deployer configuration data."""

    agent_endpoint: str | None = None
    agent_user: str = "admin"
    agent_password: str | None = None
    resource_group: str | None = None
    ssh_tunnel_host: str | None = None
    ssh_tunnel_port: int = 22
    ssh_tunnel_user: str | None = None
    ssh_tunnel_private_key: str | None = None
    ssh_tunnel_local_forward_port: int = 6901
    ssh_tunnel_remote_forward_port: int = 6901
    ping_timeout_seconds: int = 60
    ping_delay_seconds: int = 5

    @property
    def ping_timeout(self) -> timedelta:
        return timedelta(seconds=self.ping_timeout_seconds)

    @property
    def ping_delay(self) -> timedelta:
        return timedelta(seconds=self.ping_delay_seconds)

    def ssh_tunnel_options(self, password: str = "") -> SSHTunnelOptions:
        """Tunnel options from config; empty options when no host is configured."""
        if not self.ssh_tunnel_host:
            return SSHTunnelOptions()
        return SSHTunnelOptions(
            host=self.ssh_tunnel_host,
            port=self.ssh_tunnel_port,
            user=self.ssh_tunnel_user or "",
            password=password,
            private_key=str(Path(self.ssh_tunnel_private_key).expanduser())
            if self.ssh_tunnel_private_key
            else "",
            local_forward_port=self.ssh_tunnel_local_forward_port,
            remote_forward_port=self.ssh_tunnel_remote_forward_port,
        )

    def apply_env_overrides(self) -> "DeployerConfig":
        endpoint = os.getenv("MICRODEPLOY_AGENT_ENDPOINT")
        if endpoint:
            self.agent_endpoint = endpoint
        self.ping_timeout_seconds = get_config_int(
            "MICRODEPLOY_PING_TIMEOUT", self.ping_timeout_seconds
        )
        return self

    def set_value(self, key: str, value: str) -> None:
        """Set one field from its string form.

        Raises:
            ConfigError: If the key is unknown or the value has the wrong type
        """
        field_types = {f.name: f.type for f in fields(self)}
        if key not in field_types:
            raise ConfigError(
                f"Unknown config key: {key}. Valid keys: {', '.join(sorted(field_types))}"
            )

        if field_types[key] is int:
            try:
                setattr(self, key, int(value))
            except ValueError as e:
                raise ConfigError(f"{key} must be an integer, got {value!r}") from e
        elif field_types[key] is str:
            setattr(self, key, value)
        else:
            # Optional string: empty clears it
            setattr(self, key, value or None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # TOML has no null
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeployerConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})


class ConfigManager:
    """Manage the microdeploy configuration file."""

    DEFAULT_CONFIG_DIR = Path.home() / ".microdeploy"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Raises:
            ConfigError: If a custom path is given but does not exist
        """
        if custom_path:
            path = Path(custom_path).expanduser().resolve()
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            return path
        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def load_config(
        cls, custom_path: str | None = None, apply_env: bool = True
    ) -> DeployerConfig:
        """Load configuration from file, falling back to defaults.

        Environment overrides are applied unless apply_env is False (used when
        the loaded config is about to be written back).

        Raises:
            ConfigError: If the file cannot be parsed
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            config = DeployerConfig()
            return config.apply_env_overrides() if apply_env else config

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)

            logger.debug(f"Loaded config from: {config_path}")
            config = DeployerConfig.from_dict(data)
            return config.apply_env_overrides() if apply_env else config

        except (OSError, tomli.TOMLDecodeError, TypeError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: DeployerConfig, custom_path: str | None = None) -> Path:
        """Save configuration, preserving comments in an existing file.

        Returns:
            Path written

        Raises:
            ConfigError: If saving fails
        """
        config_path = (
            Path(custom_path).expanduser().resolve() if custom_path else cls.DEFAULT_CONFIG_FILE
        )
        temp_path = config_path.with_suffix(".tmp")

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except Exception as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e


__all__ = ["ConfigError", "ConfigManager", "DeployerConfig", "get_config_int"]
