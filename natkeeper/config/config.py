"""Configuration management for natkeeper.

Provides centralized configuration with TOML support, validation and
hierarchical loading from defaults -> config file -> environment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from natkeeper.models import Config, UPnPConfig
from natkeeper.utils.exceptions import ConfigurationError
from natkeeper.utils.logging_config import setup_logging

CONFIG_FILE_NAME = "natkeeper.toml"
ENV_PREFIX = "NATKEEPER_"

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    "NATKEEPER_UPNP_LEASE_DURATION": "upnp.lease_duration",
    "NATKEEPER_UPNP_DISCOVERY_WINDOW": "upnp.discovery_window",
    "NATKEEPER_UPNP_HTTP_TIMEOUT": "upnp.http_timeout",
    "NATKEEPER_UPNP_DESCRIPTION_PREFIX": "upnp.description_prefix",
    "NATKEEPER_UPNP_SERVICE_TYPE": "upnp.service_type",
    "NATKEEPER_UPNP_ADDRESS_PROBE_HOST": "upnp.address_probe_host",
    "NATKEEPER_UPNP_ADDRESS_PROBE_PORT": "upnp.address_probe_port",
    "NATKEEPER_LOG_LEVEL": "observability.log_level",
    "NATKEEPER_LOG_FILE": "observability.log_file",
    "NATKEEPER_STRUCTURED_LOGGING": "observability.structured_logging",
}

# Global configuration instance
_config_manager: ConfigManager | None = None


def _parse_env_value(raw: str) -> bool | int | float | str:
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Loads, validates and exposes natkeeper configuration."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        configure_logging: bool = True,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for natkeeper.toml
            configure_logging: Apply the observability section to ``logging``

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if configure_logging:
            self._setup_logging()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "natkeeper" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to read config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw))
        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    return _config_manager.config


def init_config(
    config_file: str | Path | None = None,
    configure_logging: bool = True,
) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file, configure_logging=configure_logging)
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    _config_manager.config = new_config
    logging.getLogger(__name__).debug("Configuration replaced at runtime")


def reset_config() -> None:
    """Forget the global configuration (used by tests)."""
    global _config_manager
    _config_manager = None


def get_upnp_config() -> UPnPConfig:
    """Get UPnP configuration."""
    return get_config().upnp
