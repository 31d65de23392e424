"""Configuration package for natkeeper."""

from natkeeper.config.config import (
    ConfigManager,
    get_config,
    get_upnp_config,
    init_config,
    set_config,
)

__all__ = [
    "ConfigManager",
    "get_config",
    "get_upnp_config",
    "init_config",
    "set_config",
]
