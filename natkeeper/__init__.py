"""natkeeper - keep a UPnP port forwarding open for a peer-to-peer application."""

from natkeeper.nat import PortForwardManager, start
from natkeeper.utils.exceptions import (
    ConfigurationError,
    NatKeeperError,
    NetworkError,
)

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "NatKeeperError",
    "NetworkError",
    "PortForwardManager",
    "__version__",
    "start",
]
