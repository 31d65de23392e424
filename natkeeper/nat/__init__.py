"""NAT traversal through UPnP Internet Gateway Devices.

Discovers gateways via SSDP, resolves their WANIPConnection control URL and
keeps a port mapping alive for as long as the process runs.
"""

from natkeeper.nat.exceptions import (
    DiscoveryError,
    LocalAddressError,
    NATError,
    UPnPError,
)
from natkeeper.nat.manager import PortForwardManager, release_mapping, start
from natkeeper.nat.port_mapping import (
    ActiveMapping,
    ControlEndpoint,
    ManagerState,
    MappingRequest,
)

__all__ = [
    "ActiveMapping",
    "ControlEndpoint",
    "DiscoveryError",
    "LocalAddressError",
    "ManagerState",
    "MappingRequest",
    "NATError",
    "PortForwardManager",
    "UPnPError",
    "release_mapping",
    "start",
]
