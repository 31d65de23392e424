"""NAT traversal exceptions."""

from natkeeper.utils.exceptions import NetworkError


class NATError(NetworkError):
    """Base exception for NAT traversal errors."""


class DiscoveryError(NATError):
    """SSDP discovery could not be performed."""


class UPnPError(NATError):
    """UPnP specific error (description fetch or SOAP transport)."""


class LocalAddressError(NATError):
    """The local outbound address could not be determined."""
