"""Port mapping value objects shared by the UPnP components."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ManagerState(str, Enum):
    """Lifecycle states of a PortForwardManager."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    MAPPING = "mapping"
    ACTIVE = "active"


@dataclass(frozen=True)
class ControlEndpoint:
    """Control URL of a gateway's WAN IP connection service.

    ``host`` and ``port`` belong to the device description document the
    control URL was resolved from.
    """

    control_url: str
    host: str
    port: int
    service_type: str


@dataclass(frozen=True)
class MappingRequest:
    """One desired (protocol, external port) -> (internal ip, internal port) rule."""

    protocol: str  # "TCP" or "UDP"
    external_port: int
    internal_port: int
    internal_ip: str
    description: str
    lease_duration: int

    def __post_init__(self) -> None:
        protocol = self.protocol.upper()
        if protocol not in ("TCP", "UDP"):
            msg = f"Unsupported protocol: {self.protocol!r}"
            raise ValueError(msg)
        object.__setattr__(self, "protocol", protocol)
        for name in ("external_port", "internal_port"):
            value = getattr(self, name)
            if not 0 < value < 65536:
                msg = f"{name} out of range: {value}"
                raise ValueError(msg)


@dataclass(frozen=True)
class ActiveMapping:
    """Result of a successful AddPortMapping."""

    endpoint: ControlEndpoint
    request: MappingRequest
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Return True once the gateway has dropped the mapping on its own."""
        return now > self.expires_at
