"""Pydantic models for natkeeper.

Provides validated configuration models for type safety and runtime validation.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

WAN_IP_CONNECTION_SERVICE = "urn:schemas-upnp-org:service:WANIPConnection:1"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class UPnPConfig(BaseModel):
    """UPnP IGD port forwarding configuration."""

    lease_duration: int = Field(
        default=600,
        ge=60,
        le=86400,
        description="Requested mapping lease in seconds, also the renewal interval",
    )
    discovery_window: float = Field(
        default=0.5,
        gt=0.0,
        le=10.0,
        description="Seconds to collect SSDP responses after sending M-SEARCH",
    )
    http_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Total timeout for each description fetch or SOAP request",
    )
    description_prefix: str = Field(
        default="natkeeper",
        min_length=1,
        max_length=64,
        description="Prefix of the NewPortMappingDescription sent to the gateway",
    )
    service_type: str = Field(
        default=WAN_IP_CONNECTION_SERVICE,
        description="Service type whose controlURL is used for port mapping",
    )
    address_probe_host: str = Field(
        default="8.8.8.8",
        description="Address used to select the outbound interface (never contacted)",
    )
    address_probe_port: int = Field(
        default=53,
        ge=1,
        le=65535,
        description="Port paired with address_probe_host",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log records instead of plain text",
    )


class Config(BaseModel):
    """Top-level natkeeper configuration."""

    upnp: UPnPConfig = Field(default_factory=UPnPConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
