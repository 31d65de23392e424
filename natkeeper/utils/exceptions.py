"""Exception hierarchy for natkeeper.

Every error raised by the package derives from NatKeeperError so callers can
catch the whole family at once.
"""

from __future__ import annotations

from typing import Any


class NatKeeperError(Exception):
    """Base exception for all natkeeper errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize natkeeper error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(NatKeeperError):
    """Network-related errors."""


class ValidationError(NatKeeperError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""
