"""Local outbound address detection."""

from __future__ import annotations

import logging
import socket

from natkeeper.nat.exceptions import LocalAddressError

logger = logging.getLogger(__name__)

DEFAULT_PROBE = ("8.8.8.8", 53)


def get_internal_address(probe: tuple[str, int] = DEFAULT_PROBE) -> str:
    """Return the local IPv4 address the OS would use to reach ``probe``.

    Connecting a UDP socket sends nothing; it only makes the kernel pick a
    route and a source address, which getsockname() then reports.

    Raises:
        LocalAddressError: If no usable address could be determined

    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(probe)
            internal_ip = sock.getsockname()[0]
    except OSError as e:
        msg = f"Cannot discover local IP address: {e}"
        raise LocalAddressError(msg, {"probe": f"{probe[0]}:{probe[1]}"}) from e

    if not internal_ip or internal_ip == "0.0.0.0":  # nosec B104 - compared, never bound
        msg = "Cannot discover local IP address"
        raise LocalAddressError(msg, {"probe": f"{probe[0]}:{probe[1]}"})

    logger.debug("Determined local IP for UPnP mapping: %s", internal_ip)
    return internal_ip
