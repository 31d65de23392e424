"""SSDP discovery of UPnP root devices."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable

from natkeeper.nat.exceptions import DiscoveryError

logger = logging.getLogger(__name__)

# SSDP constants
SSDP_MULTICAST_IP = "239.255.255.250"
SSDP_MULTICAST_PORT = 1900
SSDP_SEARCH_TARGET = "upnp:rootdevice"
SSDP_MX = 3
SSDP_DISCOVERY_WINDOW = 0.5
SSDP_RECV_SIZE = 4096


def build_msearch_request(search_target: str = SSDP_SEARCH_TARGET) -> bytes:
    """Build the SSDP M-SEARCH request.

    Args:
        search_target: ST (Search Target) header value

    Returns:
        M-SEARCH request bytes, CRLF terminated

    """
    msg = (
        "M-SEARCH * HTTP/1.1\r\n"
        f"Host: {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}\r\n"
        'Man: "ssdp:discover"\r\n'
        f"ST: {search_target}\r\n"
        f"MX: {SSDP_MX}\r\n"
        "\r\n"
    )
    return msg.encode("ascii")


def parse_ssdp_response(response: bytes) -> dict[str, str]:
    """Parse SSDP response headers.

    Args:
        response: SSDP response bytes

    Returns:
        Dictionary of header fields keyed by lower-cased name

    """
    headers: dict[str, str] = {}
    lines = response.decode("utf-8", errors="ignore").split("\r\n")
    for line in lines[1:]:  # Skip status line
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


def extract_location(response: bytes) -> str | None:
    """Return the description URL from a response's Location header, if any."""
    location = parse_ssdp_response(response).get("location", "")
    return location or None


def drain_responses(sock: socket.socket, bufsize: int = SSDP_RECV_SIZE) -> list[bytes]:
    """Read every datagram already queued on a non-blocking socket."""
    responses: list[bytes] = []
    while True:
        try:
            data, addr = sock.recvfrom(bufsize)
        except (BlockingIOError, InterruptedError):
            break
        logger.debug("Received SSDP response from %s:%d (%d bytes)", addr[0], addr[1], len(data))
        responses.append(data)
    return responses


class SSDPDiscoverer:
    """Finds UPnP root devices with a single multicast M-SEARCH."""

    def __init__(
        self,
        window: float = SSDP_DISCOVERY_WINDOW,
        socket_factory: Callable[[], socket.socket] | None = None,
    ) -> None:
        """Initialize discoverer.

        Args:
            window: Seconds to wait for responses after sending the request
            socket_factory: Returns a fresh UDP socket (defaults to AF_INET/SOCK_DGRAM)

        """
        self.window = window
        self._socket_factory = socket_factory or (
            lambda: socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        )

    async def discover(self) -> list[str]:
        """Send M-SEARCH and collect description URLs in arrival order.

        Returns:
            Location URLs (duplicates kept), possibly empty

        Raises:
            DiscoveryError: If the request could not be sent

        """
        try:
            sock = self._socket_factory()
        except OSError as e:
            msg = f"Could not create SSDP socket: {e}"
            raise DiscoveryError(msg) from e

        try:
            sock.setblocking(False)
            request = build_msearch_request()
            try:
                await asyncio.get_running_loop().sock_sendto(
                    sock, request, (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT)
                )
            except OSError as e:
                msg = f"Could not send M-SEARCH to {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}: {e}"
                raise DiscoveryError(msg) from e
            logger.debug("Sent M-SEARCH for %s", SSDP_SEARCH_TARGET)

            # Gateways answer within MX seconds; we only wait for the fast ones.
            await asyncio.sleep(self.window)
            responses = drain_responses(sock)
        finally:
            sock.close()

        urls: list[str] = []
        for response in responses:
            location = extract_location(response)
            if location is None:
                logger.debug("Ignoring SSDP response without Location header")
                continue
            urls.append(location)

        logger.debug(
            "SSDP discovery collected %d response(s), %d location(s)",
            len(responses),
            len(urls),
        )
        return urls
