"""Device description fetching and control URL resolution."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlsplit

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817

from natkeeper.models import WAN_IP_CONNECTION_SERVICE
from natkeeper.nat.exceptions import UPnPError
from natkeeper.nat.port_mapping import ControlEndpoint

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443}


def local_name(tag: str) -> str:
    """Strip the ``{namespace}`` prefix ElementTree puts on qualified tags."""
    return tag.rsplit("}", 1)[-1]


def _child_text(element, name: str) -> str | None:
    for child in element:
        if local_name(child.tag) == name:
            return (child.text or "").strip()
    return None


def find_control_url(
    xml_text: str, service_type: str = WAN_IP_CONNECTION_SERVICE
) -> str | None:
    """Return the controlURL of the first service of ``service_type``.

    Device descriptions nest services inside embedded devices and declare a
    default namespace, so every ``service`` element is visited by local name.

    Raises:
        UPnPError: If the document is not well-formed XML

    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        msg = f"Failed to parse device description XML: {e}"
        raise UPnPError(msg) from e

    for service in root.iter():
        if local_name(service.tag) != "service":
            continue
        if _child_text(service, "serviceType") != service_type:
            continue
        control_url = _child_text(service, "controlURL")
        if control_url:
            return control_url
    return None


def absolutize_control_url(control_url: str, description_url: str) -> str:
    """Turn a relative control URL into one on the description document's host."""
    if control_url.startswith(("http://", "https://")):
        return control_url

    parts = urlsplit(description_url)
    scheme = parts.scheme or "http"
    port = parts.port or DEFAULT_PORTS.get(scheme, 80)
    if not control_url.startswith("/"):
        control_url = f"/{control_url}"
    return f"{scheme}://{parts.hostname}:{port}{control_url}"


class ControlURLResolver:
    """Fetches device descriptions and extracts the WAN IP control endpoint."""

    def __init__(
        self,
        service_type: str = WAN_IP_CONNECTION_SERVICE,
        timeout: float = 10.0,
    ) -> None:
        """Initialize resolver.

        Args:
            service_type: serviceType to look for, matched exactly
            timeout: Total timeout for the description fetch in seconds

        """
        self.service_type = service_type
        self.timeout = timeout

    async def fetch_description(self, url: str) -> str | None:
        """GET the description document; None on a non-2xx response.

        Raises:
            UPnPError: On connection failures and timeouts

        """
        try:
            async with aiohttp.ClientSession() as session, session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if not 200 <= response.status < 300:
                    logger.warning(
                        "Could not fetch description XML at %s: HTTP %d",
                        url,
                        response.status,
                    )
                    return None
                return await response.text()
        except asyncio.TimeoutError as e:
            msg = f"Timeout fetching device description from {url}"
            raise UPnPError(msg) from e
        except aiohttp.ClientError as e:
            msg = f"Network error fetching device description from {url}: {e}"
            raise UPnPError(msg) from e

    async def resolve(self, url: str) -> ControlEndpoint | None:
        """Resolve the control endpoint advertised at ``url``.

        Returns:
            The endpoint, or None when the fetch was refused or the device
            has no matching service

        Raises:
            UPnPError: If the document could not be fetched or parsed

        """
        xml_text = await self.fetch_description(url)
        if xml_text is None:
            return None

        control_url = find_control_url(xml_text, self.service_type)
        if control_url is None:
            logger.debug("No %s service in description at %s", self.service_type, url)
            return None

        parts = urlsplit(url)
        scheme = parts.scheme or "http"
        endpoint = ControlEndpoint(
            control_url=absolutize_control_url(control_url, url),
            host=parts.hostname or "",
            port=parts.port or DEFAULT_PORTS.get(scheme, 80),
            service_type=self.service_type,
        )
        logger.debug("Resolved control URL %s from %s", endpoint.control_url, url)
        return endpoint
