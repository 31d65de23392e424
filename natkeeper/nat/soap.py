"""SOAP port mapping client for the WANIPConnection service."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlsplit
from xml.sax.saxutils import escape

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817

from natkeeper.models import WAN_IP_CONNECTION_SERVICE
from natkeeper.nat.description import local_name
from natkeeper.nat.exceptions import UPnPError
from natkeeper.nat.port_mapping import ControlEndpoint, MappingRequest

logger = logging.getLogger(__name__)

SOAP_ENVELOPE_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING_NS = "http://schemas.xmlsoap.org/soap/encoding/"
SOAP_CONTENT_TYPE = 'text/xml; charset="utf-8"'


def build_soap_envelope(
    action: str,
    namespace: str,
    arguments: dict[str, str | int],
) -> str:
    """Build SOAP action request body.

    Args:
        action: SOAP action name (e.g., "AddPortMapping")
        namespace: UPnP service type the action belongs to
        arguments: Action arguments, in the order the service expects them

    Returns:
        SOAP request XML string

    """
    argument_xml = "\n".join(
        f"<{name}>{escape(str(value))}</{name}>" for name, value in arguments.items()
    )
    return (
        '<?xml version="1.0"?>\n'
        f'<s:Envelope xmlns:s="{SOAP_ENVELOPE_NS}"\n'
        f'  s:encodingStyle="{SOAP_ENCODING_NS}">\n'
        "<s:Body>\n"
        f'<u:{action} xmlns:u="{namespace}">\n'
        f"{argument_xml}\n"
        f"</u:{action}>\n"
        "</s:Body>\n"
        "</s:Envelope>\n"
    )


def build_soap_headers(
    control_url: str,
    namespace: str,
    action: str,
    body: bytes,
) -> dict[str, str]:
    """Build the request headers for a SOAP action.

    Some gateways match header names case-sensitively, so the keys here are
    exactly what goes on the wire.
    """
    parts = urlsplit(control_url)
    port = parts.port or (443 if parts.scheme == "https" else 80)
    return {
        "Host": f"{parts.hostname}:{port}",
        "Content-Length": str(len(body)),
        "Content-Type": SOAP_CONTENT_TYPE,
        "SOAPAction": f'"{namespace}#{action}"',
    }


def parse_error_descriptions(body: str) -> list[str]:
    """Return the text of every errorDescription element in a SOAP fault."""
    root = ET.fromstring(body)
    return [
        (element.text or "").strip()
        for element in root.iter()
        if local_name(element.tag) == "errorDescription"
    ]


def parse_response_arguments(body: str) -> dict[str, str]:
    """Return the output arguments of a SOAP ``...Response`` element."""
    root = ET.fromstring(body)
    for element in root.iter():
        if local_name(element.tag).endswith("Response"):
            return {local_name(child.tag): (child.text or "").strip() for child in element}
    return {}


def build_description(
    prefix: str,
    internal_ip: str,
    internal_port: int,
    external_port: int,
    protocol: str,
) -> str:
    """Human readable NewPortMappingDescription."""
    return f"{prefix} ({internal_ip}:{internal_port}) {external_port} {protocol}"


class PortMappingClient:
    """Sends AddPortMapping/DeletePortMapping to a gateway control URL."""

    def __init__(
        self,
        service_type: str = WAN_IP_CONNECTION_SERVICE,
        timeout: float = 10.0,
    ) -> None:
        """Initialize client.

        Args:
            service_type: Namespace of the actions (WANIPConnection service type)
            timeout: Total timeout per request in seconds

        """
        self.service_type = service_type
        self.timeout = timeout

    async def send_soap(
        self,
        control_url: str,
        action: str,
        arguments: dict[str, str | int],
    ) -> str | None:
        """POST a SOAP action.

        Returns:
            Response body on a 2xx status, None when the gateway refused

        Raises:
            UPnPError: If the gateway could not be reached

        """
        host = urlsplit(control_url).hostname
        body = build_soap_envelope(action, self.service_type, arguments).encode("utf-8")
        headers = build_soap_headers(control_url, self.service_type, action, body)

        try:
            async with aiohttp.ClientSession() as session, session.post(
                control_url,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                response_text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError as e:
            msg = f"Timeout sending {action} to {host}"
            raise UPnPError(msg, {"control_url": control_url}) from e
        except aiohttp.ClientError as e:
            msg = f"Network error sending {action} to {host}: {e}"
            raise UPnPError(msg, {"control_url": control_url}) from e

        if 200 <= status < 300:
            return response_text

        try:
            descriptions = parse_error_descriptions(response_text)
        except ET.ParseError:
            descriptions = []
        for description in descriptions:
            logger.warning("UPnP warning: Failure for %s: %s", host, description)
        if not descriptions:
            logger.warning("UPnP warning: %s on %s failed with HTTP %d", action, host, status)
        return None

    async def add_mapping(
        self, endpoint: ControlEndpoint, request: MappingRequest
    ) -> bool:
        """Ask the gateway to forward ``request.external_port``.

        Returns:
            True if the gateway accepted the mapping

        """
        arguments: dict[str, str | int] = {
            "NewRemoteHost": "",
            "NewExternalPort": request.external_port,
            "NewProtocol": request.protocol,
            "NewInternalPort": request.internal_port,
            "NewInternalClient": request.internal_ip,
            "NewEnabled": 1,
            "NewPortMappingDescription": request.description,
            "NewLeaseDuration": request.lease_duration,
        }
        response = await self.send_soap(endpoint.control_url, "AddPortMapping", arguments)
        if response is None:
            return False

        logger.info(
            "UPnP router %s is forwarding %d to %s:%d, expires in %d s.",
            urlsplit(endpoint.control_url).hostname,
            request.external_port,
            request.internal_ip,
            request.internal_port,
            request.lease_duration,
        )
        return True

    async def delete_mapping(
        self, endpoint: ControlEndpoint, protocol: str, external_port: int
    ) -> bool:
        """Remove the gateway's mapping for (protocol, external_port).

        Returns:
            True if the gateway accepted the removal

        """
        arguments: dict[str, str | int] = {
            "NewRemoteHost": "",
            "NewExternalPort": external_port,
            "NewProtocol": protocol.upper(),
        }
        response = await self.send_soap(
            endpoint.control_url, "DeletePortMapping", arguments
        )
        if response is None:
            return False

        logger.info(
            "UPnP router %s is no longer forwarding %d",
            urlsplit(endpoint.control_url).hostname,
            external_port,
        )
        return True

    async def get_external_ip(self, endpoint: ControlEndpoint) -> str | None:
        """Return the gateway's WAN address, or None if it would not say."""
        response = await self.send_soap(
            endpoint.control_url, "GetExternalIPAddress", {}
        )
        if response is None:
            return None
        try:
            arguments = parse_response_arguments(response)
        except ET.ParseError as e:
            msg = f"Failed to parse GetExternalIPAddress response: {e}"
            raise UPnPError(msg) from e
        return arguments.get("NewExternalIPAddress") or None
