"""Pytest configuration and shared fixtures for natkeeper tests."""

from __future__ import annotations

import logging
import socket
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from defusedxml import ElementTree as ET  # noqa: N817

from natkeeper.config.config import ENV_MAPPINGS, reset_config
from natkeeper.models import WAN_IP_CONNECTION_SERVICE, UPnPConfig


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("network", "marks tests that exercise network code paths"),
        ("cli", "marks tests as CLI tests"),
        ("config", "marks tests as configuration tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _clear_natkeeper_env(monkeypatch):
    """Keep a developer's NATKEEPER_* variables out of the tests."""
    for env_name in ENV_MAPPINGS:
        monkeypatch.delenv(env_name, raising=False)


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Undo setup_logging() so caplog sees natkeeper records again."""
    yield
    logger = logging.getLogger("natkeeper")
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def cleanup_global_config():
    """Forget the global configuration between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def upnp_config() -> UPnPConfig:
    """UPnP settings with short timeouts for local servers."""
    return UPnPConfig(discovery_window=0.01, http_timeout=5.0)


@pytest.fixture
def closed_port() -> int:
    """A localhost TCP port nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


DESCRIPTION_TEMPLATE = """<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <specVersion><major>1</major><minor>0</minor></specVersion>
  <device>
    <deviceType>urn:schemas-upnp-org:device:InternetGatewayDevice:1</deviceType>
    <friendlyName>Test Gateway</friendlyName>
    <serviceList>
      <service>
        <serviceType>urn:schemas-upnp-org:service:Layer3Forwarding:1</serviceType>
        <controlURL>/ctl/L3F</controlURL>
      </service>
    </serviceList>
    <deviceList>
      <device>
        <deviceType>urn:schemas-upnp-org:device:WANDevice:1</deviceType>
        <deviceList>
          <device>
            <deviceType>urn:schemas-upnp-org:device:WANConnectionDevice:1</deviceType>
            <serviceList>
              <service>
                <serviceType>{service_type}</serviceType>
                <controlURL>{control_url}</controlURL>
              </service>
            </serviceList>
          </device>
        </deviceList>
      </device>
    </deviceList>
  </device>
</root>
"""

FAULT_TEMPLATE = """<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"
  s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
<s:Body>
<s:Fault>
<faultcode>s:Client</faultcode>
<faultstring>UPnPError</faultstring>
<detail>
<UPnPError xmlns="urn:schemas-upnp-org:control-1-0">
<errorCode>{code}</errorCode>
<errorDescription>{description}</errorDescription>
</UPnPError>
</detail>
</s:Fault>
</s:Body>
</s:Envelope>
"""

RESPONSE_TEMPLATE = """<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"
  s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
<s:Body>
<u:{action}Response xmlns:u="{service_type}">{arguments}</u:{action}Response>
</s:Body>
</s:Envelope>
"""


class FakeGateway:
    """In-process Internet Gateway Device serving a description and a control URL.

    Mappings are kept in ``mappings`` keyed by (protocol, external_port); every
    SOAP request lands in ``requests`` with its raw header names.
    """

    def __init__(
        self,
        *,
        service_type: str = WAN_IP_CONNECTION_SERVICE,
        control_url: str = "/ctl/IPConn",
        description_status: int = 200,
        refuse_mappings: bool = False,
        control_status: int | None = None,
        external_ip: str = "203.0.113.7",
    ) -> None:
        self.service_type = service_type
        self.control_path = control_url
        self.description_status = description_status
        self.refuse_mappings = refuse_mappings
        self.control_status = control_status
        self.external_ip = external_ip
        self.mappings: dict[tuple[str, int], dict[str, str]] = {}
        self.requests: list[dict[str, Any]] = []
        self.description_hits = 0

        app = web.Application()
        app.router.add_get("/rootDesc.xml", self._description)
        app.router.add_post("/ctl/IPConn", self._control)
        self.server = TestServer(app, host="127.0.0.1")

    async def __aenter__(self) -> FakeGateway:
        await self.server.start_server()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.server.close()

    @property
    def location(self) -> str:
        return str(self.server.make_url("/rootDesc.xml"))

    @property
    def control_url(self) -> str:
        return str(self.server.make_url("/ctl/IPConn"))

    @property
    def actions(self) -> list[str]:
        return [request["action"] for request in self.requests]

    async def _description(self, request: web.Request) -> web.Response:
        self.description_hits += 1
        if self.description_status != 200:
            return web.Response(status=self.description_status, text="Not Found")
        body = DESCRIPTION_TEMPLATE.format(
            service_type=self.service_type, control_url=self.control_path
        )
        return web.Response(text=body, content_type="text/xml")

    async def _control(self, request: web.Request) -> web.Response:
        soap_action = request.headers.get("SOAPAction", "").strip('"')
        action = soap_action.rsplit("#", 1)[-1]
        body = await request.text()
        arguments = _action_arguments(body, action)
        self.requests.append(
            {
                "action": action,
                "soap_action": soap_action,
                "header_names": [name.decode() for name, _ in request.raw_headers],
                "headers": dict(request.headers),
                "arguments": arguments,
            }
        )

        if self.control_status is not None:
            return web.Response(status=self.control_status, text="Service Unavailable")

        if action == "AddPortMapping":
            return self._add(arguments)
        if action == "DeletePortMapping":
            key = (arguments["NewProtocol"], int(arguments["NewExternalPort"]))
            if self.mappings.pop(key, None) is None:
                return _fault(714, "NoSuchEntryInArray")
            return _response(action, self.service_type, {})
        if action == "GetExternalIPAddress":
            return _response(
                action, self.service_type, {"NewExternalIPAddress": self.external_ip}
            )
        return _fault(401, "Invalid Action")

    def _add(self, arguments: dict[str, str]) -> web.Response:
        key = (arguments["NewProtocol"], int(arguments["NewExternalPort"]))
        existing = self.mappings.get(key)
        if self.refuse_mappings or (
            existing is not None
            and existing["NewInternalClient"] != arguments["NewInternalClient"]
        ):
            return _fault(718, "ConflictInMappingEntry")
        self.mappings[key] = arguments
        return _response("AddPortMapping", self.service_type, {})


def _action_arguments(body: str, action: str) -> dict[str, str]:
    root = ET.fromstring(body)
    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] == action:
            return {child.tag: (child.text or "") for child in element}
    return {}


def _fault(code: int, description: str) -> web.Response:
    return web.Response(
        status=500,
        text=FAULT_TEMPLATE.format(code=code, description=description),
        content_type="text/xml",
    )


def _response(action: str, service_type: str, arguments: dict[str, str]) -> web.Response:
    argument_xml = "".join(f"<{k}>{v}</{k}>" for k, v in arguments.items())
    return web.Response(
        text=RESPONSE_TEMPLATE.format(
            action=action, service_type=service_type, arguments=argument_xml
        ),
        content_type="text/xml",
    )


@pytest.fixture
def fake_gateway():
    """Factory for FakeGateway; use as ``async with fake_gateway() as gw``."""
    return FakeGateway


class StaticDiscoverer:
    """Discoverer returning a fixed list of locations."""

    def __init__(self, urls: list[str] | None = None, error: Exception | None = None):
        self.urls = list(urls or [])
        self.error = error
        self.calls = 0

    async def discover(self) -> list[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.urls)


@pytest.fixture
def static_discoverer():
    """Factory for StaticDiscoverer."""
    return StaticDiscoverer
