"""Tests for the SOAP port mapping client (natkeeper/nat/soap.py)."""

from __future__ import annotations

import logging

import pytest
from defusedxml import ElementTree as ET  # noqa: N817

from natkeeper.models import WAN_IP_CONNECTION_SERVICE
from natkeeper.nat.exceptions import UPnPError
from natkeeper.nat.port_mapping import ControlEndpoint, MappingRequest
from natkeeper.nat.soap import (
    PortMappingClient,
    build_description,
    build_soap_envelope,
    build_soap_headers,
    parse_error_descriptions,
    parse_response_arguments,
)

pytestmark = [pytest.mark.unit, pytest.mark.network]

FAULT = """<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">
<s:Body><s:Fault><detail>
<UPnPError xmlns="urn:schemas-upnp-org:control-1-0">
<errorCode>718</errorCode>
<errorDescription>ConflictInMappingEntry</errorDescription>
</UPnPError>
</detail></s:Fault></s:Body>
</s:Envelope>
"""


def endpoint_for(gw) -> ControlEndpoint:
    return ControlEndpoint(
        control_url=gw.control_url,
        host="127.0.0.1",
        port=gw.server.port,
        service_type=WAN_IP_CONNECTION_SERVICE,
    )


def mapping_request(**overrides) -> MappingRequest:
    fields = {
        "protocol": "TCP",
        "external_port": 6881,
        "internal_port": 6881,
        "internal_ip": "192.168.1.50",
        "description": "natkeeper (192.168.1.50:6881) 6881 TCP",
        "lease_duration": 600,
    }
    fields.update(overrides)
    return MappingRequest(**fields)


class TestSOAPMessages:
    """Tests for envelope and header construction."""

    def test_envelope_arguments_in_order(self):
        body = build_soap_envelope(
            "AddPortMapping",
            WAN_IP_CONNECTION_SERVICE,
            {"NewRemoteHost": "", "NewExternalPort": 6881, "NewProtocol": "TCP"},
        )
        root = ET.fromstring(body)
        action = root.find(
            "{http://schemas.xmlsoap.org/soap/envelope/}Body"
            f"/{{{WAN_IP_CONNECTION_SERVICE}}}AddPortMapping"
        )

        assert action is not None
        assert [child.tag for child in action] == [
            "NewRemoteHost",
            "NewExternalPort",
            "NewProtocol",
        ]
        assert action.find("NewExternalPort").text == "6881"

    def test_envelope_escapes_values(self):
        body = build_soap_envelope(
            "AddPortMapping", WAN_IP_CONNECTION_SERVICE, {"NewPortMappingDescription": "a&b<c>"}
        )
        assert "a&amp;b&lt;c&gt;" in body
        assert ET.fromstring(body) is not None

    def test_headers_exact_names(self):
        body = b"<x/>" * 10
        headers = build_soap_headers(
            "http://192.168.1.1:5000/ctl/IPConn",
            WAN_IP_CONNECTION_SERVICE,
            "AddPortMapping",
            body,
        )

        assert list(headers) == ["Host", "Content-Length", "Content-Type", "SOAPAction"]
        assert headers["Host"] == "192.168.1.1:5000"
        assert headers["Content-Length"] == str(len(body))
        assert headers["Content-Type"] == 'text/xml; charset="utf-8"'
        assert (
            headers["SOAPAction"]
            == '"urn:schemas-upnp-org:service:WANIPConnection:1#AddPortMapping"'
        )

    def test_headers_default_port(self):
        headers = build_soap_headers(
            "http://192.168.0.1/upnp/control", WAN_IP_CONNECTION_SERVICE, "X", b""
        )
        assert headers["Host"] == "192.168.0.1:80"

    def test_error_descriptions(self):
        assert parse_error_descriptions(FAULT) == ["ConflictInMappingEntry"]

    def test_response_arguments(self):
        body = (
            '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>'
            f'<u:GetExternalIPAddressResponse xmlns:u="{WAN_IP_CONNECTION_SERVICE}">'
            "<NewExternalIPAddress>198.51.100.4</NewExternalIPAddress>"
            "</u:GetExternalIPAddressResponse></s:Body></s:Envelope>"
        )
        assert parse_response_arguments(body) == {"NewExternalIPAddress": "198.51.100.4"}

    def test_description(self):
        assert (
            build_description("natkeeper", "192.168.1.50", 6881, 16881, "UDP")
            == "natkeeper (192.168.1.50:6881) 16881 UDP"
        )


class TestPortMappingClient:
    """Tests for PortMappingClient against a local gateway."""

    @pytest.mark.asyncio
    async def test_add_and_delete(self, fake_gateway, caplog):
        caplog.set_level(logging.INFO, logger="natkeeper")
        client = PortMappingClient(timeout=5.0)
        async with fake_gateway() as gw:
            endpoint = endpoint_for(gw)
            assert await client.add_mapping(endpoint, mapping_request())
            assert gw.mappings[("TCP", 6881)]["NewInternalClient"] == "192.168.1.50"

            assert await client.delete_mapping(endpoint, "tcp", 6881)
            assert gw.mappings == {}

        add = gw.requests[0]
        assert add["arguments"] == {
            "NewRemoteHost": "",
            "NewExternalPort": "6881",
            "NewProtocol": "TCP",
            "NewInternalPort": "6881",
            "NewInternalClient": "192.168.1.50",
            "NewEnabled": "1",
            "NewPortMappingDescription": "natkeeper (192.168.1.50:6881) 6881 TCP",
            "NewLeaseDuration": "600",
        }
        assert gw.requests[1]["arguments"] == {
            "NewRemoteHost": "",
            "NewExternalPort": "6881",
            "NewProtocol": "TCP",
        }
        assert "is forwarding 6881 to 192.168.1.50:6881, expires in 600 s." in caplog.text

    @pytest.mark.asyncio
    async def test_header_names_keep_their_case(self, fake_gateway):
        client = PortMappingClient(timeout=5.0)
        async with fake_gateway() as gw:
            await client.add_mapping(endpoint_for(gw), mapping_request())

        request = gw.requests[0]
        for name in ("Host", "Content-Length", "Content-Type", "SOAPAction"):
            assert name in request["header_names"]
        assert request["headers"]["Host"] == f"127.0.0.1:{gw.server.port}"
        assert request["soap_action"] == f"{WAN_IP_CONNECTION_SERVICE}#AddPortMapping"

    @pytest.mark.asyncio
    async def test_refused_mapping_logs_error_description(self, fake_gateway, caplog):
        caplog.set_level(logging.WARNING, logger="natkeeper")
        client = PortMappingClient(timeout=5.0)
        async with fake_gateway(refuse_mappings=True) as gw:
            assert not await client.add_mapping(endpoint_for(gw), mapping_request())
            assert gw.mappings == {}

        assert "UPnP warning: Failure for 127.0.0.1: ConflictInMappingEntry" in caplog.text

    @pytest.mark.asyncio
    async def test_delete_unknown_mapping(self, fake_gateway, caplog):
        caplog.set_level(logging.WARNING, logger="natkeeper")
        async with fake_gateway() as gw:
            assert not await PortMappingClient(timeout=5.0).delete_mapping(
                endpoint_for(gw), "UDP", 4000
            )
        assert "NoSuchEntryInArray" in caplog.text

    @pytest.mark.asyncio
    async def test_non_xml_error_body(self, fake_gateway, caplog):
        caplog.set_level(logging.WARNING, logger="natkeeper")
        async with fake_gateway(control_status=503) as gw:
            assert not await PortMappingClient(timeout=5.0).add_mapping(
                endpoint_for(gw), mapping_request()
            )
        assert "AddPortMapping on 127.0.0.1 failed with HTTP 503" in caplog.text

    @pytest.mark.asyncio
    async def test_external_ip(self, fake_gateway):
        async with fake_gateway(external_ip="198.51.100.9") as gw:
            address = await PortMappingClient(timeout=5.0).get_external_ip(endpoint_for(gw))
        assert address == "198.51.100.9"

    @pytest.mark.asyncio
    async def test_unreachable_gateway(self, closed_port):
        endpoint = ControlEndpoint(
            control_url=f"http://127.0.0.1:{closed_port}/ctl/IPConn",
            host="127.0.0.1",
            port=closed_port,
            service_type=WAN_IP_CONNECTION_SERVICE,
        )
        with pytest.raises(UPnPError, match="AddPortMapping"):
            await PortMappingClient(timeout=5.0).add_mapping(endpoint, mapping_request())
