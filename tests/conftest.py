import logging

import pytest

from igd_client import (
    EVENT_CONNECTED,
    EVENT_DATAGRAM_RECEIVED,
    EVENT_DISCONNECTED,
    EVENT_RECEIVED,
    IGDClient,
)

SSDP_REPLY = (
    b"HTTP/1.1 200 OK\r\n"
    b"CACHE-CONTROL: max-age=120\r\n"
    b"ST: urn:schemas-upnp-org:device:InternetGatewayDevice:1\r\n"
    b"USN: uuid:75802409-bccb-40e7-8e6c-fa095ecce13e::urn:schemas-upnp-org:device:InternetGatewayDevice:1\r\n"
    b"EXT:\r\n"
    b"SERVER: Linux/2.6 UPnP/1.0 MediaAccess/1.0\r\n"
    b"LOCATION: http://192.168.1.1:8000/desc.xml\r\n"
    b"\r\n"
)

DESCRIPTION_RESPONSE = (
    b"HTTP/1.0 200 OK\r\n"
    b"Content-Type: text/xml\r\n"
    b"Connection: close\r\n\r\n"
    b'<?xml version="1.0"?>\r\n'
    b'<root xmlns="urn:schemas-upnp-org:device-1-0">'
    b"<device><deviceType>urn:schemas-upnp-org:device:InternetGatewayDevice:1</deviceType>"
    b"<serviceList><service>"
    b"<serviceType>urn:schemas-upnp-org:service:Layer3Forwarding:1</serviceType>"
    b"<serviceId>urn:upnp-org:serviceId:L3Forwarding1</serviceId>"
    b"<controlURL>/ctl/L3F</controlURL>"
    b"</service></serviceList>"
    b"<deviceList><device><deviceType>urn:schemas-upnp-org:device:WANDevice:1</deviceType>"
    b"<deviceList><device><deviceType>urn:schemas-upnp-org:device:WANConnectionDevice:1</deviceType>"
    b"<serviceList><service>"
    b"<serviceType>urn:schemas-upnp-org:service:WANPPPConnection:1</serviceType>"
    b"<serviceId>urn:upnp-org:serviceId:WANPPPConn1</serviceId>"
    b"<controlURL>/ctl/IPConn</controlURL>"
    b"<eventSubURL>/evt/IPConn</eventSubURL>"
    b"</service></serviceList>"
    b"</device></deviceList></device></deviceList></device></root>\r\n"
)

EXTERNAL_IP_RESPONSE = (
    b"HTTP/1.0 200 OK\r\n"
    b'Content-Type: text/xml; charset="utf-8"\r\n\r\n'
    b'<?xml version="1.0"?>\r\n'
    b'<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
    b's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">\r\n'
    b"<s:Body>\r\n"
    b'<m:GetExternalIPAddressResponse xmlns:m="urn:schemas-upnp-org:service:WANPPPConnection:1">\r\n'
    b"<NewExternalIPAddress>213.49.166.224</NewExternalIPAddress>\r\n"
    b"</m:GetExternalIPAddressResponse>\r\n"
    b"</s:Body>\r\n"
    b"</s:Envelope>\r\n"
)

ACTION_RESPONSE = (
    b"HTTP/1.0 200 OK\r\n"
    b"Connection: close\r\n"
    b'Content-Type: text/xml; charset="utf-8"\r\n\r\n'
    b'<?xml version="1.0"?>\r\n<s:Envelope><s:Body></s:Body></s:Envelope>\r\n'
)


class FakeTransport:
    """Records every call IGDClient makes; events are fed back by the test."""

    def __init__(self) -> None:
        self.on_event = None
        self.calls: list[tuple] = []
        self._next = 0

    def _handle(self) -> int:
        self._next += 1
        return self._next

    def bind(self, on_event) -> None:
        self.on_event = on_event

    def open_multicast_listener(self) -> int:
        handle = self._handle()
        self.calls.append(("open_multicast", handle))
        return handle

    def send_datagram(self, handle, data) -> None:
        self.calls.append(("send_datagram", handle, data))

    def connect(self, host, port) -> int:
        handle = self._handle()
        self.calls.append(("connect", host, port, handle))
        return handle

    def send(self, handle, data) -> None:
        self.calls.append(("send", handle, data))

    def resolve(self, hostname) -> int:
        handle = self._handle()
        self.calls.append(("resolve", hostname, handle))
        return handle

    def close(self, handle) -> None:
        self.calls.append(("close", handle))

    def named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def sent_bytes(self, handle) -> bytes:
        return b"".join(c[2] for c in self.calls if c[0] == "send" and c[1] == handle)


@pytest.fixture
def logger():
    return logging.getLogger("igd-test")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def client(transport, logger):
    return IGDClient(transport, logger)


def drive_to_ready(client: IGDClient, transport: FakeTransport) -> int:
    """Run discovery and the description fetch; returns the description handle."""
    client.scan_for_gateway()
    udp = client.session.connection
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, udp)
    tcp = client.session.connection
    client.handle_event(EVENT_CONNECTED, None, tcp)
    client.handle_event(EVENT_RECEIVED, DESCRIPTION_RESPONSE, tcp)
    client.handle_event(EVENT_DISCONNECTED, None, tcp)
    return tcp


@pytest.fixture
def ready_client(client, transport):
    drive_to_ready(client, transport)
    transport.calls.clear()
    return client
