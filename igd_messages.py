"""
Outbound IGD protocol messages.

Renders the SSDP M-SEARCH query, the description-document GET and the three
SOAP requests (AddPortMapping, DeletePortMapping, GetExternalIPAddress) sent
to the WANPPPConnection control URL. All functions are pure and return bytes
ready for the transport.

HTTP/1.0 is used everywhere so gateways answer without chunked transfer
encoding and close the connection when done.

Headers are strict HTTP even where common IGD clients are sloppy: the
M-SEARCH ends with a blank line, Host is always host:port and there is no
space before the colon in Content-Length.
"""

from __future__ import annotations

import ipaddress

SSDP_MCAST_GRP = "239.255.255.250"
SSDP_MCAST_PORT = 1900

IGD_DEVICE_TYPE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"
WAN_SERVICE_TYPE = "urn:schemas-upnp-org:service:WANPPPConnection:1"
WAN_SERVICE_ID = "urn:upnp-org:serviceId:WANPPPConn1"

SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING = "http://schemas.xmlsoap.org/soap/encoding/"

DEFAULT_USER_AGENT = "igd-punch"
MAPPING_DESCRIPTION = "libminiupnpc"


# -----------------------------------------------------------------------------
# Discovery
# -----------------------------------------------------------------------------

def ssdp_search() -> bytes:
    """M-SEARCH for an Internet Gateway Device on the SSDP multicast group."""
    return "\r\n".join([
        "M-SEARCH * HTTP/1.1",
        f"HOST: {SSDP_MCAST_GRP}:{SSDP_MCAST_PORT}",
        f"ST: {IGD_DEVICE_TYPE}",
        'MAN: "ssdp:discover"',
        "MX: 2",
        "", "",
    ]).encode("utf-8")


def description_request(
    path: str, host: str, port: int, user_agent: str = DEFAULT_USER_AGENT
) -> bytes:
    """GET for the gateway's device description document."""
    return (
        f"GET {path or '/'} HTTP/1.0\r\n"
        f"Host: {host}:{port}\r\n"
        "Connection: close\r\n"
        f"User-Agent: {user_agent}\r\n\r\n"
    ).encode("utf-8")


# -----------------------------------------------------------------------------
# SOAP bodies
# -----------------------------------------------------------------------------

def add_port_mapping_xml(
    remote_port: int, local_port: int, local_ip: ipaddress.IPv4Address
) -> bytes:
    """AddPortMapping envelope forwarding TCP remote_port to local_ip:local_port."""
    return (
        '<?xml version="1.0"?>\r\n'
        f'<s:Envelope xmlns:s="{SOAP_ENV}" s:encodingStyle="{SOAP_ENCODING}">\r\n'
        "<s:Body>\r\n"
        f'<u:AddPortMapping xmlns:u="{WAN_SERVICE_TYPE}">\r\n'
        "<NewRemoteHost></NewRemoteHost>\r\n"
        f"<NewExternalPort>{remote_port}</NewExternalPort>\r\n"
        "<NewProtocol>TCP</NewProtocol>\r\n"
        f"<NewInternalPort>{local_port}</NewInternalPort>\r\n"
        f"<NewInternalClient>{local_ip}</NewInternalClient>\r\n"
        "<NewEnabled>1</NewEnabled>\r\n"
        f"<NewPortMappingDescription>{MAPPING_DESCRIPTION}</NewPortMappingDescription>\r\n"
        "<NewLeaseDuration>0</NewLeaseDuration>\r\n"
        "</u:AddPortMapping>\r\n"
        "</s:Body>\r\n"
        "</s:Envelope>\r\n"
    ).encode("utf-8")


def delete_port_mapping_xml(remote_port: int) -> bytes:
    """DeletePortMapping envelope for TCP remote_port."""
    return (
        '<?xml version="1.0"?>\r\n'
        f'<s:Envelope xmlns:s="{SOAP_ENV}"\r\n'
        f'    s:encodingStyle="{SOAP_ENCODING}">\r\n'
        "  <s:Body>\r\n"
        f'    <u:DeletePortMapping xmlns:u="{WAN_SERVICE_TYPE}">\r\n'
        "    <NewRemoteHost>\r\n"
        "    </NewRemoteHost>\r\n"
        f"    <NewExternalPort>{remote_port}</NewExternalPort>\r\n"
        "    <NewProtocol>TCP</NewProtocol>\r\n"
        "  </u:DeletePortMapping>\r\n"
        "  </s:Body>\r\n"
        "</s:Envelope>\r\n"
    ).encode("utf-8")


def get_external_ip_xml() -> bytes:
    """GetExternalIPAddress envelope (no arguments)."""
    return (
        '<?xml version="1.0"?>\r\n'
        f'<s:Envelope xmlns:s="{SOAP_ENV}" s:encodingStyle="{SOAP_ENCODING}">\r\n'
        "<s:Body>\r\n"
        f'<u:GetExternalIPAddress xmlns:u="{WAN_SERVICE_TYPE}">\r\n'
        "</u:GetExternalIPAddress>\r\n"
        "</s:Body>\r\n"
        "</s:Envelope>\r\n"
    ).encode("utf-8")


# -----------------------------------------------------------------------------
# SOAP requests
# -----------------------------------------------------------------------------

def soap_request(
    action: str,
    control_url: str,
    host: str,
    port: int,
    body: bytes,
    user_agent: str = DEFAULT_USER_AGENT,
) -> bytes:
    """
    Wrap a rendered SOAP body in an HTTP POST to the control URL.

    Content-Length is the byte length of body, so the header and the payload
    can never disagree.
    """
    headers = (
        f"POST {control_url} HTTP/1.0\r\n"
        f"Host: {host}:{port}\r\n"
        f"User-Agent: {user_agent}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Content-Type: text/xml\r\n"
        f'SOAPAction: "{WAN_SERVICE_TYPE}#{action}"\r\n'
        "Connection: Close\r\n"
        "Cache-Control: no-cache\r\n"
        "Pragma: no-cache\r\n\r\n"
    ).encode("utf-8")
    return headers + body


def add_port_mapping_request(
    control_url: str,
    host: str,
    port: int,
    remote_port: int,
    local_port: int,
    local_ip: ipaddress.IPv4Address,
    user_agent: str = DEFAULT_USER_AGENT,
) -> bytes:
    body = add_port_mapping_xml(remote_port, local_port, local_ip)
    return soap_request("AddPortMapping", control_url, host, port, body, user_agent)


def delete_port_mapping_request(
    control_url: str,
    host: str,
    port: int,
    remote_port: int,
    user_agent: str = DEFAULT_USER_AGENT,
) -> bytes:
    body = delete_port_mapping_xml(remote_port)
    return soap_request("DeletePortMapping", control_url, host, port, body, user_agent)


def get_external_ip_request(
    control_url: str, host: str, port: int, user_agent: str = DEFAULT_USER_AGENT
) -> bytes:
    body = get_external_ip_xml()
    return soap_request("GetExternalIPAddress", control_url, host, port, body, user_agent)
