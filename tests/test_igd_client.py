import ipaddress

import igd_messages as messages
from conftest import (
    ACTION_RESPONSE,
    DESCRIPTION_RESPONSE,
    EXTERNAL_IP_RESPONSE,
    SSDP_REPLY,
    drive_to_ready,
)
from igd_client import (
    EVENT_CONNECTED,
    EVENT_DATAGRAM_RECEIVED,
    EVENT_DATAGRAM_SENT,
    EVENT_DISCONNECTED,
    EVENT_ERROR,
    EVENT_RECEIVED,
    EVENT_RESOLVED,
    EVENT_SENT,
    REJECTED,
    IGDClient,
)
from igd_session import (
    ADDING_PORT,
    DISCOVERING,
    FETCHING_DESCRIPTION,
    GATEWAY_FOUND,
    IDLE,
    QUERYING_EXTERNAL_ADDRESS,
    READY,
    REMOVING_PORT,
)

GATEWAY = ipaddress.IPv4Address("192.168.1.1")
EXTERNAL = ipaddress.IPv4Address("213.49.166.224")


def run_exchange(client, response):
    """Connect, deliver response and disconnect on the current connection."""
    tcp = client.session.connection
    client.handle_event(EVENT_CONNECTED, None, tcp)
    client.handle_event(EVENT_RECEIVED, response, tcp)
    client.handle_event(EVENT_DISCONNECTED, None, tcp)
    return tcp


# -- discovery ----------------------------------------------------------------

def test_scan_starts_discovery(client, transport):
    assert client.state == IDLE
    assert client.scan_for_gateway() == 0
    assert client.state == DISCOVERING
    (open_call,) = transport.named("open_multicast")
    (datagram,) = transport.named("send_datagram")
    assert datagram[1] == open_call[1]
    assert datagram[2] == messages.ssdp_search()


def test_search_is_retransmitted_four_times(client, transport):
    client.scan_for_gateway()
    udp = client.session.connection
    for _ in range(10):
        client.handle_event(EVENT_DATAGRAM_SENT, None, udp)
    assert len(transport.named("send_datagram")) == 5
    assert client.session.retransmits == 4


def test_retransmit_count_is_configurable(transport, logger):
    client = IGDClient(transport, logger, {"ssdp_retransmits": 1})
    client.scan_for_gateway()
    udp = client.session.connection
    for _ in range(3):
        client.handle_event(EVENT_DATAGRAM_SENT, None, udp)
    assert len(transport.named("send_datagram")) == 2


def test_reply_with_location_finds_gateway(client, transport):
    client.scan_for_gateway()
    udp = client.session.connection
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, udp)

    s = client.session
    assert s.host == "192.168.1.1"
    assert s.control_port == 8000
    assert s.path == "/desc.xml"
    assert s.remote_ip == GATEWAY
    assert client.state == GATEWAY_FOUND
    assert ("close", udp) in transport.calls
    (connect,) = transport.named("connect")
    assert connect[1:3] == ("192.168.1.1", 8000)
    assert s.connection == connect[3]

    client.handle_event(EVENT_CONNECTED, None, s.connection)
    assert client.state == FETCHING_DESCRIPTION
    assert transport.sent_bytes(s.connection).startswith(
        b"GET /desc.xml HTTP/1.0\r\nHost: 192.168.1.1:8000\r\n"
    )


def test_reply_without_location_is_ignored(client, transport):
    client.scan_for_gateway()
    udp = client.session.connection
    client.handle_event(EVENT_DATAGRAM_RECEIVED, b"HTTP/1.1 200 OK\r\nST: upnp:rootdevice\r\n\r\n", udp)
    assert client.state == DISCOVERING
    assert transport.named("connect") == []


def test_retransmits_stop_once_gateway_found(client, transport):
    client.scan_for_gateway()
    udp = client.session.connection
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, udp)
    client.handle_event(EVENT_DATAGRAM_SENT, None, udp)
    assert len(transport.named("send_datagram")) == 1


def test_description_yields_control_url(client, transport):
    drive_to_ready(client, transport)
    assert client.session.control_url == "/ctl/IPConn"
    assert client.state == READY


def test_control_url_split_across_deliveries(client, transport):
    client.scan_for_gateway()
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, client.session.connection)
    tcp = client.session.connection
    client.handle_event(EVENT_CONNECTED, None, tcp)
    split = DESCRIPTION_RESPONSE.index(b"ntrolURL>/ctl/IPConn")
    client.handle_event(EVENT_RECEIVED, DESCRIPTION_RESPONSE[:split], tcp)
    assert client.session.control_url is None
    client.handle_event(EVENT_RECEIVED, DESCRIPTION_RESPONSE[split:], tcp)
    assert client.session.control_url == "/ctl/IPConn"


def test_description_without_service_leaves_control_url_unknown(client, transport):
    client.scan_for_gateway()
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, client.session.connection)
    run_exchange(client, DESCRIPTION_RESPONSE.replace(b"WANPPPConn1", b"WANIPConn1"))
    assert client.state == READY
    assert client.session.control_url is None
    assert client.add_port_mapping("192.168.1.50", 80, 9876) == REJECTED
    assert client.query_external_address() == REJECTED


def test_scan_when_ready_returns_gateway_address(ready_client, transport):
    assert ready_client.scan_for_gateway() == int(GATEWAY)
    assert ready_client.scan_for_gateway() == int(GATEWAY)
    assert transport.calls == []


def test_scan_while_busy_restarts_discovery(client, transport):
    client.scan_for_gateway()
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, client.session.connection)
    tcp = client.session.connection
    assert client.scan_for_gateway() == 0
    assert ("close", tcp) in transport.calls
    assert client.state == DISCOVERING
    assert client.session.host == ""


def test_hostname_location_is_resolved(client, transport):
    client.scan_for_gateway()
    reply = SSDP_REPLY.replace(b"192.168.1.1:8000", b"gateway.lan:5000")
    client.handle_event(EVENT_DATAGRAM_RECEIVED, reply, client.session.connection)
    (resolve,) = transport.named("resolve")
    assert resolve[1] == "gateway.lan"
    assert transport.named("connect") == []

    client.handle_event(EVENT_RESOLVED, "192.168.1.1", resolve[2])
    (connect,) = transport.named("connect")
    assert connect[1:3] == ("192.168.1.1", 5000)
    assert client.session.remote_ip == GATEWAY
    run_exchange(client, DESCRIPTION_RESPONSE)
    assert client.state == READY
    assert client.scan_for_gateway() == int(GATEWAY)


def test_failed_lookup_leaves_state(client, transport):
    client.scan_for_gateway()
    reply = SSDP_REPLY.replace(b"192.168.1.1:8000", b"gateway.lan:5000")
    client.handle_event(EVENT_DATAGRAM_RECEIVED, reply, client.session.connection)
    handle = client.session.connection
    client.handle_event(EVENT_RESOLVED, None, handle)
    assert client.state == GATEWAY_FOUND
    assert client.session.connection is None
    assert transport.named("connect") == []


# -- actions ------------------------------------------------------------------

def test_add_port_mapping(ready_client, transport):
    client = ready_client
    assert client.add_port_mapping(ipaddress.IPv4Address("192.168.1.50"), 80, 9876) == 0
    assert client.state == ADDING_PORT
    (connect,) = transport.named("connect")
    assert connect[1:3] == ("192.168.1.1", 8000)

    tcp = connect[3]
    client.handle_event(EVENT_CONNECTED, None, tcp)
    request = transport.sent_bytes(tcp)
    assert request.startswith(b"POST /ctl/IPConn HTTP/1.0\r\n")
    assert b"<NewExternalPort>9876</NewExternalPort>" in request
    assert b"<NewInternalPort>80</NewInternalPort>" in request
    assert b"<NewInternalClient>192.168.1.50</NewInternalClient>" in request

    client.handle_event(EVENT_RECEIVED, ACTION_RESPONSE, tcp)
    client.handle_event(EVENT_DISCONNECTED, None, tcp)
    assert client.state == READY
    assert client.session.local_port == 80
    assert client.session.remote_port == 9876


def test_remove_port_mapping(ready_client, transport):
    client = ready_client
    assert client.remove_port_mapping(9876) == 0
    assert client.state == REMOVING_PORT
    tcp = client.session.connection
    client.handle_event(EVENT_CONNECTED, None, tcp)
    request = transport.sent_bytes(tcp)
    assert b'#DeletePortMapping"' in request
    assert b"<NewExternalPort>9876</NewExternalPort>" in request
    client.handle_event(EVENT_DISCONNECTED, None, tcp)
    assert client.state == READY


def test_action_failure_status_still_returns_to_ready(ready_client):
    ready_client.add_port_mapping("192.168.1.50", 80, 9876)
    run_exchange(ready_client, b"HTTP/1.0 500 Internal Server Error\r\n\r\n<s:Fault/>")
    assert ready_client.state == READY


def test_operations_rejected_before_discovery(client, transport):
    assert client.add_port_mapping("192.168.1.50", 80, 9876) == REJECTED
    assert client.remove_port_mapping(9876) == REJECTED
    assert client.query_external_address() == REJECTED
    assert transport.calls == []


def test_operations_rejected_while_busy(ready_client, transport):
    ready_client.add_port_mapping("192.168.1.50", 80, 9876)
    transport.calls.clear()
    assert ready_client.add_port_mapping("192.168.1.50", 81, 9877) == REJECTED
    assert ready_client.remove_port_mapping(9876) == REJECTED
    assert ready_client.query_external_address() == REJECTED
    assert ready_client.state == ADDING_PORT
    assert transport.calls == []


def test_invalid_arguments_rejected(ready_client, transport):
    assert ready_client.add_port_mapping("not-an-ip", 80, 9876) == REJECTED
    assert ready_client.add_port_mapping("192.168.1.50", 70000, 9876) == REJECTED
    assert ready_client.remove_port_mapping(-1) == REJECTED
    assert ready_client.state == READY
    assert transport.calls == []


def test_requests_are_split_into_segments(transport, logger):
    client = IGDClient(transport, logger, {"send_segment_size": 100})
    drive_to_ready(client, transport)
    transport.calls.clear()

    client.add_port_mapping("192.168.1.50", 80, 9876)
    tcp = client.session.connection
    client.handle_event(EVENT_CONNECTED, None, tcp)
    for _ in range(50):
        before = len(transport.named("send"))
        client.handle_event(EVENT_SENT, None, tcp)
        if len(transport.named("send")) == before:
            break

    expected = messages.add_port_mapping_request(
        "/ctl/IPConn", "192.168.1.1", 8000, 9876, 80, ipaddress.IPv4Address("192.168.1.50"),
    )
    sends = [c[2] for c in transport.named("send")]
    assert all(len(part) <= 100 for part in sends)
    assert len(sends) == -(-len(expected) // 100)
    assert b"".join(sends) == expected
    assert not client.session.has_pending()


def test_default_segment_size(ready_client, transport):
    ready_client.add_port_mapping("192.168.1.50", 80, 9876)
    tcp = ready_client.session.connection
    ready_client.handle_event(EVENT_CONNECTED, None, tcp)
    (first,) = transport.named("send")
    # Fits in one segment
    assert len(first[2]) < 1400
    assert not ready_client.session.has_pending()
    ready_client.handle_event(EVENT_SENT, None, tcp)
    assert len(transport.named("send")) == 1


# -- external address ---------------------------------------------------------

def test_query_external_address(ready_client, transport):
    client = ready_client
    assert client.query_external_address() == 0
    assert client.state == QUERYING_EXTERNAL_ADDRESS
    tcp = client.session.connection
    client.handle_event(EVENT_CONNECTED, None, tcp)
    assert b'#GetExternalIPAddress"' in transport.sent_bytes(tcp)
    assert client.query_external_address() == 0

    client.handle_event(EVENT_RECEIVED, EXTERNAL_IP_RESPONSE, tcp)
    assert client.query_external_address() == int(EXTERNAL)
    assert client.state == READY
    # Collected before the gateway closed; the connection is torn down
    assert ("close", tcp) in transport.calls
    assert client.session.connection is None


def test_query_result_kept_after_disconnect(ready_client, transport):
    client = ready_client
    client.query_external_address()
    run_exchange(client, EXTERNAL_IP_RESPONSE)
    assert client.state == QUERYING_EXTERNAL_ADDRESS
    assert client.query_external_address() == int(EXTERNAL)
    assert client.state == READY
    assert transport.named("close") == []


def test_query_without_address_returns_to_ready(ready_client):
    ready_client.query_external_address()
    run_exchange(ready_client, b"HTTP/1.0 500 Internal Server Error\r\n\r\n")
    assert ready_client.state == READY
    assert ready_client.session.external_address is None


def test_new_query_forgets_previous_address(ready_client):
    ready_client.query_external_address()
    run_exchange(ready_client, EXTERNAL_IP_RESPONSE)
    assert ready_client.query_external_address() == int(EXTERNAL)
    assert ready_client.query_external_address() == 0
    assert ready_client.session.external_address is None
    assert ready_client.state == QUERYING_EXTERNAL_ADDRESS


# -- event handling -----------------------------------------------------------

def test_stale_events_are_ignored(ready_client, transport):
    client = ready_client
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, 1)
    client.handle_event(EVENT_RECEIVED, EXTERNAL_IP_RESPONSE, 2)
    client.handle_event(EVENT_DISCONNECTED, None, None)
    assert client.state == READY
    assert client.session.external_address is None
    assert transport.calls == []


def test_events_for_replaced_connection_are_ignored(ready_client, transport):
    client = ready_client
    client.query_external_address()
    old = client.session.connection
    client.begin_session()
    client.scan_for_gateway()
    client.handle_event(EVENT_RECEIVED, EXTERNAL_IP_RESPONSE, old)
    client.handle_event(EVENT_DISCONNECTED, None, old)
    assert client.state == DISCOVERING


def test_error_keeps_state_until_next_scan(client, transport):
    client.scan_for_gateway()
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, client.session.connection)
    tcp = client.session.connection
    client.handle_event(EVENT_CONNECTED, None, tcp)
    client.handle_event(EVENT_ERROR, ConnectionResetError("reset"), tcp)
    assert client.state == FETCHING_DESCRIPTION
    assert client.session.connection is None

    assert client.scan_for_gateway() == 0
    assert client.state == DISCOVERING
    assert len(transport.named("open_multicast")) == 2


def test_begin_session_resets(client, transport):
    client.scan_for_gateway()
    client.handle_event(EVENT_DATAGRAM_RECEIVED, SSDP_REPLY, client.session.connection)
    tcp = client.session.connection
    client.begin_session()
    assert client.state == IDLE
    assert client.session is None
    assert ("close", tcp) in transport.calls
    assert client.status() == {"state": IDLE, "session": None}


def test_status_reports_session(ready_client):
    status = ready_client.status()
    assert status["state"] == READY
    assert status["session"]["control_url"] == "/ctl/IPConn"
    assert status["session"]["remote_ip"] == "192.168.1.1"


def test_query_with_wan_down_returns_to_ready(ready_client):
    ready_client.query_external_address()
    run_exchange(ready_client, EXTERNAL_IP_RESPONSE.replace(b"213.49.166.224", b"0.0.0.0"))
    assert ready_client.state == READY
    assert ready_client.session.external_address is None
    assert ready_client.add_port_mapping("192.168.1.50", 80, 9876) == 0
