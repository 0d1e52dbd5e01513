"""
IGD protocol state machine.

IGDClient drives one gateway session through SSDP discovery, the description
fetch and the SOAP port-mapping actions. It never touches sockets: it asks a
transport adapter to open, send and close, and the adapter feeds everything
that happens back through handle_event(). Host operations (scan, add, remove,
query) return at once with an integer sentinel; callers poll to see progress.

Usage:
    from igd_client import IGDClient
    from igd_transport import AsyncioTransport

    client = IGDClient(AsyncioTransport(logger), logger, config)
    client.scan_for_gateway()          # 0 until the gateway is ready
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Hashable, Optional

import igd_messages as messages
from igd_location import parse_location
from igd_scanner import (
    find_control_url,
    find_external_address,
    find_location,
    parse_status_code,
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
    IGDSession,
    ip_to_int,
)

# -----------------------------------------------------------------------------
# Transport events
# -----------------------------------------------------------------------------

EVENT_DATAGRAM_SENT = "datagram_sent"
EVENT_DATAGRAM_RECEIVED = "datagram_received"
EVENT_RESOLVED = "resolved"
EVENT_CONNECTED = "connected"
EVENT_SENT = "sent"
EVENT_RECEIVED = "received"
EVENT_DISCONNECTED = "disconnected"
EVENT_ERROR = "error"

DEFAULT_RETRANSMITS = 4
DEFAULT_SEGMENT_SIZE = 1400

# Returned by operations that cannot run in the current state
REJECTED = -1


def _valid_port(port: Any) -> bool:
    return isinstance(port, int) and not isinstance(port, bool) and 0 <= port <= 65535


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class IGDClient:
    """
    Owns the single IGDSession and the protocol state.

    The transport must provide bind(), open_multicast_listener(),
    send_datagram(), connect(), send(), resolve() and close(); see
    igd_transport.AsyncioTransport.
    """

    def __init__(self, transport: Any, logger: logging.Logger, config: Optional[dict] = None) -> None:
        self.transport = transport
        self.logger = logger
        self.config = config or {}
        self.state = IDLE
        self.session: Optional[IGDSession] = None
        self.max_retransmits = int(self.config.get("ssdp_retransmits", DEFAULT_RETRANSMITS))
        self.segment_size = max(1, int(self.config.get("send_segment_size", DEFAULT_SEGMENT_SIZE)))
        self.user_agent = self.config.get("user_agent") or messages.DEFAULT_USER_AGENT
        self._handlers = {
            EVENT_DATAGRAM_SENT: self._on_datagram_sent,
            EVENT_DATAGRAM_RECEIVED: self._on_datagram_received,
            EVENT_RESOLVED: self._on_resolved,
            EVENT_CONNECTED: self._on_connected,
            EVENT_SENT: self._on_sent,
            EVENT_RECEIVED: self._on_received,
            EVENT_DISCONNECTED: self._on_disconnected,
            EVENT_ERROR: self._on_error,
        }
        transport.bind(self.handle_event)

    # -------------------------------------------------------------------------
    # Host operations
    # -------------------------------------------------------------------------

    def begin_session(self) -> None:
        """Forget the gateway and return to idle."""
        self._close_connection()
        self.session = None
        self.state = IDLE
        self.logger.info("UPnP session reset")

    def scan_for_gateway(self) -> int:
        """
        Return the gateway address (as an integer) when ready; otherwise start
        a fresh discovery and return 0.
        """
        if self.state == READY and self.session is not None:
            return ip_to_int(self.session.remote_ip)

        self._close_connection()
        self.session = IGDSession()
        self.state = IDLE

        handle = self.transport.open_multicast_listener()
        self.session.connection = handle
        self.state = DISCOVERING
        self.logger.info("Searching for Internet Gateway Device on %s:%d",
                         messages.SSDP_MCAST_GRP, messages.SSDP_MCAST_PORT)
        self.transport.send_datagram(handle, messages.ssdp_search())
        return 0

    def add_port_mapping(self, local_ip: Any, local_port: int, remote_port: int) -> int:
        """Ask the gateway to forward TCP remote_port to local_ip:local_port."""
        reason = self._rejection()
        if reason is None:
            if not (_valid_port(local_port) and _valid_port(remote_port)):
                reason = f"invalid ports {local_port!r} -> {remote_port!r}"
            else:
                try:
                    address = ipaddress.IPv4Address(local_ip)
                except (ValueError, TypeError):
                    reason = f"invalid local address {local_ip!r}"
        if reason is not None:
            self.logger.warning("AddPortMapping rejected: %s", reason)
            return REJECTED

        s = self.session
        s.local_ip = address
        s.local_port = local_port
        s.remote_port = remote_port
        self.state = ADDING_PORT
        self.logger.info("Adding port mapping %d -> %s:%d", remote_port, address, local_port)
        self._start_request(messages.add_port_mapping_request(
            s.control_url, s.host, s.control_port,
            remote_port, local_port, address, self.user_agent,
        ))
        return 0

    def remove_port_mapping(self, remote_port: int) -> int:
        """Ask the gateway to drop the TCP mapping for remote_port."""
        reason = self._rejection()
        if reason is None and not _valid_port(remote_port):
            reason = f"invalid port {remote_port!r}"
        if reason is not None:
            self.logger.warning("DeletePortMapping rejected: %s", reason)
            return REJECTED

        s = self.session
        s.remote_port = remote_port
        self.state = REMOVING_PORT
        self.logger.info("Removing port mapping %d", remote_port)
        self._start_request(messages.delete_port_mapping_request(
            s.control_url, s.host, s.control_port, remote_port, self.user_agent,
        ))
        return 0

    def query_external_address(self) -> int:
        """
        Start a GetExternalIPAddress query (returns 0), or collect its result.

        While the query is outstanding this returns 0; once the address is
        known it is returned as an integer and the client goes back to ready.
        """
        s = self.session
        if s is None or s.remote_ip is None:
            self.logger.warning("GetExternalIPAddress rejected: no gateway known")
            return REJECTED

        if self.state == QUERYING_EXTERNAL_ADDRESS:
            external = ip_to_int(s.external_address)
            if external:
                # Reply may still be draining; the result is all we need
                self._close_connection()
                self.state = READY
            return external

        if self.state == READY:
            if s.control_url is None:
                self.logger.warning("GetExternalIPAddress rejected: control URL unknown")
                return REJECTED
            s.external_address = None
            self.state = QUERYING_EXTERNAL_ADDRESS
            self.logger.info("Querying external address")
            self._start_request(messages.get_external_ip_request(
                s.control_url, s.host, s.control_port, self.user_agent,
            ))
            return 0

        self.logger.warning("GetExternalIPAddress rejected: state %s", self.state)
        return REJECTED

    def status(self) -> dict[str, Any]:
        """Current state and session details."""
        return {
            "state": self.state,
            "session": self.session.as_dict() if self.session else None,
        }

    # -------------------------------------------------------------------------
    # Event entry point
    # -------------------------------------------------------------------------

    def handle_event(self, event: str, payload: Any = None, handle: Optional[Hashable] = None) -> None:
        """
        Advance the state machine for one transport event.

        Events for any handle other than the session's current connection
        come from a connection that was already torn down and are dropped.
        """
        s = self.session
        if s is None or handle is None or handle != s.connection:
            self.logger.debug("Ignoring stale %s event in state %s", event, self.state)
            return
        handler = self._handlers.get(event)
        if handler is None:
            self.logger.warning("Unknown transport event: %s", event)
            return
        handler(s, handle, payload)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def _on_datagram_sent(self, s: IGDSession, handle: Hashable, payload: Any) -> None:
        if self.state != DISCOVERING or s.retransmits >= self.max_retransmits:
            return
        s.retransmits += 1
        self.logger.debug("SSDP retransmit %d/%d", s.retransmits, self.max_retransmits)
        self.transport.send_datagram(handle, messages.ssdp_search())

    def _on_datagram_received(self, s: IGDSession, handle: Hashable, payload: bytes) -> None:
        if self.state != DISCOVERING:
            self.logger.debug("SSDP reply ignored in state %s", self.state)
            return
        location = find_location(payload or b"")
        if location is None:
            self.logger.debug("SSDP reply without LOCATION (%d bytes)", len(payload or b""))
            return

        self.transport.close(handle)
        s.connection = None

        s.location = location
        s.host, s.control_port, s.path = parse_location(location)
        self.state = GATEWAY_FOUND
        self.logger.info("Gateway found at %s (host %s, port %d, path %r)",
                         location, s.host, s.control_port, s.path)
        if not s.path:
            self.logger.warning("LOCATION %s has no path, requesting /", location)
        self._start_request(messages.description_request(
            s.path, s.host, s.control_port, self.user_agent,
        ))

    # -------------------------------------------------------------------------
    # TCP exchanges
    # -------------------------------------------------------------------------

    def _start_request(self, data: bytes) -> None:
        """Queue data and open the connection to the gateway's control endpoint."""
        s = self.session
        s.set_pending(data)
        s.clear_received()
        try:
            address = ipaddress.IPv4Address(s.host)
        except ValueError:
            self.logger.debug("Resolving gateway host %s", s.host)
            s.connection = self.transport.resolve(s.host)
            return
        s.remote_ip = address
        self.logger.debug("Connecting to %s:%d (%d bytes queued)", address, s.control_port, len(data))
        s.connection = self.transport.connect(str(address), s.control_port)

    def _on_resolved(self, s: IGDSession, handle: Hashable, payload: Optional[str]) -> None:
        if not payload:
            self.logger.error("DNS lookup for %s returned no address", s.host)
            s.connection = None
            s.clear_pending()
            return
        s.remote_ip = ipaddress.IPv4Address(payload)
        self.logger.debug("Resolved %s to %s", s.host, payload)
        s.connection = self.transport.connect(payload, s.control_port)

    def _on_connected(self, s: IGDSession, handle: Hashable, payload: Any) -> None:
        if self.state == GATEWAY_FOUND:
            self.state = FETCHING_DESCRIPTION
        self._send_next(s, handle)

    def _on_sent(self, s: IGDSession, handle: Hashable, payload: Any) -> None:
        if s.has_pending():
            self._send_next(s, handle)
        else:
            s.clear_pending()

    def _send_next(self, s: IGDSession, handle: Hashable) -> None:
        segment = s.next_segment(self.segment_size)
        if not segment:
            return
        self.logger.debug("Sending %d bytes (%d/%d)", len(segment), s.sent_offset, s.total_length)
        self.transport.send(handle, segment)

    def _on_received(self, s: IGDSession, handle: Hashable, payload: bytes) -> None:
        buffer = s.append_received(payload or b"")
        if self.state in (GATEWAY_FOUND, FETCHING_DESCRIPTION):
            if s.control_url is None:
                url = find_control_url(buffer)
                if url is not None:
                    s.control_url = url
                    self.logger.info("WAN connection control URL: %s", url)
        elif self.state == QUERYING_EXTERNAL_ADDRESS:
            if s.external_address is None:
                address = find_external_address(buffer)
                if address is not None:
                    s.external_address = address
                    self.logger.info("External address: %s", address)
        else:
            self.logger.debug("Received %d bytes in state %s", len(payload or b""), self.state)

    def _on_disconnected(self, s: IGDSession, handle: Hashable, payload: Any) -> None:
        s.connection = None
        s.clear_pending()
        response = s.received
        s.clear_received()

        if self.state in (GATEWAY_FOUND, FETCHING_DESCRIPTION):
            if s.control_url is None:
                self.logger.warning("No %s service in description from %s",
                                    messages.WAN_SERVICE_ID, s.location)
            else:
                self.logger.info("Gateway %s ready", s.remote_ip)
            self.state = READY
        elif self.state == ADDING_PORT:
            self._log_action_result("AddPortMapping", response)
            self.state = READY
        elif self.state == REMOVING_PORT:
            self._log_action_result("DeletePortMapping", response)
            self.state = READY
        elif self.state == QUERYING_EXTERNAL_ADDRESS:
            if s.external_address is None:
                self.logger.warning("No external address in gateway reply")
                self.state = READY
            # Otherwise stay until the caller collects the address
        else:
            self.logger.debug("Disconnected in state %s", self.state)

    def _on_error(self, s: IGDSession, handle: Hashable, payload: Any) -> None:
        self.logger.error("Gateway connection failed in state %s: %s", self.state, payload)
        s.connection = None
        s.clear_pending()
        s.clear_received()

    def _log_action_result(self, action: str, response: bytes) -> None:
        code = parse_status_code(response)
        if code is None:
            self.logger.warning("%s: no HTTP response from gateway", action)
        elif 200 <= code < 300:
            self.logger.info("%s completed (HTTP %d)", action, code)
        else:
            self.logger.warning("%s: gateway answered HTTP %d", action, code)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _rejection(self) -> Optional[str]:
        """Why an add/remove request cannot run now, or None if it can."""
        s = self.session
        if s is None:
            return "no gateway session"
        if s.remote_ip is None:
            return "gateway address unknown"
        if self.state != READY:
            return f"state {self.state}"
        if s.control_url is None:
            return "control URL unknown"
        return None

    def _close_connection(self) -> None:
        s = self.session
        if s is None:
            return
        if s.connection is not None:
            self.transport.close(s.connection)
            s.connection = None
        s.clear_pending()
        s.clear_received()
