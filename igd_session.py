"""
Gateway session record and protocol state names.

IGDSession is the single mutable record behind an IGDClient: what is known
about the gateway, the operation in flight, and the bytes still to be written
to or already read from the open connection.
"""

from __future__ import annotations

import ipaddress
from typing import Any, Hashable, Optional

from igd_location import DEFAULT_CONTROL_PORT

# -----------------------------------------------------------------------------
# States
# -----------------------------------------------------------------------------

IDLE = "idle"
DISCOVERING = "discovering"
GATEWAY_FOUND = "gatewayFound"
FETCHING_DESCRIPTION = "fetchingDescription"
READY = "ready"
ADDING_PORT = "addingPort"
REMOVING_PORT = "removingPort"
QUERYING_EXTERNAL_ADDRESS = "queryingExternalAddress"


def ip_to_int(address: Optional[ipaddress.IPv4Address]) -> int:
    """Integer form of an IPv4 address (0 when unknown)."""
    return int(address) if address is not None else 0


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------


class IGDSession:
    """
    Everything known about the current gateway and the exchange in flight.
    Recreated from scratch for every discovery cycle.
    """

    def __init__(self) -> None:
        self.host: str = ""
        self.path: str = ""
        self.location: str = ""
        self.control_url: Optional[str] = None
        self.control_port: int = DEFAULT_CONTROL_PORT
        self.external_address: Optional[ipaddress.IPv4Address] = None

        self.local_port: int = 0
        self.remote_port: int = 0
        self.local_ip: Optional[ipaddress.IPv4Address] = None
        self.remote_ip: Optional[ipaddress.IPv4Address] = None

        self.connection: Optional[Hashable] = None
        self.retransmits: int = 0

        self._pending = b""
        self.sent_offset = 0
        self._received = b""

    # -- outbound -------------------------------------------------------------

    @property
    def total_length(self) -> int:
        return len(self._pending)

    def has_pending(self) -> bool:
        return self.sent_offset < len(self._pending)

    def set_pending(self, data: bytes) -> None:
        """Queue a full request for the next connection."""
        self._pending = data
        self.sent_offset = 0

    def next_segment(self, cap: int) -> bytes:
        """Take the next unsent slice of at most cap bytes and mark it sent."""
        segment = self._pending[self.sent_offset:self.sent_offset + cap]
        self.sent_offset += len(segment)
        return segment

    def clear_pending(self) -> None:
        self._pending = b""
        self.sent_offset = 0

    # -- inbound --------------------------------------------------------------

    @property
    def received(self) -> bytes:
        return self._received

    def append_received(self, data: bytes) -> bytes:
        """Accumulate bytes from the open connection; returns the whole buffer."""
        self._received += data
        return self._received

    def clear_received(self) -> None:
        self._received = b""

    # -- presentation ---------------------------------------------------------

    def as_dict(self) -> dict[str, Any]:
        """JSON-friendly view for status reporting."""
        return {
            "host": self.host,
            "path": self.path,
            "location": self.location,
            "control_url": self.control_url,
            "control_port": self.control_port,
            "external_address": str(self.external_address) if self.external_address else None,
            "local_ip": str(self.local_ip) if self.local_ip else None,
            "local_port": self.local_port,
            "remote_ip": str(self.remote_ip) if self.remote_ip else None,
            "remote_port": self.remote_port,
            "connected": self.connection is not None,
            "pending_bytes": len(self._pending) - self.sent_offset,
        }
