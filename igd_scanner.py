"""
Scanners for incoming IGD protocol bytes.

Gateways send loosely formatted HTTP and XML, so nothing here parses a
document. Each function looks for the few markers the client cares about in
everything received so far on one connection and returns None until the
answer is complete in that buffer. Callers keep appending to the buffer and
call again after each delivery; a marker split across two TCP segments is
found once both halves have arrived.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Optional

from igd_messages import WAN_SERVICE_ID

_logger = logging.getLogger(__name__)

_LOCATION_MARKER = b"\r\nlocation:"
_CONTROL_URL_TAG = b"<controlurl>"
_EXTERNAL_IP_TAG = b"<newexternalipaddress>"
_STATUS_LINE_RE = re.compile(rb"^HTTP/\d\.\d\s+(\d{3})")


def find_location(datagram: bytes) -> Optional[str]:
    """
    Return the LOCATION header value from an SSDP reply, or None.

    The header name is matched case-insensitively after a CRLF; the value runs
    to the next CR or to the end of the datagram.
    """
    start = datagram.lower().find(_LOCATION_MARKER)
    if start == -1:
        return None
    start += len(_LOCATION_MARKER)
    end = datagram.find(b"\r", start)
    if end == -1:
        end = len(datagram)
    value = datagram[start:end].decode("utf-8", errors="ignore").strip()
    return value or None


def find_control_url(buffer: bytes, service_id: str = WAN_SERVICE_ID) -> Optional[str]:
    """
    Return the controlURL of the service identified by service_id, or None.

    Walks <service>/</service> markers keeping a nesting depth. When the
    service id shows up, the depth is remembered; the next <controlURL> seen
    at that same depth holds the answer, up to the next '<'.
    """
    lowered = buffer.lower()
    pattern = re.compile(
        b"<service>|</service>|" + re.escape(service_id.lower().encode("utf-8"))
        + b"|" + re.escape(_CONTROL_URL_TAG)
    )
    depth = 0
    wanted_depth = -1
    for match in pattern.finditer(lowered):
        token = match.group(0)
        if token == b"<service>":
            depth += 1
        elif token == b"</service>":
            depth -= 1
        elif token == _CONTROL_URL_TAG:
            if wanted_depth != depth:
                continue
            start = match.end()
            end = buffer.find(b"<", start)
            if end == -1:
                # Value not fully received yet
                return None
            url = buffer[start:end].decode("utf-8", errors="ignore").strip()
            return url or None
        else:
            wanted_depth = depth
    return None


def find_external_address(buffer: bytes) -> Optional[ipaddress.IPv4Address]:
    """Return the address inside <NewExternalIPAddress>, or None if absent, unparsable or 0.0.0.0."""
    start = buffer.lower().find(_EXTERNAL_IP_TAG)
    if start == -1:
        return None
    start += len(_EXTERNAL_IP_TAG)
    end = buffer.find(b"<", start)
    if end == -1:
        return None
    text = buffer[start:end].decode("utf-8", errors="ignore").strip()
    try:
        address = ipaddress.IPv4Address(text)
    except ValueError:
        _logger.debug("Ignoring malformed external address: %r", text[:64])
        return None
    if address.is_unspecified:
        # 0.0.0.0: WAN link down
        _logger.debug("Gateway reported no external address")
        return None
    return address


def parse_status_code(buffer: bytes) -> Optional[int]:
    """HTTP status code from the response status line, or None if not received yet."""
    match = _STATUS_LINE_RE.match(buffer)
    if not match:
        return None
    return int(match.group(1))
