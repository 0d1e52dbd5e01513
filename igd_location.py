"""
LOCATION URL parsing for SSDP replies.

The gateway announces its description document as http://host[:port]/path.
Only that shape is expected; the scheme is skipped by length, not parsed.
"""

from __future__ import annotations

DEFAULT_CONTROL_PORT = 80

# len("http://")
_SCHEME_PREFIX_LEN = 7


def _leading_port(text: str) -> int:
    """Decimal digits at the start of text as a port, or the default port."""
    digits = ""
    for ch in text:
        if not "0" <= ch <= "9":
            break
        digits += ch
    if not digits:
        return DEFAULT_CONTROL_PORT
    port = int(digits)
    if port > 65535:
        return DEFAULT_CONTROL_PORT
    return port


def parse_location(location: str) -> tuple[str, int, str]:
    """
    Split a LOCATION URL into (host, control_port, path).

    A ':' before the first '/' introduces the port (default 80). The path runs
    from the first '/' to the end of the string and is empty when there is no
    '/'. The host is whatever lies between the scheme and the ':' or '/' that
    ends it.
    """
    rest = location[_SCHEME_PREFIX_LEN:]
    slash = rest.find("/")
    colon = rest.find(":")
    if slash != -1 and colon > slash:
        colon = -1

    if colon != -1:
        port_end = slash if slash != -1 else len(rest)
        port = _leading_port(rest[colon + 1:port_end])
        host = rest[:colon]
    else:
        port = DEFAULT_CONTROL_PORT
        host = rest[:slash] if slash != -1 else rest

    path = rest[slash:] if slash != -1 else ""
    return host, port, path
