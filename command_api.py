"""
JSON command API for igd-punch.

Decodes host requests into IGDClient operations and encodes the integer
results. Every call returns immediately; callers poll (repeat /scan or
/external) to see the gateway exchange progress.

    GET  /  or /status   current state and session
    POST /begin          reset the session
    POST /scan           {"result": gateway address as int, or 0}
    POST /add            {"local_ip"?, "local_port", "remote_port"} -> {"result": 0 | -1}
    POST /remove         {"remote_port"} -> {"result": 0 | -1}
    POST /external       {"result": int, "address": "a.b.c.d" | null}
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
from typing import Any, Optional

from igd_client import IGDClient


class BadRequest(ValueError):
    """Request body that cannot be turned into a client operation."""


def _port_field(payload: dict, name: str) -> int:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadRequest(f"{name} must be an integer")
    if not 0 <= value <= 65535:
        raise BadRequest(f"{name} out of range: {value}")
    return value


def _int_to_ip(value: int) -> Optional[str]:
    if value <= 0:
        return None
    return str(ipaddress.IPv4Address(value))


class CommandApiHandler(asyncio.Protocol):
    """HTTP handler mapping routes onto IGDClient operations."""

    def __init__(
        self,
        client: IGDClient,
        logger: logging.Logger,
        config: Optional[dict] = None,
    ) -> None:
        self.client = client
        self.logger = logger
        self.config = config or {}
        self.transport: Optional[asyncio.BaseTransport] = None
        self._buffer = b""

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport

    def data_received(self, data: bytes) -> None:
        self._buffer += data
        if b"\r\n\r\n" not in self._buffer:
            return
        headers_end = self._buffer.index(b"\r\n\r\n")
        headers = self._buffer[:headers_end].decode("utf-8", errors="ignore")
        body_bytes = self._buffer[headers_end + 4:]

        content_length = 0
        for line in headers.split("\r\n")[1:]:
            if line.lower().startswith("content-length:"):
                try:
                    content_length = int(line.split(":", 1)[1].strip())
                except ValueError:
                    self._send(400, {"error": "Invalid Content-Length"})
                    return
                break
        if len(body_bytes) < content_length:
            return

        req_line = headers.split("\r\n")[0]
        parts = req_line.split()
        method = parts[0].upper() if len(parts) >= 1 else ""
        path = parts[1].split("?")[0] if len(parts) >= 2 else "/"
        self.logger.debug("Command API request: %s %s", method, path)

        try:
            if method == "GET" and path in ("/", "/status"):
                self._send(200, self.client.status())
            elif method == "POST" and path in _ROUTES:
                payload = self._parse_body(body_bytes[:content_length])
                self._send(200, _ROUTES[path](self, payload))
            elif path in ("/", "/status") or path in _ROUTES:
                self._send(405, {"error": "Method Not Allowed"})
            else:
                self._send(404, {"error": "Not Found"})
        except BadRequest as e:
            self._send(400, {"error": str(e)})
        except Exception as e:
            self.logger.warning("Command API error on %s %s: %s", method, path, e)
            self._send(500, {"error": "Internal Server Error"})

    @staticmethod
    def _parse_body(body_bytes: bytes) -> dict[str, Any]:
        if not body_bytes.strip():
            return {}
        try:
            payload = json.loads(body_bytes.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise BadRequest(f"Invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise BadRequest("Body must be a JSON object")
        return payload

    # -- routes ---------------------------------------------------------------

    def _begin(self, payload: dict) -> dict:
        self.client.begin_session()
        return {"ok": True}

    def _scan(self, payload: dict) -> dict:
        result = self.client.scan_for_gateway()
        return {"result": result, "gateway": _int_to_ip(result)}

    def _add(self, payload: dict) -> dict:
        local_port = _port_field(payload, "local_port")
        remote_port = _port_field(payload, "remote_port")
        local_ip = payload.get("local_ip") or self.config.get("local_ip")
        if not local_ip:
            raise BadRequest("local_ip is required (none configured)")
        try:
            address = ipaddress.IPv4Address(str(local_ip))
        except ValueError as e:
            raise BadRequest(f"Invalid local_ip: {e}") from e
        return {"result": self.client.add_port_mapping(address, local_port, remote_port)}

    def _remove(self, payload: dict) -> dict:
        remote_port = _port_field(payload, "remote_port")
        return {"result": self.client.remove_port_mapping(remote_port)}

    def _external(self, payload: dict) -> dict:
        result = self.client.query_external_address()
        return {"result": result, "address": _int_to_ip(result)}

    # -- response -------------------------------------------------------------

    def _send(self, status: int, obj: dict) -> None:
        body = json.dumps(obj).encode("utf-8")
        reasons = {
            200: "OK", 400: "Bad Request", 404: "Not Found",
            405: "Method Not Allowed", 500: "Internal Server Error",
        }
        reason = reasons.get(status, "Error")
        resp = (
            f"HTTP/1.1 {status} {reason}\r\n"
            "Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n\r\n"
        ).encode() + body
        if self.transport:
            self.transport.write(resp)
        self._close()

    def _close(self) -> None:
        if self.transport:
            self.transport.close()
            self.transport = None


_ROUTES = {
    "/begin": CommandApiHandler._begin,
    "/scan": CommandApiHandler._scan,
    "/add": CommandApiHandler._add,
    "/remove": CommandApiHandler._remove,
    "/external": CommandApiHandler._external,
}


async def run_command_api(
    config: dict,
    logger: logging.Logger,
    client: IGDClient,
) -> Optional[asyncio.Server]:
    """
    Start the command API server on api_host:api_port.

    Returns the server if started, None if disabled or the port is unavailable.
    """
    if not config.get("enable_api", True):
        return None
    host = config.get("api_host", "127.0.0.1")
    port = int(config.get("api_port", 8091))
    try:
        server = await asyncio.get_running_loop().create_server(
            lambda: CommandApiHandler(client, logger, config),
            host,
            port,
            reuse_address=True,
        )
    except OSError as e:
        logger.warning("Command API port %d unavailable: %s", port, e)
        return None
    return server
