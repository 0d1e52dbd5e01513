"""
asyncio transport for the IGD client.

Turns asyncio datagram and stream protocols into the discrete events that
IGDClient.handle_event() consumes. Every open/connect/resolve call returns an
integer handle at once; the work happens in tasks on the running loop and its
outcome is reported later as (event, payload, handle).

Events are always delivered from the loop (never from inside the call that
caused them), so the client sees them in the order asyncio produced them for
each connection.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import socket
from typing import Any, Callable, Optional

from igd_client import (
    EVENT_CONNECTED,
    EVENT_DATAGRAM_RECEIVED,
    EVENT_DATAGRAM_SENT,
    EVENT_DISCONNECTED,
    EVENT_ERROR,
    EVENT_RECEIVED,
    EVENT_RESOLVED,
    EVENT_SENT,
)
from igd_messages import SSDP_MCAST_GRP, SSDP_MCAST_PORT

EventCallback = Callable[[str, Any, int], None]


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------

class SSDPClientProtocol(asyncio.DatagramProtocol):
    """Sends M-SEARCH datagrams and hands every reply to the adapter."""

    def __init__(self, adapter: "AsyncioTransport", handle: int) -> None:
        self.adapter = adapter
        self.handle = handle
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.adapter.logger.debug("SSDP reply from %s (%d bytes)", addr, len(data))
        self.adapter.emit(EVENT_DATAGRAM_RECEIVED, data, self.handle)

    def error_received(self, exc: Exception) -> None:
        self.adapter.logger.debug("SSDP socket error: %s", exc)


class GatewayConnectionProtocol(asyncio.Protocol):
    """One TCP exchange with the gateway's HTTP endpoint."""

    def __init__(self, adapter: "AsyncioTransport", handle: int) -> None:
        self.adapter = adapter
        self.handle = handle
        self.transport: Optional[asyncio.Transport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport
        if not self.adapter.attach_stream(self.handle, self):
            # Closed while connecting
            transport.close()
            return
        self.adapter.emit(EVENT_CONNECTED, None, self.handle)

    def data_received(self, data: bytes) -> None:
        self.adapter.emit(EVENT_RECEIVED, data, self.handle)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.transport = None
        self.adapter.forget(self.handle)
        if exc is None:
            self.adapter.emit(EVENT_DISCONNECTED, None, self.handle)
        else:
            self.adapter.emit(EVENT_ERROR, exc, self.handle)


# -----------------------------------------------------------------------------
# Adapter
# -----------------------------------------------------------------------------

class AsyncioTransport:
    """
    UDP multicast, TCP and DNS on the running asyncio loop.
    Call bind() with the client's event handler before use (IGDClient does).
    """

    def __init__(self, logger: logging.Logger, config: Optional[dict] = None) -> None:
        self.logger = logger
        self.config = config or {}
        self._on_event: Optional[EventCallback] = None
        self._handles = itertools.count(1)
        self._datagram: dict[int, SSDPClientProtocol] = {}
        self._queued: dict[int, list[bytes]] = {}
        self._streams: dict[int, GatewayConnectionProtocol] = {}
        self._tasks: dict[int, asyncio.Task] = {}

    def bind(self, on_event: EventCallback) -> None:
        self._on_event = on_event

    def emit(self, event: str, payload: Any, handle: int) -> None:
        """Deliver an event to the client on the next loop iteration."""
        if self._on_event is None:
            return
        asyncio.get_running_loop().call_soon(self._on_event, event, payload, handle)

    def attach_stream(self, handle: int, protocol: GatewayConnectionProtocol) -> bool:
        """Register a connected stream; False if its handle was closed meanwhile."""
        if handle not in self._tasks:
            return False
        self._streams[handle] = protocol
        return True

    def forget(self, handle: int) -> None:
        self._streams.pop(handle, None)
        self._tasks.pop(handle, None)

    # -- UDP ------------------------------------------------------------------

    def open_multicast_listener(self) -> int:
        """Open a UDP socket for M-SEARCH; replies arrive as datagram_received."""
        handle = next(self._handles)
        self._queued[handle] = []
        self._tasks[handle] = asyncio.get_running_loop().create_task(self._open_datagram(handle))
        return handle

    async def _open_datagram(self, handle: int) -> None:
        loop = asyncio.get_running_loop()
        sock = None
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            sock.bind(("0.0.0.0", 0))
            _, protocol = await loop.create_datagram_endpoint(
                lambda: SSDPClientProtocol(self, handle),
                sock=sock,
            )
        except OSError as e:
            if sock is not None:
                sock.close()
            self.logger.error("Could not open SSDP socket: %s", e)
            self._queued.pop(handle, None)
            self._tasks.pop(handle, None)
            self.emit(EVENT_ERROR, e, handle)
            return
        self._tasks.pop(handle, None)
        if handle not in self._queued:
            # Closed while opening
            protocol.transport.close()
            return
        self._datagram[handle] = protocol
        for data in self._queued.pop(handle):
            self._sendto(handle, protocol, data)

    def send_datagram(self, handle: int, data: bytes) -> None:
        protocol = self._datagram.get(handle)
        if protocol is None:
            if handle in self._queued:
                self._queued[handle].append(data)
            else:
                self.logger.debug("Datagram for closed handle %d dropped", handle)
            return
        self._sendto(handle, protocol, data)

    def _sendto(self, handle: int, protocol: SSDPClientProtocol, data: bytes) -> None:
        if protocol.transport is None or protocol.transport.is_closing():
            return
        protocol.transport.sendto(data, (SSDP_MCAST_GRP, SSDP_MCAST_PORT))
        self.emit(EVENT_DATAGRAM_SENT, None, handle)

    # -- DNS ------------------------------------------------------------------

    def resolve(self, hostname: str) -> int:
        """Look up hostname; the IPv4 address (or None) arrives as resolved."""
        handle = next(self._handles)
        self._tasks[handle] = asyncio.get_running_loop().create_task(self._resolve(hostname, handle))
        return handle

    async def _resolve(self, hostname: str, handle: int) -> None:
        loop = asyncio.get_running_loop()
        address = None
        try:
            infos = await loop.getaddrinfo(hostname, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
            if infos:
                address = infos[0][4][0]
        except (OSError, UnicodeError) as e:
            self.logger.debug("DNS lookup for %s failed: %s", hostname, e)
        finally:
            self._tasks.pop(handle, None)
        self.emit(EVENT_RESOLVED, address, handle)

    # -- TCP ------------------------------------------------------------------

    def connect(self, host: str, port: int) -> int:
        """Open a TCP connection; progress arrives as connected/received/disconnected."""
        handle = next(self._handles)
        self._tasks[handle] = asyncio.get_running_loop().create_task(self._connect(host, port, handle))
        return handle

    async def _connect(self, host: str, port: int, handle: int) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.create_connection(
                lambda: GatewayConnectionProtocol(self, handle),
                host,
                port,
            )
        except OSError as e:
            self.logger.debug("Connect to %s:%d failed: %s", host, port, e)
            self.emit(EVENT_ERROR, e, handle)
        finally:
            self._tasks.pop(handle, None)

    def send(self, handle: int, data: bytes) -> None:
        protocol = self._streams.get(handle)
        if protocol is None or protocol.transport is None or protocol.transport.is_closing():
            self.logger.debug("Send on closed handle %d dropped", handle)
            return
        protocol.transport.write(data)
        self.emit(EVENT_SENT, None, handle)

    # -- teardown -------------------------------------------------------------

    def close(self, handle: int) -> None:
        """Tear down whatever handle refers to; later events for it are stale."""
        task = self._tasks.pop(handle, None)
        if task is not None and not task.done():
            task.cancel()
        self._queued.pop(handle, None)
        datagram = self._datagram.pop(handle, None)
        if datagram is not None and datagram.transport is not None:
            datagram.transport.close()
        stream = self._streams.pop(handle, None)
        if stream is not None and stream.transport is not None:
            stream.transport.close()

    def close_all(self) -> None:
        for handle in list(self._tasks) + list(self._datagram) + list(self._streams):
            self.close(handle)
