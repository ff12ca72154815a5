"""Physical links carrying frames between a client channel and a server.

A link is a duplex, ordered frame pipe. Two implementations exist:
- TcpLink: asyncio streams, each frame prefixed by its 4-byte big-endian length
- MemoryLink: an in-process pair created by memory_pipe(), used by the
  simulation server and tests

Both raise ConnectionError subclasses when the peer goes away, which is what
the channel treats as an unexpected loss.
"""

import asyncio
import struct
from collections.abc import Awaitable, Callable
from typing import Protocol
from urllib.parse import urlsplit

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_PORT = 4840
MAX_FRAME_SIZE = 16 * 1024 * 1024

_HEADER = struct.Struct(">I")


class Link(Protocol):
    """Duplex frame pipe used by a Channel."""

    async def send(self, frame: bytes) -> None:
        """Write one frame. Raises ConnectionError if the link is gone."""
        ...

    async def receive(self) -> bytes:
        """Read the next frame. Raises ConnectionError when the peer closes."""
        ...

    async def close(self) -> None:
        """Release the link. Safe to call more than once."""
        ...


# Opens a link to the given endpoint URL.
Connector = Callable[[str], Awaitable[Link]]


def parse_endpoint(url: str) -> tuple[str, int]:
    """Split an opc.tcp:// URL into host and port.

    Raises:
        ValueError: If the URL does not use the opc.tcp scheme
    """
    parts = urlsplit(url)
    if parts.scheme != "opc.tcp":
        raise ValueError(f"unsupported endpoint scheme in {url!r}")
    if not parts.hostname:
        raise ValueError(f"endpoint {url!r} has no host")
    return parts.hostname, DEFAULT_PORT if parts.port is None else parts.port


class TcpLink:
    """Length-prefixed frames over an asyncio stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._closed = False

    @property
    def peer(self) -> str:
        peername = self._writer.get_extra_info("peername")
        return f"{peername[0]}:{peername[1]}" if peername else "unknown"

    async def send(self, frame: bytes) -> None:
        if self._closed:
            raise ConnectionResetError("link is closed")
        if len(frame) > MAX_FRAME_SIZE:
            raise ValueError(f"frame of {len(frame)} bytes exceeds {MAX_FRAME_SIZE}")
        self._writer.write(_HEADER.pack(len(frame)) + frame)
        await self._writer.drain()

    async def receive(self) -> bytes:
        try:
            header = await self._reader.readexactly(_HEADER.size)
            (size,) = _HEADER.unpack(header)
            if size > MAX_FRAME_SIZE:
                raise ConnectionAbortedError(f"peer announced a {size} byte frame")
            return await self._reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            raise ConnectionResetError("connection closed by peer") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("tcp_link_close_error", peer=self.peer, error=str(e))


async def open_tcp_link(url: str) -> TcpLink:
    """Default connector: open a TCP connection to an opc.tcp:// endpoint."""
    host, port = parse_endpoint(url)
    reader, writer = await asyncio.open_connection(host, port)
    return TcpLink(reader, writer)


_CLOSED = object()


class MemoryLink:
    """One end of an in-process link pair."""

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue, name: str = "memory"):
        self._inbox = inbox
        self._outbox = outbox
        self._closed = False
        self.name = name

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: bytes) -> None:
        if self._closed:
            raise ConnectionResetError(f"{self.name} link is closed")
        await self._outbox.put(frame)

    async def receive(self) -> bytes:
        if self._closed:
            raise ConnectionResetError(f"{self.name} link is closed")
        frame = await self._inbox.get()
        if frame is _CLOSED:
            self._closed = True
            raise ConnectionResetError(f"{self.name} link closed by peer")
        return frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake both our own pending receive() and the peer's.
        self._inbox.put_nowait(_CLOSED)
        self._outbox.put_nowait(_CLOSED)


def memory_pipe(name: str = "memory") -> tuple[MemoryLink, MemoryLink]:
    """Create a connected (client_end, server_end) pair of memory links."""
    client_to_server: asyncio.Queue = asyncio.Queue()
    server_to_client: asyncio.Queue = asyncio.Queue()
    client_end = MemoryLink(server_to_client, client_to_server, name=f"{name}:client")
    server_end = MemoryLink(client_to_server, server_to_client, name=f"{name}:server")
    return client_end, server_end
