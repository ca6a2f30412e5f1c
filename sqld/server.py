"""Network listeners and the byte streams they accept.

Two kinds of listener exist: plain TCP, and a WebSocket transport carrying the
same byte stream in binary messages (no HTTP upgrade; frames start right away).
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import socket
import struct
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

OP_CONTINUATION = 0x0
OP_TEXT = 0x1
OP_BINARY = 0x2
OP_CLOSE = 0x8
OP_PING = 0x9
OP_PONG = 0xA

_KNOWN_OPCODES = {OP_CONTINUATION, OP_TEXT, OP_BINARY, OP_CLOSE, OP_PING, OP_PONG}
_READ_CHUNK = 65536

Address = tuple
Handler = Callable[["NetStream", Address], Awaitable[Any]]


def _apply_mask(payload: bytes, mask: bytes) -> bytes:
    if not payload:
        return b""
    key = (mask * (len(payload) // 4 + 1))[: len(payload)]
    value = int.from_bytes(payload, "big") ^ int.from_bytes(key, "big")
    return value.to_bytes(len(payload), "big")


def encode_frame(opcode: int, payload: bytes, mask: Optional[bytes] = None) -> bytes:
    """A single final WebSocket frame; the payload is masked when a 4-byte key is given."""
    if not 0 <= opcode <= 0xF:
        raise ValueError(f"invalid opcode: {opcode}")
    if mask is not None and len(mask) != 4:
        raise ValueError("a mask key must be 4 bytes long")
    payload = bytes(payload)
    length = len(payload)
    mask_bit = 0x80 if mask is not None else 0
    header = bytearray([0x80 | opcode])
    if length < 126:
        header.append(mask_bit | length)
    elif length <= 0xFFFF:
        header.append(mask_bit | 126)
        header += struct.pack(">H", length)
    else:
        header.append(mask_bit | 127)
        header += struct.pack(">Q", length)
    if mask is None:
        return bytes(header) + payload
    return bytes(header) + bytes(mask) + _apply_mask(payload, bytes(mask))


async def read_frame(reader: asyncio.StreamReader) -> Optional[tuple[bool, int, bytes]]:
    """Read one frame as (fin, opcode, unmasked payload); None on a clean end of stream."""
    try:
        head = await reader.readexactly(2)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise
    first, second = head
    if first & 0x70:
        raise ValueError("reserved bits set in WebSocket frame")
    fin = bool(first & 0x80)
    opcode = first & 0x0F
    length = second & 0x7F
    if length == 126:
        (length,) = struct.unpack(">H", await reader.readexactly(2))
    elif length == 127:
        (length,) = struct.unpack(">Q", await reader.readexactly(8))
    mask = await reader.readexactly(4) if second & 0x80 else None
    payload = await reader.readexactly(length) if length else b""
    if mask is not None:
        payload = _apply_mask(payload, mask)
    return fin, opcode, payload


class NetStream(abc.ABC):
    """A bidirectional byte stream with peeking, over some network transport.

    Incoming data is pulled in the background as soon as the stream is first read
    or peeked, so a peek sees everything that has arrived so far.
    """

    def __init__(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._buffer = bytearray()
        self._eof = False
        self._closed = False
        self._error: Optional[BaseException] = None
        self._event = asyncio.Event()
        self._pump_task: Optional[asyncio.Task] = None

    @abc.abstractmethod
    async def _receive(self) -> Optional[bytes]:
        """The next chunk of incoming data (possibly empty); None at the end."""

    @abc.abstractmethod
    async def _send(self, data: bytes) -> None:
        """Send bytes to the peer."""

    async def _shutdown(self) -> None:
        """Tell the peer no more data will be sent."""

    async def _pump(self) -> None:
        try:
            while True:
                chunk = await self._receive()
                if chunk is None:
                    break
                if chunk:
                    self._buffer += chunk
                    self._event.set()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error = exc
        finally:
            self._eof = True
            self._event.set()

    def _ensure_pump(self) -> None:
        if self._pump_task is None and not self._eof:
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())

    async def _wait_data(self, min_size: int) -> None:
        self._ensure_pump()
        while len(self._buffer) < min_size and not self._eof:
            self._event.clear()
            await self._event.wait()

    def _take(self, n: int) -> bytes:
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    async def read(self, n: int) -> bytes:
        """Up to n bytes, waiting until some arrive; b"" at the end of the stream."""
        if n <= 0:
            return b""
        await self._wait_data(1)
        if not self._buffer:
            if self._error is not None:
                raise self._error
            return b""
        return self._take(n)

    async def read_exact(self, n: int) -> bytes:
        """Exactly n bytes; raise IncompleteReadError if the stream ends first."""
        await self._wait_data(n)
        if len(self._buffer) < n:
            if self._error is not None:
                raise self._error
            partial = self._take(len(self._buffer))
            raise asyncio.IncompleteReadError(partial, n)
        return self._take(n)

    async def peek(self, n: int) -> bytes:
        """Up to n bytes of what has arrived, without consuming them; b"" at the end."""
        await self._wait_data(1)
        if not self._buffer:
            if self._error is not None:
                raise self._error
            return b""
        return bytes(self._buffer[:n])

    async def write(self, data: bytes) -> int:
        """Send data; return the number of bytes written."""
        if self._closed:
            raise BrokenPipeError("stream is closed")
        await self._send(bytes(data))
        return len(data)

    async def flush(self) -> None:
        await self._writer.drain()

    async def close(self) -> None:
        """Shut the stream down and release the connection."""
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(ConnectionError, OSError):
            await self._shutdown()
        with contextlib.suppress(ConnectionError, OSError):
            self._writer.close()
            await self._writer.wait_closed()
        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._pump_task
        self._eof = True
        self._event.set()


class TcpStream(NetStream):
    """A plain TCP connection."""

    def __init__(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        super().__init__(reader, writer)

    async def _receive(self) -> Optional[bytes]:
        data = await self._reader.read(_READ_CHUNK)
        return data or None

    async def _send(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def _shutdown(self) -> None:
        if self._writer.can_write_eof():
            self._writer.write_eof()


class WsStream(NetStream):
    """A byte stream carried in the binary messages of a server-side WebSocket."""

    def __init__(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        super().__init__(reader, writer)
        self._in_binary = False
        self._close_sent = False

    async def _send_control(self, opcode: int, payload: bytes) -> None:
        with contextlib.suppress(ConnectionError, OSError):
            self._writer.write(encode_frame(opcode, payload))
            await self._writer.drain()

    async def _receive(self) -> Optional[bytes]:
        frame = await read_frame(self._reader)
        if frame is None:
            return None
        fin, opcode, payload = frame
        if opcode not in _KNOWN_OPCODES:
            raise ValueError(f"unknown WebSocket opcode: {opcode:#x}")
        if opcode == OP_BINARY:
            self._in_binary = not fin
            return payload
        if opcode == OP_CONTINUATION:
            data = payload if self._in_binary else b""
            if fin:
                self._in_binary = False
            return data
        if opcode == OP_TEXT:
            self._in_binary = False
            return b""
        if opcode == OP_PING:
            await self._send_control(OP_PONG, payload)
            return b""
        if opcode == OP_CLOSE:
            if not self._close_sent:
                self._close_sent = True
                await self._send_control(OP_CLOSE, payload[:2])
            return None
        return b""

    async def _send(self, data: bytes) -> None:
        if self._close_sent:
            raise BrokenPipeError("WebSocket connection is closed")
        self._writer.write(encode_frame(OP_BINARY, data))
        await self._writer.drain()

    async def _shutdown(self) -> None:
        if not self._close_sent:
            self._close_sent = True
            self._writer.write(encode_frame(OP_CLOSE, b""))
            await self._writer.drain()


_StreamFactory = Callable[[asyncio.StreamReader, asyncio.StreamWriter], NetStream]


class Server:
    """Accepts connections on any number of listeners and hands each to a handler."""

    def __init__(self) -> None:
        self._listeners: list[asyncio.AbstractServer] = []
        self._queue: "asyncio.Queue[Optional[tuple[NetStream, Address]]]" = (
            asyncio.Queue()
        )

    async def _bind(
        self, host: str, port: int, factory: _StreamFactory, nodelay: bool
    ) -> "Server":
        def on_connect(
            reader: asyncio.StreamReader, writer: asyncio.StreamWriter
        ) -> None:
            if nodelay:
                sock = writer.get_extra_info("socket")
                if sock is not None and sock.family in (socket.AF_INET, socket.AF_INET6):
                    with contextlib.suppress(OSError):
                        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            peer = writer.get_extra_info("peername")
            addr = tuple(peer[:2]) if isinstance(peer, (tuple, list)) else peer
            self._queue.put_nowait((factory(reader, writer), addr))

        listener = await asyncio.start_server(on_connect, host, port)
        self._listeners.append(listener)
        return self

    async def bind_tcp(self, host: str, port: int) -> "Server":
        """Listen for plain TCP connections."""
        return await self._bind(host, port, TcpStream, nodelay=True)

    async def bind_ws(self, host: str, port: int) -> "Server":
        """Listen for WebSocket connections."""
        return await self._bind(host, port, WsStream, nodelay=False)

    def addresses(self) -> list[tuple[str, int]]:
        """The (host, port) of every listening socket, in binding order."""
        return [
            tuple(sock.getsockname()[:2])
            for listener in self._listeners
            for sock in listener.sockets or ()
        ]

    async def _run_connection(
        self, handler: Handler, stream: NetStream, addr: Address
    ) -> None:
        try:
            await handler(stream, addr)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("connection exited with error: %s", exc)
        finally:
            await stream.close()

    async def serve(self, handler: Handler) -> None:
        """Run `handler(stream, addr)` for each connection until the server is closed."""
        if not self._listeners:
            return
        connections: set[asyncio.Task] = set()
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    break
                stream, addr = item
                logger.info("new connection: %s", addr)
                task = asyncio.create_task(self._run_connection(handler, stream, addr))
                connections.add(task)
                task.add_done_callback(connections.discard)
        finally:
            for task in list(connections):
                task.cancel()
            if connections:
                await asyncio.gather(*connections, return_exceptions=True)

    def close(self) -> None:
        """Stop listening and make `serve` return."""
        for listener in self._listeners:
            listener.close()
        self._queue.put_nowait(None)