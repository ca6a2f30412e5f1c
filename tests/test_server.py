import asyncio
import random
import socket
import struct

import pytest

from sqld.server import (
    OP_BINARY,
    OP_CLOSE,
    OP_PING,
    OP_PONG,
    Server,
    TcpStream,
    WsStream,
    encode_frame,
    read_frame,
)

MASK = b"\x11\x22\x33\x44"


async def _pair():
    a, b = socket.socketpair()
    server_side = await asyncio.open_connection(sock=a)
    client_side = await asyncio.open_connection(sock=b)
    return server_side, client_side


def _reader_with(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def test_encode_frame_unmasked_matches_rfc_example():
    assert encode_frame(0x1, b"Hello") == bytes(
        [0x81, 0x05, 0x48, 0x65, 0x6C, 0x6C, 0x6F]
    )


def test_encode_frame_masked_matches_rfc_example():
    frame = encode_frame(0x1, b"Hello", mask=bytes([0x37, 0xFA, 0x21, 0x3D]))
    assert frame == bytes(
        [0x81, 0x85, 0x37, 0xFA, 0x21, 0x3D, 0x7F, 0x9F, 0x4D, 0x51, 0x58]
    )


def test_encode_frame_extended_lengths():
    assert encode_frame(OP_BINARY, b"a" * 126)[:4] == b"\x82\x7e\x00\x7e"
    frame = encode_frame(OP_BINARY, b"a" * 65536)
    assert frame[:2] == b"\x82\x7f"
    assert struct.unpack(">Q", frame[2:10]) == (65536,)


def test_encode_frame_rejects_bad_mask():
    with pytest.raises(ValueError):
        encode_frame(OP_BINARY, b"x", mask=b"\x01\x02")


@pytest.mark.asyncio
@pytest.mark.parametrize("size", [0, 1, 125, 126, 65535, 65536])
@pytest.mark.parametrize("mask", [None, MASK])
async def test_frame_round_trip(size, mask):
    payload = bytes(i % 251 for i in range(size))
    reader = _reader_with(encode_frame(OP_BINARY, payload, mask=mask))
    assert await read_frame(reader) == (True, OP_BINARY, payload)


@pytest.mark.asyncio
async def test_read_frame_at_end_of_stream_returns_none():
    assert await read_frame(_reader_with(b"")) is None


@pytest.mark.asyncio
async def test_read_frame_truncated_raises():
    data = encode_frame(OP_BINARY, b"abcdef")[:-2]
    with pytest.raises(asyncio.IncompleteReadError):
        await read_frame(_reader_with(data))


@pytest.mark.asyncio
async def test_read_frame_rejects_reserved_bits():
    with pytest.raises(ValueError):
        await read_frame(_reader_with(b"\xc2\x00"))


@pytest.mark.asyncio
async def test_ws_read_from_socket():
    (sr, sw), (cr, cw) = await _pair()
    adapter = WsStream(sr, sw)

    async def server_side():
        chunks = []
        while True:
            data = await adapter.read(4096)
            if not data:
                return b"".join(chunks)
            chunks.append(data)

    task = asyncio.create_task(server_side())
    rng = random.Random(7)
    expected = bytearray()
    for _ in range(rng.randrange(10, 50)):
        buffer = rng.randbytes(64)
        expected += buffer
        cw.write(encode_frame(OP_BINARY, buffer, mask=MASK))
        await cw.drain()
    cw.write(encode_frame(OP_CLOSE, b"", mask=MASK))
    await cw.drain()

    found = await asyncio.wait_for(task, 5)
    assert found == bytes(expected)
    await adapter.close()
    cw.close()


@pytest.mark.asyncio
async def test_ws_write_from_socket():
    (sr, sw), (cr, cw) = await _pair()
    adapter = WsStream(sr, sw)

    async def client_side():
        found = bytearray()
        while True:
            frame = await read_frame(cr)
            assert frame is not None
            _fin, opcode, payload = frame
            if opcode == OP_CLOSE:
                return bytes(found)
            assert opcode == OP_BINARY
            found += payload

    task = asyncio.create_task(client_side())
    rng = random.Random(11)
    expected = bytearray()
    for _ in range(rng.randrange(10, 50)):
        buffer = rng.randbytes(64)
        expected += buffer
        assert await adapter.write(buffer) == 64
    await adapter.flush()
    await adapter.close()

    assert await asyncio.wait_for(task, 5) == bytes(expected)
    cw.close()


@pytest.mark.asyncio
async def test_ws_peek_from_socket():
    (sr, sw), (cr, cw) = await _pair()
    adapter = WsStream(sr, sw)

    cw.write(encode_frame(OP_BINARY, bytes([1, 2, 3, 4]), mask=MASK))
    await cw.drain()
    assert await asyncio.wait_for(adapter.peek(32), 5) == bytes([1, 2, 3, 4])

    await adapter.write(b"\x01")
    await adapter.flush()
    assert await asyncio.wait_for(read_frame(cr), 5) == (True, OP_BINARY, b"\x01")

    cw.write(encode_frame(OP_BINARY, bytes([5, 6, 7, 8]), mask=MASK))
    await cw.drain()
    await asyncio.sleep(0.05)
    assert await adapter.peek(32) == bytes([1, 2, 3, 4, 5, 6, 7, 8])
    assert await adapter.read(32) == bytes([1, 2, 3, 4, 5, 6, 7, 8])

    await adapter.close()
    cw.close()


@pytest.mark.asyncio
async def test_ws_ping_is_answered_with_pong():
    (sr, sw), (cr, cw) = await _pair()
    adapter = WsStream(sr, sw)
    cw.write(encode_frame(OP_PING, b"hi", mask=MASK))
    cw.write(encode_frame(OP_BINARY, b"x", mask=MASK))
    await cw.drain()

    assert await asyncio.wait_for(adapter.read(1), 5) == b"x"
    assert await asyncio.wait_for(read_frame(cr), 5) == (True, OP_PONG, b"hi")
    await adapter.close()
    cw.close()


@pytest.mark.asyncio
async def test_ws_peer_close_ends_stream_and_blocks_writes():
    (sr, sw), (cr, cw) = await _pair()
    adapter = WsStream(sr, sw)
    cw.write(encode_frame(OP_CLOSE, struct.pack(">H", 1000), mask=MASK))
    await cw.drain()

    assert await asyncio.wait_for(adapter.read(10), 5) == b""
    assert await asyncio.wait_for(read_frame(cr), 5) == (
        True,
        OP_CLOSE,
        struct.pack(">H", 1000),
    )
    with pytest.raises(BrokenPipeError):
        await adapter.write(b"data")
    await adapter.close()
    cw.close()


@pytest.mark.asyncio
async def test_tcp_peek_read_and_read_exact():
    (sr, sw), (cr, cw) = await _pair()
    stream = TcpStream(sr, sw)
    cw.write(b"abcdefgh")
    await cw.drain()
    cw.write_eof()

    assert await asyncio.wait_for(stream.read_exact(3), 5) == b"abc"
    assert await stream.peek(2) == b"de"
    assert await stream.read_exact(5) == b"defgh"
    assert await asyncio.wait_for(stream.read(10), 5) == b""
    await stream.close()
    cw.close()


@pytest.mark.asyncio
async def test_tcp_read_exact_incomplete():
    (sr, sw), (cr, cw) = await _pair()
    stream = TcpStream(sr, sw)
    cw.write(b"ab")
    await cw.drain()
    cw.write_eof()

    with pytest.raises(asyncio.IncompleteReadError) as info:
        await asyncio.wait_for(stream.read_exact(4), 5)
    assert info.value.partial == b"ab"
    await stream.close()
    cw.close()


@pytest.mark.asyncio
async def test_tcp_write_after_close_raises():
    (sr, sw), (cr, cw) = await _pair()
    stream = TcpStream(sr, sw)
    await stream.write(b"ok")
    await stream.close()
    assert await asyncio.wait_for(cr.read(), 5) == b"ok"
    with pytest.raises(BrokenPipeError):
        await stream.write(b"more")
    cw.close()


async def _echo_upper(stream, addr):
    data = await stream.read_exact(5)
    await stream.write(data.upper())
    await stream.flush()


@pytest.mark.asyncio
async def test_server_serves_tcp_until_closed():
    server = Server()
    await server.bind_tcp("127.0.0.1", 0)
    host, port = server.addresses()[0]
    serving = asyncio.create_task(server.serve(_echo_upper))

    reader, writer = await asyncio.open_connection(host, port)
    writer.write(b"hello")
    await writer.drain()
    assert await asyncio.wait_for(reader.readexactly(5), 5) == b"HELLO"
    assert await asyncio.wait_for(reader.read(), 5) == b""
    writer.close()

    server.close()
    assert await asyncio.wait_for(serving, 5) is None


@pytest.mark.asyncio
async def test_server_serves_websocket():
    server = Server()
    await server.bind_ws("127.0.0.1", 0)
    host, port = server.addresses()[0]
    serving = asyncio.create_task(server.serve(_echo_upper))

    reader, writer = await asyncio.open_connection(host, port)
    writer.write(encode_frame(OP_BINARY, b"hello", mask=MASK))
    await writer.drain()
    assert await asyncio.wait_for(read_frame(reader), 5) == (True, OP_BINARY, b"HELLO")
    closing = await asyncio.wait_for(read_frame(reader), 5)
    assert closing[1] == OP_CLOSE
    writer.close()

    server.close()
    await asyncio.wait_for(serving, 5)
    assert serving.done()


@pytest.mark.asyncio
async def test_server_survives_failing_handler():
    calls = []

    async def handler(stream, addr):
        calls.append(addr)
        if len(calls) == 1:
            raise RuntimeError("boom")
        await _echo_upper(stream, addr)

    server = Server()
    await server.bind_tcp("127.0.0.1", 0)
    host, port = server.addresses()[0]
    serving = asyncio.create_task(server.serve(handler))

    first_reader, first_writer = await asyncio.open_connection(host, port)
    assert await asyncio.wait_for(first_reader.read(), 5) == b""
    first_writer.close()

    reader, writer = await asyncio.open_connection(host, port)
    writer.write(b"again")
    await writer.drain()
    assert await asyncio.wait_for(reader.readexactly(5), 5) == b"AGAIN"
    writer.close()

    server.close()
    await asyncio.wait_for(serving, 5)
    assert len(calls) == 2