import asyncio
import contextlib
import logging
import socket
import struct

import aiohttp
import pytest

from sqld.app import Backend, Config, run_server, run_service
from sqld.database import DbFactoryService, LibSqlDb


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _open(port):
    for _ in range(200):
        try:
            return await asyncio.open_connection("127.0.0.1", port)
        except OSError:
            await asyncio.sleep(0.02)
    raise AssertionError("server did not start")


async def _read_until_ready(reader):
    messages = []
    while True:
        tag = await reader.readexactly(1)
        (length,) = struct.unpack("!i", await reader.readexactly(4))
        body = await reader.readexactly(length - 4)
        messages.append((tag, body))
        if tag == b"Z":
            return messages


def _service(tmp_path):
    path = tmp_path / "test.db"
    return DbFactoryService(lambda: LibSqlDb(path))


def test_backend_from_name():
    assert Backend("libsql") is Backend.LIBSQL


def test_config_defaults():
    config = Config()
    assert config.tcp_addr == ("127.0.0.1", 5432)
    assert config.backend is Backend.LIBSQL
    assert config.http_addr is None


@pytest.mark.asyncio
async def test_run_server_rejects_primary_url(tmp_path):
    config = Config(db_path=tmp_path / "db", writer_rpc_addr="http://localhost:5001")
    with pytest.raises(ValueError, match="primary"):
        await run_server(config)


@pytest.mark.asyncio
async def test_run_server_rejects_rpc_listener(tmp_path):
    config = Config(db_path=tmp_path / "db", rpc_server_addr=("0.0.0.0", 5001))
    with pytest.raises(ValueError, match="RPC"):
        await run_server(config)


@pytest.mark.asyncio
async def test_run_service_rejects_bad_auth(tmp_path):
    config = Config(
        tcp_addr=("127.0.0.1", _free_port()),
        http_addr=("127.0.0.1", _free_port()),
        http_auth="bogus",
    )
    with pytest.raises(ValueError, match="invalid HTTP auth config: bogus"):
        await run_service(_service(tmp_path), config)


@pytest.mark.asyncio
async def test_run_server_logs_service_error(tmp_path, caplog):
    config = Config(
        db_path=tmp_path / "db",
        tcp_addr=("127.0.0.1", _free_port()),
        http_addr=("127.0.0.1", _free_port()),
        http_auth="bogus",
    )
    with caplog.at_level(logging.ERROR, logger="sqld.app"):
        await run_server(config)
    assert any("invalid HTTP auth config" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_postgres_query_end_to_end(tmp_path):
    port = _free_port()
    config = Config(tcp_addr=("127.0.0.1", port))
    task = asyncio.create_task(run_service(_service(tmp_path), config))
    try:
        reader, writer = await _open(port)
        body = struct.pack("!i", 196608) + b"user\0tester\0\0"
        writer.write(struct.pack("!i", len(body) + 4) + body)
        await writer.drain()
        startup = await _read_until_ready(reader)
        assert startup[0][0] == b"R"

        sql = b"select 1;\0"
        writer.write(b"Q" + struct.pack("!i", len(sql) + 4) + sql)
        await writer.drain()
        messages = await _read_until_ready(reader)
        tags = [tag for tag, _ in messages]
        assert tags[0] == b"T"
        assert tags[-1] == b"Z"
        data = [body for tag, body in messages if tag == b"D"]
        assert len(data) == 1
        (count,) = struct.unpack_from("!h", data[0])
        (size,) = struct.unpack_from("!i", data[0], 2)
        assert count == 1
        assert data[0][6 : 6 + size] == b"1"
        writer.close()
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


@pytest.mark.asyncio
async def test_http_query_end_to_end(tmp_path):
    pg_port = _free_port()
    http_port = _free_port()
    config = Config(
        tcp_addr=("127.0.0.1", pg_port), http_addr=("127.0.0.1", http_port)
    )
    task = asyncio.create_task(run_service(_service(tmp_path), config))
    try:
        _, writer = await _open(http_port)
        writer.close()
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"http://127.0.0.1:{http_port}/",
                json={"statements": ["select 1 as x"]},
            ) as resp:
                assert resp.status == 200
                assert await resp.json() == [[{"x": 1}]]
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task