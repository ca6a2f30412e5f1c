"""Serving PostgreSQL wire connections."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Optional

from .pg_protocol import (
    FrontendMessage,
    PgAuthenticator,
    PgError,
    QueryHandler,
    READY_STATUS_IDLE,
    Response,
    encode_command_complete,
    encode_data_row,
    encode_error_response,
    encode_ready_for_query,
    encode_row_description,
    peek_for_sslrequest,
    read_message,
    read_startup,
)
from .query import ResultSet, encode_text_value

logger = logging.getLogger(__name__)


class _ConnectionState(enum.Enum):
    AWAITING_STARTUP = "awaiting_startup"
    READY = "ready"


@dataclass
class _PreparedStatement:
    query: str
    param_types: list[int]


@dataclass
class _Portal:
    statement: _PreparedStatement
    params: list[Optional[bytes]]
    result: Optional[Response] = None
    described: bool = field(default=False)


def _backend(tag: bytes, body: bytes = b"") -> bytes:
    return tag + struct.pack("!i", len(body) + 4) + body


_PARSE_COMPLETE = _backend(b"1")
_BIND_COMPLETE = _backend(b"2")
_CLOSE_COMPLETE = _backend(b"3")
_NO_DATA = _backend(b"n")
_EMPTY_QUERY = _backend(b"I")


class _Fields:
    """Sequential reader over a message body."""

    def __init__(self, body: bytes) -> None:
        self._body = body
        self._pos = 0

    def _malformed(self) -> PgError:
        return PgError("ERROR", "XX000", "malformed message")

    def cstring(self) -> str:
        end = self._body.find(b"\0", self._pos)
        if end < 0:
            raise self._malformed()
        text = self._body[self._pos : end].decode("utf-8", "replace")
        self._pos = end + 1
        return text

    def _unpack(self, fmt: str) -> int:
        try:
            (value,) = struct.unpack_from(fmt, self._body, self._pos)
        except struct.error as exc:
            raise self._malformed() from exc
        self._pos += struct.calcsize(fmt)
        return value

    def int16(self) -> int:
        return self._unpack("!h")

    def int32(self) -> int:
        return self._unpack("!i")

    def byte(self) -> str:
        if self._pos >= len(self._body):
            raise self._malformed()
        value = chr(self._body[self._pos])
        self._pos += 1
        return value

    def take(self, n: int) -> bytes:
        if n < 0 or self._pos + n > len(self._body):
            raise self._malformed()
        data = self._body[self._pos : self._pos + n]
        self._pos += n
        return data


def _encode_response(response: Response, describe: bool) -> bytes:
    if isinstance(response, PgError):
        return encode_error_response(response.severity, response.code, response.message)
    assert isinstance(response, ResultSet)
    out = bytearray()
    if describe:
        out += encode_row_description(response.columns)
    for row in response.rows:
        out += encode_data_row(encode_text_value(value) for value in row)
    out += encode_command_complete(f"SELECT {len(response.rows)}")
    return bytes(out)


class PgWireConnection:
    """Manages one PostgreSQL wire connection."""

    def __init__(self, stream: Any, service: Any) -> None:
        self.stream = stream
        self.service = service
        self.authenticator = PgAuthenticator()
        self.handler = QueryHandler(service)
        self.state = _ConnectionState.AWAITING_STARTUP
        self.startup_parameters: dict[str, str] = {}
        self._statements: dict[str, _PreparedStatement] = {}
        self._portals: dict[str, _Portal] = {}
        self._handlers = {
            "Q": self._on_query,
            "P": self._on_parse,
            "B": self._on_bind,
            "D": self._on_describe,
            "E": self._on_execute,
            "S": self._on_sync,
            "C": self._on_close,
            "H": self._on_flush,
        }

    async def run(self) -> None:
        """Serve messages until the client terminates or the stream ends."""
        while True:
            try:
                if self.state is _ConnectionState.AWAITING_STARTUP:
                    msg = await read_startup(self.stream)
                else:
                    msg = await read_message(self.stream)
                if msg is None:
                    break
                keep_going = await self.handle_message(msg)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                try:
                    await self._handle_error(exc)
                except Exception:
                    break
                continue
            if not keep_going:
                break

    async def handle_message(self, msg: FrontendMessage) -> bool:
        """Handle one message; False when the client asked to terminate."""
        if self.state is _ConnectionState.AWAITING_STARTUP:
            self.startup_parameters = await self.authenticator.authenticate(
                self.stream, msg
            )
            self.state = _ConnectionState.READY
            return True
        if msg.tag == "X":
            return False
        if msg.tag == "p":
            # Password messages belong to the startup phase.
            return True
        handler = self._handlers.get(msg.tag)
        if handler is None:
            raise PgError("ERROR", "XX000", f"unsupported message type: {msg.tag!r}")
        await handler(_Fields(msg.body))
        return True

    async def _send(self, data: bytes) -> None:
        await self.stream.write(data)
        await self.stream.flush()

    async def _on_query(self, fields: _Fields) -> None:
        sql = fields.cstring()
        responses = await self.handler.do_query(sql)
        out = bytearray()
        if not responses:
            out += _EMPTY_QUERY
        for response in responses:
            out += _encode_response(response, describe=True)
        out += encode_ready_for_query(READY_STATUS_IDLE)
        await self._send(bytes(out))

    async def _on_parse(self, fields: _Fields) -> None:
        name = fields.cstring()
        query = fields.cstring()
        count = fields.int16()
        types = [fields.int32() for _ in range(count)]
        self._statements[name] = _PreparedStatement(query, types)
        await self._send(_PARSE_COMPLETE)

    async def _on_bind(self, fields: _Fields) -> None:
        portal_name = fields.cstring()
        statement_name = fields.cstring()
        for _ in range(fields.int16()):
            fields.int16()
        params: list[Optional[bytes]] = []
        for _ in range(fields.int16()):
            length = fields.int32()
            params.append(None if length < 0 else fields.take(length))
        for _ in range(fields.int16()):
            fields.int16()
        statement = self._statements.get(statement_name)
        if statement is None:
            raise PgError(
                "ERROR", "XX000", f"prepared statement not found: {statement_name!r}"
            )
        self._portals[portal_name] = _Portal(statement, params)
        await self._send(_BIND_COMPLETE)

    async def _run_portal(self, portal: _Portal) -> Response:
        return await self.handler.do_extended_query(
            portal.statement.query, portal.statement.param_types, portal.params
        )

    async def _on_describe(self, fields: _Fields) -> None:
        kind = fields.byte()
        name = fields.cstring()
        if kind == "S":
            statement = self._statements.get(name)
            if statement is None:
                raise PgError("ERROR", "XX000", f"prepared statement not found: {name!r}")
            body = struct.pack("!h", len(statement.param_types))
            body += b"".join(struct.pack("!i", ty) for ty in statement.param_types)
            await self._send(_backend(b"t", body) + _NO_DATA)
            return
        portal = self._portals.get(name)
        if portal is None:
            raise PgError("ERROR", "XX000", f"portal not found: {name!r}")
        portal.result = await self._run_portal(portal)
        if isinstance(portal.result, ResultSet):
            portal.described = True
            await self._send(encode_row_description(portal.result.columns))
        else:
            await self._send(_NO_DATA)

    async def _on_execute(self, fields: _Fields) -> None:
        name = fields.cstring()
        fields.int32()
        portal = self._portals.get(name)
        if portal is None:
            raise PgError("ERROR", "XX000", f"portal not found: {name!r}")
        result = portal.result
        if result is None:
            result = await self._run_portal(portal)
        portal.result = None
        await self._send(_encode_response(result, describe=False))

    async def _on_sync(self, fields: _Fields) -> None:
        await self._send(encode_ready_for_query(READY_STATUS_IDLE))

    async def _on_close(self, fields: _Fields) -> None:
        kind = fields.byte()
        name = fields.cstring()
        if kind == "S":
            self._statements.pop(name, None)
        else:
            self._portals.pop(name, None)
        await self._send(_CLOSE_COMPLETE)

    async def _on_flush(self, fields: _Fields) -> None:
        await self.stream.flush()

    async def _handle_error(self, error: Exception) -> None:
        if isinstance(error, PgError) and not error.fatal:
            await self._send(
                encode_error_response(error.severity, error.code, error.message)
                + encode_ready_for_query(READY_STATUS_IDLE)
            )
            return
        message = error.message if isinstance(error, PgError) else str(error)
        await self._send(encode_error_response("FATAL", "XX000", message))
        await self.stream.close()


class PgConnectionFactory:
    """Serves each accepted stream as a PostgreSQL connection on a new service."""

    def __init__(self, factory: Any) -> None:
        self.factory = factory
        self.authenticator = PgAuthenticator()

    async def __call__(self, stream: Any, addr: Any) -> None:
        service = await self.factory.create()
        await peek_for_sslrequest(stream, False)
        connection = PgWireConnection(stream, service)
        connection.authenticator = self.authenticator
        await connection.run()
        with contextlib.suppress(ConnectionError, OSError):
            await stream.flush()
        await stream.close()