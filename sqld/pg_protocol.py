"""PostgreSQL wire protocol: message framing, startup and query handling."""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Union

from .query import (
    Column,
    ErrorCode,
    Params,
    Query,
    QueryError,
    ResultSet,
    Value,
)
from .query_analysis import Statement

PROTOCOL_VERSION = 196608
SSL_REQUEST_CODE = 80877103
SSL_REQUEST_SIZE = 8
READY_STATUS_IDLE = "I"

OID_BYTEA = 17
OID_INT8 = 20
OID_TEXT = 25
OID_FLOAT8 = 701
OID_UNKNOWN = 705
OID_VARCHAR = 1043

SERVER_PARAMETERS = (
    ("server_version", "14.0"),
    ("server_encoding", "UTF8"),
    ("client_encoding", "UTF8"),
    ("DateStyle", "ISO YMD"),
    ("integer_datetimes", "on"),
)

_MAX_MESSAGE_SIZE = 1 << 30
_PEEK_RETRY_DELAY = 0.001


class PgError(Exception):
    """An error to report to the client as an ErrorResponse."""

    def __init__(self, severity: str, code: str, message: object) -> None:
        self.severity = severity
        self.code = code
        self.message = str(message)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    @property
    def fatal(self) -> bool:
        return self.severity == "FATAL"


Response = Union[ResultSet, PgError]


def query_error_to_pg(error: QueryError) -> Exception:
    """The wire-level error for a query error: user errors, or I/O errors."""
    if error.code in (ErrorCode.SQL_ERROR, ErrorCode.TX_TIMEOUT):
        return PgError("ERROR", "XX000", error.msg)
    if error.code is ErrorCode.TX_BUSY:
        return BlockingIOError(error.msg)
    return OSError(error.msg)


@dataclass(frozen=True)
class FrontendMessage:
    """A message from the client; the startup message has an empty tag."""

    tag: str
    body: bytes


async def _read_head(stream: Any, size: int) -> Optional[bytes]:
    try:
        return await stream.read_exact(size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise


async def read_startup(stream: Any) -> Optional[FrontendMessage]:
    """Read an untagged startup message; None at the end of the stream."""
    head = await _read_head(stream, 4)
    if head is None:
        return None
    (length,) = struct.unpack("!i", head)
    if length < 8 or length > _MAX_MESSAGE_SIZE:
        raise PgError("FATAL", "XX000", f"invalid startup message length: {length}")
    body = await stream.read_exact(length - 4)
    return FrontendMessage("", bytes(body))


async def read_message(stream: Any) -> Optional[FrontendMessage]:
    """Read a tagged message; None at the end of the stream."""
    head = await _read_head(stream, 5)
    if head is None:
        return None
    tag = chr(head[0])
    (length,) = struct.unpack_from("!i", head, 1)
    if length < 4 or length > _MAX_MESSAGE_SIZE:
        raise PgError("FATAL", "XX000", f"invalid message length: {length}")
    body = await stream.read_exact(length - 4) if length > 4 else b""
    return FrontendMessage(tag, bytes(body))


def _message(tag: bytes, body: bytes = b"") -> bytes:
    return tag + struct.pack("!i", len(body) + 4) + body


def _cstr(text: str) -> bytes:
    return text.encode("utf-8") + b"\0"


def encode_authentication_ok() -> bytes:
    return _message(b"R", struct.pack("!i", 0))


def encode_parameter_status(name: str, value: str) -> bytes:
    return _message(b"S", _cstr(name) + _cstr(value))


def encode_row_description(columns: Sequence[Column]) -> bytes:
    """Describe result columns, all in text format."""
    body = bytearray(struct.pack("!h", len(columns)))
    for column in columns:
        oid = column.ty.pg_oid() if column.ty is not None else OID_UNKNOWN
        typlen = 8 if oid in (OID_INT8, OID_FLOAT8) else -1
        body += _cstr(column.name)
        body += struct.pack("!ihihih", 0, 0, oid, typlen, -1, 0)
    return _message(b"T", bytes(body))


def encode_data_row(values: Iterable[Optional[Union[str, bytes]]]) -> bytes:
    """A row of text-encoded fields; None is NULL."""
    values = list(values)
    body = bytearray(struct.pack("!h", len(values)))
    for value in values:
        if value is None:
            body += struct.pack("!i", -1)
            continue
        data = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        body += struct.pack("!i", len(data)) + data
    return _message(b"D", bytes(body))


def encode_command_complete(tag: str) -> bytes:
    return _message(b"C", _cstr(tag))


def encode_error_response(severity: str, code: str, message: str) -> bytes:
    body = b"S" + _cstr(severity) + b"C" + _cstr(code) + b"M" + _cstr(message) + b"\0"
    return _message(b"E", body)


def encode_ready_for_query(status: str = READY_STATUS_IDLE) -> bytes:
    return _message(b"Z", status.encode("ascii"))


def parse_params(types: Sequence[int], data: Sequence[Optional[bytes]]) -> Params:
    """Decode binary parameter values by their type OIDs."""
    params = Params()
    for raw, ty in zip(data, types):
        value: Value
        try:
            if raw is None:
                value = None
            elif ty == OID_VARCHAR:
                value = bytes(raw).decode("utf-8")
            elif ty == OID_INT8:
                (value,) = struct.unpack("!q", bytes(raw[:8]))
            elif ty == OID_BYTEA:
                value = bytes(raw)
            elif ty == OID_FLOAT8:
                (value,) = struct.unpack("!d", bytes(raw[:8]))
            else:
                raise ValueError(f"unsupported parameter type: {ty}")
        except (struct.error, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid parameter value: {exc}") from exc
        params.push(None, value)
    return params


async def peek_for_sslrequest(stream: Any, ssl_supported: bool) -> bool:
    """Answer an SSL request if the client opens with one; True if SSL was accepted."""
    while True:
        buf = await stream.peek(SSL_REQUEST_SIZE)
        if not buf:
            return False
        if len(buf) == SSL_REQUEST_SIZE:
            _length, code = struct.unpack("!ii", buf)
            if code == SSL_REQUEST_CODE:
                await stream.read_exact(SSL_REQUEST_SIZE)
                if ssl_supported:
                    await stream.write(b"S")
                    return True
                await stream.write(b"N")
            return False
        await asyncio.sleep(_PEEK_RETRY_DELAY)


class PgAuthenticator:
    """Accepts every client without asking for credentials."""

    async def authenticate(self, stream: Any, msg: FrontendMessage) -> dict[str, str]:
        """Complete the startup; return the parameters the client sent."""
        if msg.tag or len(msg.body) < 4:
            raise PgError("FATAL", "XX000", "expected a startup message")
        (version,) = struct.unpack_from("!i", msg.body)
        if version != PROTOCOL_VERSION:
            raise PgError("FATAL", "XX000", f"unsupported protocol version: {version}")
        parameters: dict[str, str] = {}
        fields = iter(msg.body[4:].split(b"\0"))
        for key in fields:
            if not key:
                break
            value = next(fields, b"")
            parameters[key.decode("utf-8", "replace")] = value.decode("utf-8", "replace")

        out = encode_authentication_ok()
        out += b"".join(encode_parameter_status(k, v) for k, v in SERVER_PARAMETERS)
        out += encode_ready_for_query(READY_STATUS_IDLE)
        await stream.write(out)
        await stream.flush()
        return parameters


def _to_response(result: object) -> Response:
    if isinstance(result, ResultSet):
        return result
    return PgError("ERROR", "XX000", str(result))


class QueryHandler:
    """Runs queries on a service, one batch at a time."""

    def __init__(self, service: Any) -> None:
        self.service = service
        self._lock = asyncio.Lock()

    async def _handle_queries(self, queries: list[Query]) -> list[Response]:
        async with self._lock:
            try:
                results = await self.service.call(queries)
            except Exception as exc:
                raise PgError("ERROR", "XX000", str(exc)) from exc
        return [_to_response(result) for result in results]

    async def do_query(self, sql: str) -> list[Response]:
        """Run every statement of a simple query."""
        try:
            stmts = list(Statement.parse(sql))
        except ValueError as exc:
            raise PgError("ERROR", "XX000", str(exc)) from exc
        return await self._handle_queries([Query(stmt, Params()) for stmt in stmts])

    async def do_extended_query(
        self,
        statement: str,
        param_types: Sequence[int],
        params: Sequence[Optional[bytes]],
    ) -> Response:
        """Run the first statement of a prepared query with bound parameters."""
        try:
            stmt = next(Statement.parse(statement), None) or Statement.empty()
            query_params = parse_params(param_types, params)
        except ValueError as exc:
            raise PgError("ERROR", "XX000", str(exc)) from exc
        responses = await self._handle_queries([Query(stmt, query_params)])
        if len(responses) != 1:
            raise RuntimeError(f"expected one response, got {len(responses)}")
        return responses[0]