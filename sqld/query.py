"""Query values, result sets, parameters and errors."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Sequence, Union

from .query_analysis import Statement

Value = Union[None, int, float, str, bytes]


class ColumnType(enum.Enum):
    """The storage class of a result column."""

    INTEGER = "integer"
    BLOB = "blob"
    REAL = "real"
    TEXT = "text"
    NULL = "null"
    NUMERIC = "numeric"
    UNKNOWN = "unknown"

    @classmethod
    def from_decltype(cls, decltype: Optional[str]) -> Optional["ColumnType"]:
        """Map a declared column type to a column type; None stays None."""
        if decltype is None:
            return None
        return _DECLTYPES.get(decltype.lower(), cls.UNKNOWN)

    def pg_oid(self) -> int:
        """The PostgreSQL type OID used to describe a column of this type."""
        return _PG_OIDS[self]


_DECLTYPES = {
    **dict.fromkeys(
        (
            "integer",
            "int",
            "tinyint",
            "smallint",
            "mediumint",
            "bigint",
            "unsigned big int",
            "int2",
            "int8",
        ),
        ColumnType.INTEGER,
    ),
    **dict.fromkeys(("real", "double", "double precision", "float"), ColumnType.REAL),
    **dict.fromkeys(
        (
            "text",
            "character",
            "varchar",
            "varying character",
            "nchar",
            "native character",
            "nvarchar",
            "clob",
        ),
        ColumnType.TEXT,
    ),
    "blob": ColumnType.BLOB,
    **dict.fromkeys(
        ("numeric", "decimal", "boolean", "date", "datetime"), ColumnType.NUMERIC
    ),
}

_PG_INT8 = 20
_PG_BYTEA = 17
_PG_FLOAT8 = 701
_PG_NUMERIC = 1700
_PG_TEXT = 25
_PG_UNKNOWN = 705

_PG_OIDS = {
    ColumnType.INTEGER: _PG_INT8,
    ColumnType.BLOB: _PG_BYTEA,
    ColumnType.REAL: _PG_FLOAT8,
    ColumnType.NUMERIC: _PG_NUMERIC,
    ColumnType.TEXT: _PG_TEXT,
    ColumnType.NULL: _PG_UNKNOWN,
    ColumnType.UNKNOWN: _PG_UNKNOWN,
}


@dataclass
class Column:
    """A result column: its name and, when declared, its type."""

    name: str
    ty: Optional[ColumnType] = None


@dataclass
class ResultSet:
    """Columns and rows returned by one statement."""

    columns: list[Column] = field(default_factory=list)
    rows: list[tuple] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ResultSet":
        return cls()


class ErrorCode(enum.Enum):
    SQL_ERROR = "sql_error"
    TX_BUSY = "tx_busy"
    TX_TIMEOUT = "tx_timeout"
    INTERNAL = "internal"


class QueryError(Exception):
    """A failed query, with a category and a message."""

    def __init__(self, code: ErrorCode, msg: object) -> None:
        self.code = ErrorCode(code)
        self.msg = str(msg)
        super().__init__(self.msg)

    def __str__(self) -> str:
        return self.msg


QueryResult = Union[ResultSet, QueryError]


@dataclass
class Params:
    """Query parameters, each with an optional name."""

    params: list[tuple[Optional[str], Value]] = field(default_factory=list)

    def push(self, name: Optional[str], value: Value) -> None:
        self.params.append((name, value))

    def get_name(self, key: str) -> Value:
        """Look up a parameter by its SQL name, prefix included ('$a', ':a', '?1')."""
        stripped = key[1:]
        if stripped.isdigit() and stripped.isascii():
            return self.get_pos(int(stripped))
        for name, value in self.params:
            if name == stripped:
                return value
        raise KeyError(key)

    def get_pos(self, index: int) -> Value:
        """Look up a parameter by its 1-based position."""
        if index < 1 or index > len(self.params):
            raise IndexError(f"no parameter at position {index}")
        return self.params[index - 1][1]

    def bind(self, names: Sequence[Optional[str]]) -> list[Value]:
        """Values for a statement's parameters, given each slot's name (None if unnamed).

        Parameters that cannot be found are left NULL.
        """
        values: list[Value] = []
        for index, name in enumerate(names, start=1):
            try:
                value = self.get_name(name) if name is not None else self.get_pos(index)
            except LookupError:
                value = None
            values.append(value)
        return values


@dataclass
class Query:
    stmt: Statement
    params: Params = field(default_factory=Params)


def _is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$" or ord(ch) > 127


def _skip_quoted(sql: str, start: int, quote: str) -> int:
    pos = start + 1
    while True:
        end = sql.find(quote, pos)
        if end < 0:
            raise ValueError(f"unterminated quoted literal at offset {start}")
        if sql.startswith(quote * 2, end):
            pos = end + 2
            continue
        return end + 1


def parameter_names(sql: str) -> list[Optional[str]]:
    """The name of every parameter slot of a statement, in index order.

    Anonymous '?' slots and unused slots are None; named slots keep their prefix.
    """
    slots: dict[int, Optional[str]] = {}
    named: dict[str, int] = {}
    count = 0
    pos, length = 0, len(sql)
    while pos < length:
        ch = sql[pos]
        if sql.startswith("--", pos):
            end = sql.find("\n", pos)
            pos = length if end < 0 else end + 1
        elif sql.startswith("/*", pos):
            end = sql.find("*/", pos + 2)
            pos = length if end < 0 else end + 2
        elif ch in "'\"`":
            pos = _skip_quoted(sql, pos, ch)
        elif ch == "[":
            end = sql.find("]", pos + 1)
            if end < 0:
                raise ValueError(f"unterminated quoted identifier at offset {pos}")
            pos = end + 1
        elif ch == "?":
            end = pos + 1
            while end < length and sql[end].isdigit():
                end += 1
            if end > pos + 1:
                index = int(sql[pos + 1 : end])
                if index < 1:
                    raise ValueError(f"invalid parameter index: {sql[pos:end]}")
                count = max(count, index)
                if slots.get(index) is None:
                    slots[index] = sql[pos:end]
            else:
                count += 1
                slots[count] = None
            pos = end
        elif ch in ":@$" and pos + 1 < length and _is_word_char(sql[pos + 1]):
            end = pos + 1
            while end < length and _is_word_char(sql[end]):
                end += 1
            name = sql[pos:end]
            if name not in named:
                count += 1
                named[name] = count
                slots[count] = name
            pos = end
        elif _is_word_char(ch):
            while pos < length and _is_word_char(sql[pos]):
                pos += 1
        else:
            pos += 1
    return [slots.get(index) for index in range(1, count + 1)]


def _format_real(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def encode_text_value(value: Value) -> Optional[str]:
    """Render a value in the text format of a result row; NULL is None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_real(value)
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    raise TypeError(f"unsupported value type: {type(value).__name__}")