"""Parsing of the JSON payload accepted by the HTTP endpoint."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .query import Params, Value

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1


class PayloadError(ValueError):
    """The request payload is not valid."""


@dataclass
class QueryObject:
    """One statement of a request and its parameters."""

    q: str
    params: Params = field(default_factory=Params)


@dataclass
class HttpQuery:
    """A request: the statements to run."""

    statements: list[QueryObject]


class _JsonObject(dict):
    """A decoded JSON object that remembers every key/value pair, duplicates included."""

    def __init__(self, pairs: list[tuple[str, Any]]) -> None:
        super().__init__(pairs)
        self.pairs = list(pairs)


def _pairs(obj: Mapping[str, Any]) -> list[tuple[str, Any]]:
    if isinstance(obj, _JsonObject):
        return obj.pairs
    return list(obj.items())


def _decode_blob(encoded: str) -> bytes:
    if not encoded.isascii() or "=" in encoded:
        raise PayloadError("invalid blob value: expected unpadded base64")
    try:
        data = base64.b64decode(encoded + "=" * (-len(encoded) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PayloadError(f"invalid blob value: {exc}") from exc
    if base64.b64encode(data).decode("ascii").rstrip("=") != encoded:
        raise PayloadError("invalid blob value: non-canonical base64")
    return data


def parse_value(obj: Any) -> Value:
    """Turn a JSON value into a SQL value; an object {"blob": base64} is a blob."""
    if obj is None:
        return None
    if isinstance(obj, bool):
        raise PayloadError(
            f"invalid type: boolean `{str(obj).lower()}`, expected a valid SQLite value"
        )
    if isinstance(obj, str):
        return obj
    if isinstance(obj, int):
        if not _I64_MIN <= obj <= _I64_MAX:
            raise PayloadError("integer out of range, expected a valid SQLite value")
        return obj
    if isinstance(obj, float):
        return obj
    if isinstance(obj, Mapping):
        pairs = _pairs(obj)
        if not pairs:
            raise PayloadError("missing field `blob`")
        key, encoded = pairs[0]
        if key != "blob":
            raise PayloadError(f"unknown field `{key}`, expected `blob`")
        if not isinstance(encoded, str):
            raise PayloadError("invalid type for field `blob`, expected a base64 string")
        if len(pairs) > 1:
            raise PayloadError("expected a single `blob` field")
        return _decode_blob(encoded)
    raise PayloadError(
        f"invalid type: {type(obj).__name__}, expected a valid SQLite value"
    )


def parse_params(obj: Any) -> Params:
    """Parameters from a JSON array (positional) or object (named)."""
    if isinstance(obj, list):
        return Params([(None, parse_value(value)) for value in obj])
    if isinstance(obj, Mapping):
        return Params([(key, parse_value(value)) for key, value in _pairs(obj)])
    raise PayloadError("invalid type, expected an array or a map of parameters")


def parse_query_object(obj: Any) -> QueryObject:
    """A statement given as a string, or as an object with `q` and `params`."""
    if isinstance(obj, str):
        return QueryObject(obj)
    if not isinstance(obj, Mapping):
        raise PayloadError("invalid type, expected a string or an object")

    q = None
    params = None
    seen: set[str] = set()
    for key, value in _pairs(obj):
        if key not in ("q", "params"):
            raise PayloadError(f"unknown field `{key}`, expected `q` or `params`")
        if key in seen:
            raise PayloadError(f"duplicate field `{key}`")
        seen.add(key)
        if key == "q":
            if not isinstance(value, str):
                raise PayloadError("invalid type for field `q`, expected a string")
            q = value
        else:
            params = parse_params(value)
    if q is None:
        raise PayloadError("missing field `q`")
    return QueryObject(q, params if params is not None else Params())


def _reject_constant(name: str) -> Any:
    raise PayloadError(f"invalid number: {name}")


def parse_http_query(data: Union[bytes, str]) -> HttpQuery:
    """Parse a request body; raise PayloadError if it is not a valid request."""
    try:
        obj = json.loads(
            data, object_pairs_hook=_JsonObject, parse_constant=_reject_constant
        )
    except ValueError as exc:
        raise PayloadError(str(exc)) from exc

    if isinstance(obj, list):
        if len(obj) != 1:
            raise PayloadError(
                f"invalid length {len(obj)}, expected struct HttpQuery with 1 element"
            )
        statements = obj[0]
    elif isinstance(obj, Mapping):
        found = [value for key, value in _pairs(obj) if key == "statements"]
        if not found:
            raise PayloadError("missing field `statements`")
        if len(found) > 1:
            raise PayloadError("duplicate field `statements`")
        statements = found[0]
    else:
        raise PayloadError("invalid type, expected struct HttpQuery")

    if not isinstance(statements, list):
        raise PayloadError("invalid type for field `statements`, expected a sequence")
    return HttpQuery([parse_query_object(item) for item in statements])