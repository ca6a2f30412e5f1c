"""The HTTP endpoint: JSON batches of statements in, JSON result sets out."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import math
from typing import Any, AsyncIterator, Iterable, Sequence

from aiohttp import web

from .http_auth import Authorizer
from .http_types import PayloadError, QueryObject, parse_http_query
from .query import Query, QueryResult, Value
from .query_analysis import State, Statement, final_state

logger = logging.getLogger(__name__)


def value_to_json(value: Value) -> Any:
    """A SQL value as JSON; blobs become unpadded base64 strings."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("invalid float value")
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii").rstrip("=")
    raise TypeError(f"unsupported value type: {type(value).__name__}")


def _dumps(obj: Any) -> bytes:
    return json.dumps(
        obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False, allow_nan=False
    ).encode("utf-8")


def query_results_to_json(results: Iterable[QueryResult]) -> bytes:
    """Encode results: each result set is a list of row objects, each error an object."""
    out = []
    for result in results:
        if isinstance(result, Exception):
            out.append({"error": str(result)})
            continue
        names = [column.name for column in result.columns]
        out.append(
            [
                {name: value_to_json(value) for value, name in zip(row, names)}
                for row in result.rows
            ]
        )
    return _dumps(out)


def parse_queries(objects: Iterable[QueryObject]) -> list[Query]:
    """Turn request statements into queries; interactive transactions are refused."""
    queries = []
    for obj in objects:
        stmt = next(Statement.parse(obj.q), None) or Statement.empty()
        queries.append(Query(stmt=stmt, params=obj.params))

    # An invalid final state is left for the database to report.
    if final_state(State.INIT, (query.stmt for query in queries)) is State.TXN:
        raise ValueError("interactive transaction not allowed in HTTP queries")
    return queries


class _ServicePool:
    """Reuses idle services and creates new ones from the factory when all are busy."""

    def __init__(self, factory: Any) -> None:
        self._factory = factory
        self._idle: list[Any] = []

    @contextlib.asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        service = self._idle.pop() if self._idle else await self._factory.create()
        try:
            yield service
        finally:
            self._idle.append(service)


def _error(msg: str, status: int) -> web.Response:
    return web.Response(
        status=status, body=_dumps({"error": msg}), content_type="application/json"
    )


async def _handle_query(request: web.Request, pool: _ServicePool) -> web.Response:
    body = await request.read()
    try:
        payload = parse_http_query(body)
    except PayloadError as exc:
        return _error(str(exc), 400)

    try:
        queries = parse_queries(payload.statements)
    except ValueError as exc:
        return _error(str(exc), 400)

    try:
        async with pool.acquire() as service:
            results: Sequence[QueryResult] = await service.call(queries)
    except Exception:
        logger.exception("failed to execute HTTP queries")
        return _error("internal error", 500)

    return web.Response(
        body=query_results_to_json(results), content_type="application/json"
    )


def create_app(authorizer: Authorizer, service_factory: Any) -> web.Application:
    """An application serving query batches posted to '/'."""
    pool = _ServicePool(service_factory)

    async def handle(request: web.Request) -> web.Response:
        if not authorizer.is_authorized(request.headers):
            return web.Response(status=401)
        if request.method == "POST" and request.path == "/":
            return await _handle_query(request, pool)
        return web.Response(status=404)

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handle)
    return app


async def run_http(
    host: str, port: int, authorizer: Authorizer, service_factory: Any
) -> None:
    """Serve HTTP requests on host:port until cancelled."""
    runner = web.AppRunner(create_app(authorizer, service_factory))
    await runner.setup()
    try:
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info("listening for HTTP requests on %s:%s", host, port)
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()