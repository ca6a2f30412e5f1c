"""Databases that execute batches of queries, and services built on them."""

from __future__ import annotations

import abc
import asyncio
import concurrent.futures
import inspect
import logging
import os
import queue
import sqlite3
import threading
import time
from typing import Any, Callable, Optional, Union

from .query import (
    Column,
    ErrorCode,
    Params,
    Query,
    QueryError,
    QueryResult,
    ResultSet,
    parameter_names,
)
from .query_analysis import State, Statement

logger = logging.getLogger(__name__)

TXN_TIMEOUT_SECS = 5.0

_OPEN_RETRIES = 10
_OPEN_RETRY_DELAY = 0.01
_SQLITE_BUSY = 5


class Database(abc.ABC):
    """Something that executes batches of queries."""

    @abc.abstractmethod
    async def execute(self, queries: list[Query]) -> tuple[list[QueryResult], State]:
        """Run the queries; return one result per query and the state afterwards."""


class ConnectionState:
    """Tracks the transaction state of a connection and its timeout."""

    def __init__(self, txn_timeout: float = TXN_TIMEOUT_SECS) -> None:
        self.state = State.INIT
        self.timeout_deadline: Optional[float] = None
        self.txn_timeout = txn_timeout

    def deadline(self) -> Optional[float]:
        """The monotonic time at which the open transaction times out, if any."""
        return self.timeout_deadline

    def reset(self) -> None:
        self.state = State.INIT
        self.timeout_deadline = None

    def step(self, stmt: Statement) -> None:
        old_state = self.state
        self.state = self.state.step(stmt.kind)
        if old_state is State.INIT and self.state is State.TXN:
            self.timeout_deadline = time.monotonic() + self.txn_timeout
        elif old_state is State.TXN and self.state is State.INIT:
            self.reset()
        elif self.state is State.INVALID:
            raise RuntimeError("invalid state")


def _bind_arguments(sql: str, params: Params) -> Union[list, dict]:
    names = parameter_names(sql)
    values = params.bind(names)
    if names and all(name is not None and name[0] in ":@$" for name in names):
        return {name[1:]: value for name, value in zip(names, values)}
    return values


def execute_query(
    conn: sqlite3.Connection, stmt: Statement, params: Params
) -> ResultSet:
    """Run one statement and collect its result set; raise QueryError on failure."""
    try:
        arguments = _bind_arguments(stmt.stmt, params)
        cursor = conn.execute(stmt.stmt, arguments)
        try:
            # The sqlite3 module does not report declared column types.
            columns = [Column(name=desc[0]) for desc in cursor.description or ()]
            rows = [tuple(row) for row in cursor.fetchall()]
        finally:
            cursor.close()
    except (sqlite3.Error, sqlite3.Warning, ValueError) as exc:
        raise QueryError(ErrorCode.SQL_ERROR, exc) from exc
    return ResultSet(columns=columns, rows=rows)


def _is_busy(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None:
        return code & 0xFF == _SQLITE_BUSY
    return "locked" in str(exc) or "busy" in str(exc)


def open_db(path: Union[str, os.PathLike]) -> sqlite3.Connection:
    """Open a database in WAL mode, retrying a few times while it is busy."""
    retries = 0
    while True:
        conn = None
        try:
            conn = sqlite3.connect(
                os.fspath(path), isolation_level=None, check_same_thread=False
            )
            conn.execute("PRAGMA journal_mode=wal").fetchone()
            logger.debug("opened a connection with regular WAL at %s", path)
            return conn
        except sqlite3.OperationalError as exc:
            if conn is not None:
                conn.close()
            if _is_busy(exc) and retries < _OPEN_RETRIES:
                time.sleep(_OPEN_RETRY_DELAY)
                retries += 1
                continue
            raise


_Message = tuple[list[Query], concurrent.futures.Future]


class LibSqlDb(Database):
    """A database connection owned by a worker thread that serves query batches."""

    def __init__(
        self, path: Union[str, os.PathLike], txn_timeout: float = TXN_TIMEOUT_SECS
    ) -> None:
        self._conn = open_db(path)
        self._txn_timeout = txn_timeout
        self._queue: "queue.Queue[Optional[_Message]]" = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        state = ConnectionState(self._txn_timeout)
        timed_out = False
        try:
            while True:
                deadline = state.deadline()
                try:
                    if deadline is None:
                        message = self._queue.get()
                    else:
                        remaining = max(0.0, deadline - time.monotonic())
                        message = self._queue.get(timeout=remaining)
                except queue.Empty:
                    logger.warning("transaction timed out")
                    self._rollback()
                    timed_out = True
                    state.reset()
                    continue

                if message is None:
                    break
                queries, future = message
                if not future.set_running_or_notify_cancel():
                    continue

                if timed_out:
                    errors: list[QueryResult] = [
                        QueryError(ErrorCode.TX_TIMEOUT, "transaction timedout")
                        for _ in queries
                    ]
                    future.set_result((errors, state.state))
                    timed_out = False
                    continue

                try:
                    results = [self._handle_query(query, state) for query in queries]
                except BaseException as exc:
                    future.set_exception(exc)
                    raise
                future.set_result((results, state.state))
        finally:
            self._conn.close()

    def _handle_query(self, query: Query, state: ConnectionState) -> QueryResult:
        try:
            result = execute_query(self._conn, query.stmt, query.params)
        except QueryError as exc:
            return exc
        # The state only advances on success; this is how transaction timeouts are tracked.
        state.step(query.stmt)
        return result

    def _rollback(self) -> None:
        try:
            self._conn.execute("rollback transaction;")
        except sqlite3.Error as exc:
            logger.error("failed to rollback: %s", exc)

    async def execute(self, queries: list[Query]) -> tuple[list[QueryResult], State]:
        if self._closed or not self._thread.is_alive():
            raise RuntimeError("database is closed")
        future: concurrent.futures.Future = concurrent.futures.Future()
        self._queue.put((list(queries), future))
        return await asyncio.wrap_future(future)

    def close(self) -> None:
        """Stop the worker thread and close the connection."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._thread.join()


class DbService:
    """Runs query batches on one database and returns only the results."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def call(self, queries: list[Query]) -> list[QueryResult]:
        results, _state = await self.db.execute(queries)
        return results

    def __del__(self) -> None:
        logger.debug("connection closed")


class DbFactoryService:
    """Creates a DbService for each new connection from a database factory."""

    def __init__(self, factory: Callable[[], Any]) -> None:
        self.factory = factory

    async def create(self) -> DbService:
        db = self.factory()
        if inspect.isawaitable(db):
            db = await db
        return DbService(db)