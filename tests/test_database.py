import asyncio
import time

import pytest

from sqld.database import (
    ConnectionState,
    DbFactoryService,
    DbService,
    LibSqlDb,
    execute_query,
    open_db,
)
from sqld.query import ErrorCode, Params, Query, QueryError, ResultSet
from sqld.query_analysis import State, Statement


def stmt(sql):
    return next(Statement.parse(sql))


def query(sql, params=None):
    return Query(stmt(sql), Params(list(params or [])))


@pytest.fixture
def conn(tmp_path):
    connection = open_db(tmp_path / "test.db")
    yield connection
    connection.close()


@pytest.fixture
def db(tmp_path):
    database = LibSqlDb(tmp_path / "test.db")
    yield database
    database.close()


def test_open_db_uses_wal(conn):
    assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"


def test_execute_query_positional_params(conn):
    execute_query(conn, stmt("CREATE TABLE t (a INTEGER, b TEXT)"), Params())
    execute_query(
        conn,
        stmt("INSERT INTO t VALUES (?, ?)"),
        Params([(None, 42), (None, "hello")]),
    )
    result = execute_query(conn, stmt("SELECT a, b FROM t"), Params())
    assert [c.name for c in result.columns] == ["a", "b"]
    assert result.rows == [(42, "hello")]


def test_execute_query_named_params(conn):
    execute_query(conn, stmt("CREATE TABLE t (a, b)"), Params())
    execute_query(
        conn,
        stmt("INSERT INTO t VALUES (:a, :b)"),
        Params([("b", b"\x01\x02"), ("a", 1.5)]),
    )
    result = execute_query(conn, stmt("SELECT a, b FROM t"), Params())
    assert result.rows == [(1.5, b"\x01\x02")]


def test_execute_query_write_has_no_columns(conn):
    result = execute_query(conn, stmt("CREATE TABLE t (a)"), Params())
    assert result == ResultSet.empty()


def test_execute_query_sql_error(conn):
    with pytest.raises(QueryError) as info:
        execute_query(conn, stmt("SELECT * FROM missing"), Params())
    assert info.value.code is ErrorCode.SQL_ERROR


def test_connection_state_transitions():
    state = ConnectionState(txn_timeout=10)
    assert state.deadline() is None
    before = time.monotonic()
    state.step(stmt("BEGIN"))
    assert state.state is State.TXN
    assert state.deadline() >= before + 10
    state.step(stmt("SELECT 1"))
    assert state.state is State.TXN
    state.step(stmt("COMMIT"))
    assert state.state is State.INIT
    assert state.deadline() is None


def test_connection_state_invalid_raises():
    state = ConnectionState()
    with pytest.raises(RuntimeError):
        state.step(stmt("COMMIT"))


@pytest.mark.asyncio
async def test_libsql_db_batch(db):
    results, state = await db.execute(
        [
            query("CREATE TABLE t (a)"),
            query("INSERT INTO t VALUES (?)", [(None, 7)]),
            query("SELECT a FROM t"),
        ]
    )
    assert state is State.INIT
    assert len(results) == 3
    assert results[2].rows == [(7,)]


@pytest.mark.asyncio
async def test_libsql_db_reports_errors_per_query(db):
    results, state = await db.execute(
        [query("SELECT * FROM nope"), query("SELECT 1")]
    )
    assert isinstance(results[0], QueryError)
    assert results[0].code is ErrorCode.SQL_ERROR
    assert results[1].rows == [(1,)]
    assert state is State.INIT


@pytest.mark.asyncio
async def test_libsql_db_tracks_transaction(db):
    _, state = await db.execute([query("BEGIN")])
    assert state is State.TXN
    _, state = await db.execute([query("COMMIT")])
    assert state is State.INIT


@pytest.mark.asyncio
async def test_libsql_db_transaction_timeout(tmp_path):
    database = LibSqlDb(tmp_path / "timeout.db", txn_timeout=0.1)
    try:
        await database.execute([query("CREATE TABLE t (a)")])
        _, state = await database.execute(
            [query("BEGIN"), query("INSERT INTO t VALUES (1)")]
        )
        assert state is State.TXN
        await asyncio.sleep(0.4)
        results, state = await database.execute([query("SELECT a FROM t")])
        assert results[0].code is ErrorCode.TX_TIMEOUT
        assert str(results[0]) == "transaction timedout"
        assert state is State.INIT
        results, _ = await database.execute([query("SELECT a FROM t")])
        assert results[0].rows == []
    finally:
        database.close()


@pytest.mark.asyncio
async def test_closed_db_rejects_queries(tmp_path):
    database = LibSqlDb(tmp_path / "closed.db")
    database.close()
    with pytest.raises(RuntimeError):
        await database.execute([query("SELECT 1")])


@pytest.mark.asyncio
async def test_db_service_returns_results(db):
    service = DbService(db)
    results = await service.call([query("SELECT 3")])
    assert results[0].rows == [(3,)]


@pytest.mark.asyncio
async def test_db_factory_service_async_factory(tmp_path):
    created = []

    async def factory():
        database = LibSqlDb(tmp_path / "factory.db")
        created.append(database)
        return database

    service = await DbFactoryService(factory).create()
    try:
        assert service.db is created[0]
        results = await service.call([query("SELECT 5")])
        assert results[0].rows == [(5,)]
    finally:
        created[0].close()


@pytest.mark.asyncio
async def test_db_factory_service_sync_factory(db):
    service = await DbFactoryService(lambda: db).create()
    assert service.db is db