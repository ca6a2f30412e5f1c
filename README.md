# sqld

`sqld` is a small SQL daemon. It keeps an SQLite database on disk (opened in
WAL journal mode) and lets clients reach it in three ways:

- over the PostgreSQL wire protocol, so `psql` and ordinary PostgreSQL
  drivers can send queries to it;
- over the same protocol carried in WebSocket binary frames;
- over a plain HTTP/JSON endpoint.

## Installing

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Running the server

```
sqld --db-path data.db --pg-listen-addr 127.0.0.1:5432
```

Then connect with any PostgreSQL client:

```
psql -h 127.0.0.1 -p 5432
```

Options:

| Option | Environment | Default | Meaning |
| --- | --- | --- | --- |
| `--db-path`, `-d` | `SQLD_DB_PATH` | `iku.db` | SQLite database file |
| `--pg-listen-addr`, `-p` | `SQLD_PG_LISTEN_ADDR` | `127.0.0.1:5432` | address of the PostgreSQL listener |
| `--ws-listen-addr`, `-w` | `SQLD_WS_LISTEN_ADDR` | none | address of the PostgreSQL-over-WebSocket listener |
| `--http-listen-addr` | `SQLD_HTTP_LISTEN_ADDR` | none | address of the HTTP listener |
| `--http-auth` | `SQLD_HTTP_AUTH` | none | HTTP authorization setting, see below |
| `--backend`, `-b` | | `libsql` | storage backend; `libsql` is the only choice |
| `--enable-http-console` | | off | accepted, but only logs that no console page is available |
| `--grpc-listen-addr` | `SQLD_GRPC_LISTEN_ADDR` | none | accepted, but the server then refuses to start |
| `--primary-grpc-url` | `SQLD_PRIMARY_GRPC_URL` | none | accepted, but the server then refuses to start |

Addresses are written `host:port` with a literal IP address (`[::1]:5432`
for IPv6). `--grpc-listen-addr` and `--primary-grpc-url` cannot be given
together. The log level is read from `SQLD_LOG_LEVEL` (default `INFO`).

## Statements

Every SQL text is split into statements, and each statement is classified
before it runs. Accepted are `SELECT`, `VALUES`, `INSERT`, `REPLACE`,
`UPDATE`, `DELETE`, `WITH …`, `CREATE [TEMP] TABLE`, `DROP TABLE`,
`EXPLAIN …`, `BEGIN`, `COMMIT`, `END` and `ROLLBACK`. Any other statement
(for example `CREATE INDEX` or `PRAGMA`) is refused with the error
`unsupported statement`.

## The PostgreSQL endpoint

Clients are accepted without a password. Simple queries run every statement
of the query text; extended queries (Parse/Bind/Describe/Execute) run the
first statement of the prepared text, with binary parameters of type
`varchar`, `int8`, `bytea` or `float8`. Result values are sent in text form,
blobs as hexadecimal; result columns are described with the `unknown` type.

The WebSocket listener carries the same byte stream in binary frames. It
expects frames straight away on the TCP connection; there is no HTTP upgrade
handshake.

## The HTTP endpoint

Start the server with an HTTP listener:

```
sqld --http-listen-addr 127.0.0.1:8080
```

Send a `POST /` with a JSON body holding a list of statements. A statement is
either a bare string or an object with the SQL text in `q` and its parameters
in `params`, given as a list (positional) or an object (named). Only the
first statement of each entry is run.

```json
{
  "statements": [
    "create table if not exists users (id integer, name text)",
    {"q": "insert into users values (?, ?)", "params": [1, "alice"]},
    {"q": "select * from users where name = :name", "params": {"name": "alice"}}
  ]
}
```

Blobs are passed as `{"blob": "<base64 without padding>"}`. The reply is a
JSON list with one entry per statement: a list of rows, each row an object
keyed by column name (blobs as unpadded base64), or `{"error": "..."}` when
that statement failed. A malformed body, an unsupported statement, or a
transaction opened and not closed in the same request is refused with status
400. Any other method or path gets status 404.

### Authorization

`--http-auth` takes one of:

- `always` — every request is allowed (the same as leaving the option out);
- `basic:<credentials>` — a request must carry
  `Authorization: Basic <credentials>`; the comparison ignores case.

For example, `--http-auth basic:token` admits requests sent with the header
`Authorization: Basic token`. Requests that are not admitted get status 401.

## Transactions

Each PostgreSQL connection has its own database connection, and a `BEGIN`
keeps the transaction open across queries. If a transaction stays open for
more than five seconds without a new batch of queries, it is rolled back and
every query of the next batch on that connection fails with
`transaction timedout`.

## Using it as a library

- `sqld.query_analysis.Statement.parse` splits SQL text into statements and
  classifies them; `final_state` follows the transaction state across them.
- `sqld.database.LibSqlDb` runs batches of `sqld.query.Query` objects on a
  dedicated connection thread; `DbFactoryService` and `DbService` wrap it.
- `sqld.wal_logger.WalLogger` is a file of fixed-size log slots holding
  `Frame` and `Commit` entries; `WalLoggerHook` buffers frames and appends
  them when a commit is reported.
- `sqld.http_server.create_app` builds the aiohttp application of the HTTP
  endpoint.
- `sqld.app.run_server` starts all listeners from a `sqld.app.Config`.

## What it does not do

- No replication: the server cannot act as a primary for other nodes or
  forward writes to one; the RPC options only make it exit with an error.
- The server does not write a frame log of its commits; `WalLogger` is
  available as a library only.
- No TLS: an SSL request from a PostgreSQL client is answered with `N`.
- No PostgreSQL password authentication.
- No HTTP console page.
- Declared column types are not reported to clients.