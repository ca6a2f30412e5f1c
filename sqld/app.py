"""Wiring of the database service to the PostgreSQL and HTTP front ends."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from .database import DbFactoryService, LibSqlDb
from .http_auth import Authorizer, parse_auth
from .http_server import run_http
from .pg_service import PgConnectionFactory
from .server import Server

logger = logging.getLogger(__name__)

SocketAddr = tuple[str, int]


class Backend(enum.Enum):
    """The storage backend used by the server."""

    LIBSQL = "libsql"


@dataclass
class Config:
    """Everything the server needs to start."""

    db_path: Union[str, os.PathLike] = Path("iku.db")
    tcp_addr: SocketAddr = ("127.0.0.1", 5432)
    ws_addr: Optional[SocketAddr] = None
    http_addr: Optional[SocketAddr] = None
    http_auth: Optional[str] = None
    enable_http_console: bool = False
    backend: Backend = Backend.LIBSQL
    writer_rpc_addr: Optional[str] = None
    rpc_server_addr: Optional[SocketAddr] = None


async def run_service(service: Any, config: Config) -> None:
    """Serve the PostgreSQL listeners and, if configured, the HTTP endpoint.

    Returns when every front end has stopped; raises the first error any of them hits.
    """
    authorizer: Optional[Authorizer] = None
    if config.http_addr is not None:
        authorizer = parse_auth(config.http_auth)
        if config.enable_http_console:
            logger.warning("the HTTP console page is not available")

    server = Server()
    tasks: list[asyncio.Task] = []
    try:
        await server.bind_tcp(*config.tcp_addr)
        if config.ws_addr is not None:
            await server.bind_ws(*config.ws_addr)

        tasks.append(asyncio.create_task(server.serve(PgConnectionFactory(service))))
        if config.http_addr is not None:
            host, port = config.http_addr
            tasks.append(
                asyncio.create_task(run_http(host, port, authorizer, service))
            )

        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(
                pending, return_when=asyncio.FIRST_EXCEPTION
            )
            for task in done:
                task.result()
    finally:
        server.close()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def run_server(config: Config) -> None:
    """Run the server described by `config` until it exits.

    Errors of the running service are logged, not raised; a configuration that
    asks for features this server lacks raises ValueError.
    """
    logger.debug("Backend: %s", config.backend)
    if not isinstance(config.backend, Backend):
        raise ValueError(f"unknown backend: {config.backend!r}")
    if config.writer_rpc_addr is not None:
        raise ValueError("replicating from a primary node is not supported")
    if config.rpc_server_addr is not None:
        raise ValueError("the inter-node RPC server is not supported")

    db_path = config.db_path

    async def db_factory() -> LibSqlDb:
        return await asyncio.to_thread(LibSqlDb, db_path)

    service = DbFactoryService(db_factory)
    try:
        await run_service(service, config)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.error("Server exited with error: %s", exc)
    else:
        logger.info("Server exited")