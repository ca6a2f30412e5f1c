"""Command-line entry point of the SQL daemon."""

from __future__ import annotations

import argparse
import asyncio
import ipaddress
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from .app import Backend, Config, run_server


def _socket_addr(text: str) -> tuple[str, int]:
    host, sep, port_text = text.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"invalid socket address syntax: {text}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        version = 6
    else:
        version = 4
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid socket address syntax: {text}"
        ) from None
    if address.version != version:
        raise argparse.ArgumentTypeError(f"invalid socket address syntax: {text}")
    if not port_text.isdigit() or int(port_text) > 65535:
        raise argparse.ArgumentTypeError(f"invalid socket address syntax: {text}")
    return str(address), int(port_text)


def _build_parser() -> argparse.ArgumentParser:
    env = os.environ
    parser = argparse.ArgumentParser(prog="sqld", description="SQL daemon")
    parser.add_argument(
        "-d", "--db-path", default=env.get("SQLD_DB_PATH", "iku.db"), type=Path
    )
    parser.add_argument(
        "-p",
        "--pg-listen-addr",
        default=env.get("SQLD_PG_LISTEN_ADDR", "127.0.0.1:5432"),
        type=_socket_addr,
        help="The address and port the PostgreSQL server listens to.",
    )
    parser.add_argument(
        "-w",
        "--ws-listen-addr",
        default=env.get("SQLD_WS_LISTEN_ADDR"),
        type=_socket_addr,
        help="The address and port the PostgreSQL over WebSocket server listens to.",
    )
    parser.add_argument(
        "--grpc-listen-addr",
        default=env.get("SQLD_GRPC_LISTEN_ADDR"),
        type=_socket_addr,
        help="The address and port the inter-node RPC protocol listens to.",
    )
    parser.add_argument(
        "--primary-grpc-url",
        default=env.get("SQLD_PRIMARY_GRPC_URL"),
        help="The gRPC URL of the primary node to connect to for writes.",
    )
    parser.add_argument(
        "-b",
        "--backend",
        default=Backend.LIBSQL.value,
        choices=[backend.value for backend in Backend],
    )
    parser.add_argument(
        "--http-listen-addr",
        default=env.get("SQLD_HTTP_LISTEN_ADDR"),
        type=_socket_addr,
    )
    parser.add_argument("--http-auth", default=env.get("SQLD_HTTP_AUTH"))
    parser.add_argument("--enable-http-console", action="store_true")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    """Build the server configuration from arguments and SQLD_* environment variables."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.grpc_listen_addr is not None and args.primary_grpc_url is not None:
        parser.error("--grpc-listen-addr cannot be used with --primary-grpc-url")
    return Config(
        db_path=args.db_path,
        tcp_addr=args.pg_listen_addr,
        ws_addr=args.ws_listen_addr,
        http_addr=args.http_listen_addr,
        http_auth=args.http_auth,
        enable_http_console=args.enable_http_console,
        backend=Backend(args.backend),
        writer_rpc_addr=args.primary_grpc_url,
        rpc_server_addr=args.grpc_listen_addr,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the daemon; return the process exit status."""
    logging.basicConfig(level=os.environ.get("SQLD_LOG_LEVEL", "INFO").upper())
    config = parse_args(argv)
    try:
        asyncio.run(run_server(config))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())