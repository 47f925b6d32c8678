#!/usr/bin/env python3
"""
Entitymesh CLI - Main entry point.

Usage:
    entitymesh servers                                  # Log in, print auth states
    entitymesh query articles --limit 5                 # Query an entity
    entitymesh query articles --where status=published --fields id,title

Configuration comes from entitymesh.yml (or --config / ENTITYMESH_CONFIG_PATH)
with credentials overridable through ENTITYMESH_<SERVER>_{URL,LOGIN,PASSWORD,TOKEN}.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, List, Optional

from .. import __version__
from ..broker import Broker
from ..core.builder import qb
from ..core.config import BrokerConfig, Settings, apply_env_credentials, load_config
from ..core.errors import DBError
from ..runtime import EntityService, ServiceOptions

logger = logging.getLogger(__name__)


def _load(args: argparse.Namespace) -> tuple[Optional[BrokerConfig], Settings]:
    settings = Settings()
    path = args.config or settings.config_path
    config = load_config(path)
    if config is None:
        print(f"Error: {path} not found.")
        return None, settings
    return apply_env_credentials(config), settings


def _broker(config: BrokerConfig, settings: Settings) -> Broker:
    return Broker(
        config,
        server_suffix=settings.server_suffix or None,
        login_poll_interval=settings.login_poll_interval,
        login_tries=settings.login_tries,
    )


def parse_where(conditions: Optional[List[str]]) -> dict[str, Any]:
    """["status=published", "rating=5"] -> {"status": "published", "rating": 5}"""
    result: dict[str, Any] = {}
    for condition in conditions or []:
        field, sep, raw = condition.partition("=")
        if not sep or not field:
            raise ValueError(f"Expected field=value, got '{condition}'")
        try:
            result[field] = json.loads(raw)
        except ValueError:
            result[field] = raw
    return result


async def _servers(config: BrokerConfig, settings: Settings) -> int:
    broker = _broker(config, settings)
    try:
        for server in broker.servers():
            if server.has_credentials():
                await broker.login_server(server.name)
            state = server.auth_state.name if server.has_credentials() else "ANONYMOUS"
            entities = ", ".join(sorted(server.entities)) or "-"
            print(f"{server.name:<20} {server.url:<40} {state:<14} {entities}")
    finally:
        await broker.close()
    return 0


async def _query(config: BrokerConfig, settings: Settings, args: argparse.Namespace) -> int:
    broker = _broker(config, settings)
    try:
        service = EntityService(args.entity, broker, ServiceOptions(throw_errors=True))
        builder = qb().limit(args.limit)
        if args.fields:
            builder.fields([f.strip() for f in args.fields.split(",") if f.strip()])
        if args.sort:
            builder.sort(args.sort)
        for field, value in parse_where(args.where).items():
            if value is None:
                builder.is_null(field)
            else:
                builder.equal(field, value)
        items = await service.query(builder)
    finally:
        await broker.close()

    print(json.dumps(items, indent=2, ensure_ascii=False, default=str))
    return 0


def cmd_servers(args: argparse.Namespace) -> int:
    """Log in to every configured server and print its state."""
    config, settings = _load(args)
    if config is None:
        return 1
    return asyncio.run(_servers(config, settings))


def cmd_query(args: argparse.Namespace) -> int:
    """Run one query and print the result as JSON."""
    config, settings = _load(args)
    if config is None:
        return 1
    try:
        return asyncio.run(_query(config, settings, args))
    except (DBError, ValueError) as e:
        print(f"Error: {e}")
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="entitymesh",
        description="Entitymesh - entity access across backend servers",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # servers
    servers_parser = subparsers.add_parser("servers", help="Log in and show server states")
    servers_parser.add_argument("--config", "-c", help="Broker config file")

    # query
    query_parser = subparsers.add_parser("query", help="Query an entity")
    query_parser.add_argument("entity", help="Entity name, optionally server:entity")
    query_parser.add_argument("--config", "-c", help="Broker config file")
    query_parser.add_argument("--fields", "-f", help="Comma-separated fields")
    query_parser.add_argument("--where", "-w", action="append", help="field=value (repeatable)")
    query_parser.add_argument("--limit", "-l", type=int, default=20, help="Max items (default 20)")
    query_parser.add_argument("--sort", "-s", help="Sort field, '-field' for descending")

    return parser


def app(args: Optional[List[str]] = None) -> int:
    """Main CLI application."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if parsed.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not parsed.command:
        parser.print_help()
        return 0

    commands = {
        "servers": cmd_servers,
        "query": cmd_query,
    }

    handler = commands.get(parsed.command)
    if handler:
        return handler(parsed)

    parser.print_help()
    return 1


def main() -> None:
    """Entry point for CLI."""
    sys.exit(app())


if __name__ == "__main__":
    main()
