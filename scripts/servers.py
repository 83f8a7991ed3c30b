#!/usr/bin/env python3
"""Manage remote tool servers.

Usage examples:
    # List configured servers
    uv run python scripts/servers.py list

    # Add an HTTP server
    uv run python scripts/servers.py add-http "Weather" https://example.com/mcp

    # Add a local process server with arguments and environment
    uv run python scripts/servers.py add-process "Files" npx -- -y @modelcontextprotocol/server-filesystem /tmp
    uv run python scripts/servers.py add-process "Search" ./search-server --env API_KEY=abc

    # Enable / disable / delete
    uv run python scripts/servers.py disable 3
    uv run python scripts/servers.py delete 3

    # Connect and show the tools a server offers
    uv run python scripts/servers.py tools 3
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from threadline.tools.mcp import MCPClient
from threadline.tools.registry import ToolRegistry
from threadline.tools.servers import ServerStore


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            print(f"ERROR: --env expects KEY=VALUE, got {pair!r}", file=sys.stderr)
            sys.exit(1)
        env[key] = value
    return env


async def run(args: argparse.Namespace) -> None:
    client = MCPClient()
    store = ServerStore(client=client)
    try:
        if args.command == "list":
            servers = await store.list_servers()
            if not servers:
                print("No tool servers configured.")
            for s in servers:
                state = "enabled" if s.enabled else "disabled"
                print(f"{s.id:>4}  {s.name:<24} {s.transport:<8} {state:<9} {s.connection_info}")
        elif args.command == "add-http":
            server = await store.add_server(args.name, "http", endpoint_url=args.url)
            print(f"Added server {server.id}")
        elif args.command == "add-process":
            server = await store.add_server(
                args.name, "process", command=args.cmd, args=args.args, env=_parse_env(args.env)
            )
            print(f"Added server {server.id}")
        elif args.command in ("enable", "disable"):
            ok = await store.set_enabled(args.id, args.command == "enable")
            print("OK" if ok else f"No server with id {args.id}")
        elif args.command == "delete":
            ok = await store.delete_server(args.id)
            print("Deleted" if ok else f"No server with id {args.id}")
        elif args.command == "tools":
            server = await store.get_server(args.id)
            if server is None:
                print(f"No server with id {args.id}", file=sys.stderr)
                sys.exit(1)
            tools = await ToolRegistry(client).list_enabled_tools([server])
            if not tools:
                print("No tools (server disabled or unreachable; see log output).")
            for tool in tools:
                print(f"{tool.name}: {tool.description}")
    finally:
        await client.disconnect_all()


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage remote tool servers")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List configured servers")

    p = sub.add_parser("add-http", help="Add an HTTP JSON-RPC server")
    p.add_argument("name")
    p.add_argument("url")

    p = sub.add_parser("add-process", help="Add a local stdio server")
    p.add_argument("name")
    p.add_argument("cmd")
    p.add_argument("args", nargs="*")
    p.add_argument("--env", action="append", default=[], help="KEY=VALUE (repeatable)")

    for name in ("enable", "disable", "delete", "tools"):
        p = sub.add_parser(name)
        p.add_argument("id", type=int)

    args = parser.parse_args()
    try:
        asyncio.run(run(args))
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
