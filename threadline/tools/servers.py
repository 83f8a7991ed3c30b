"""ServerStore — CRUD for configured remote tool servers."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from threadline import db as database
from threadline.tools.models import RemoteToolServer

if TYPE_CHECKING:
    from pathlib import Path

    from threadline.tools.mcp import MCPClient

logger = logging.getLogger(__name__)

_COLUMNS = "id, name, transport, endpoint_url, command, args, env, enabled, created_at"
TRANSPORTS = ("http", "process")


class ServerStore:
    """Persists tool server definitions.

    When constructed with an :class:`MCPClient`, disabling or deleting a
    server also tears down its cached session.
    """

    def __init__(self, db_path: Path | None = None, client: MCPClient | None = None) -> None:
        self._db_path = db_path
        self._client = client

    async def add_server(
        self,
        name: str,
        transport: str,
        *,
        endpoint_url: str = "",
        command: str = "",
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        enabled: bool = True,
    ) -> RemoteToolServer:
        if transport not in TRANSPORTS:
            msg = f"Transport must be one of {', '.join(TRANSPORTS)}"
            raise ValueError(msg)
        if transport == "http" and not endpoint_url:
            msg = "An http server needs an endpoint URL"
            raise ValueError(msg)
        if transport == "process" and not command:
            msg = "A process server needs a command"
            raise ValueError(msg)

        server = RemoteToolServer(
            id=0,
            name=name,
            transport=transport,
            endpoint_url=endpoint_url,
            command=command,
            args=list(args or []),
            env=dict(env or {}),
            enabled=enabled,
        )
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "INSERT INTO mcp_servers "
                "(name, transport, endpoint_url, command, args, env, enabled, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    server.name,
                    server.transport,
                    server.endpoint_url,
                    server.command,
                    json.dumps(server.args),
                    json.dumps(server.env),
                    int(server.enabled),
                    server.created_at,
                ),
            )
            server.id = cursor.lastrowid
            logger.info("Added tool server %s (%s, ID: %d)", name, transport, server.id)
            return server
        finally:
            await db.close()

    async def get_server(self, server_id: int) -> RemoteToolServer | None:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM mcp_servers WHERE id = ?", (server_id,)
            )
            row = await cursor.fetchone()
            return RemoteToolServer.from_row(row) if row else None
        finally:
            await db.close()

    async def list_servers(self) -> list[RemoteToolServer]:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(f"SELECT {_COLUMNS} FROM mcp_servers ORDER BY id")
            return [RemoteToolServer.from_row(row) for row in await cursor.fetchall()]
        finally:
            await db.close()

    async def list_enabled_servers(self) -> list[RemoteToolServer]:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM mcp_servers WHERE enabled = 1 ORDER BY id"
            )
            return [RemoteToolServer.from_row(row) for row in await cursor.fetchall()]
        finally:
            await db.close()

    async def set_enabled(self, server_id: int, enabled: bool) -> bool:
        """Enable or disable a server. Returns True if a row was updated."""
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "UPDATE mcp_servers SET enabled = ? WHERE id = ?", (int(enabled), server_id)
            )
            updated = cursor.rowcount > 0
        finally:
            await db.close()
        if updated and not enabled and self._client is not None:
            await self._client.disconnect_server(server_id)
        return updated

    async def delete_server(self, server_id: int) -> bool:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute("DELETE FROM mcp_servers WHERE id = ?", (server_id,))
            deleted = cursor.rowcount > 0
        finally:
            await db.close()
        if deleted:
            logger.info("Deleted tool server ID: %d", server_id)
            if self._client is not None:
                await self._client.disconnect_server(server_id)
        return deleted
