"""Tool registry — the per-turn catalog of server and skill tools."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from threadline.errors import RegistryError
from threadline.tools.models import (
    SKILL_SOURCE,
    Tool,
    is_valid_tool_name,
    server_tool_name,
    skill_tool_name,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from threadline.tools.mcp import MCPClient
    from threadline.tools.models import RemoteToolServer
    from threadline.tools.skills import SkillCache

logger = logging.getLogger(__name__)

SKILL_INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "The task or question to execute using this skill",
        },
    },
    "required": ["query"],
}


class ToolRegistry:
    """Aggregates tools from remote servers and the skills catalog.

    Tools are recomputed on every call and never persisted. A server or
    skill source that cannot be reached is logged and left out; it never
    fails the caller.

    Args:
        client: Shared MCP session cache.
        skills: Skills catalog, or None to offer no skill tools.
    """

    def __init__(self, client: MCPClient, skills: SkillCache | None = None) -> None:
        self._client = client
        self._skills = skills

    @property
    def client(self) -> MCPClient:
        return self._client

    @property
    def skills(self) -> SkillCache | None:
        return self._skills

    async def list_enabled_tools(self, servers: Iterable[RemoteToolServer]) -> list[Tool]:
        """Connect to each enabled server (if needed) and collect its tools."""
        tools: list[Tool] = []
        for server in servers:
            if not server.enabled:
                continue
            try:
                await self._client.connect_server(server)
                raw_tools = await self._client.list_tools(server.id)
            except RegistryError as exc:
                logger.warning(
                    "Skipping tool server %s (ID: %d): %s", server.name, server.id, exc
                )
                continue
            except Exception:
                logger.exception("Skipping tool server %s (ID: %d)", server.name, server.id)
                await self._client.disconnect_server(server.id)
                continue

            count = 0
            for raw in raw_tools:
                name = server_tool_name(server.name, raw["name"])
                if not is_valid_tool_name(name):
                    logger.warning(
                        "Dropping tool %r from %s: invalid name %r", raw["name"], server.name, name
                    )
                    continue
                tools.append(
                    Tool(
                        name=name,
                        description=raw.get("description") or "",
                        input_schema=raw.get("inputSchema") or {"type": "object", "properties": {}},
                        source=server.id,
                        remote_name=raw["name"],
                    )
                )
                count += 1
            logger.info("Tool server %s: got %d tools", server.name, count)
        return tools

    async def list_skill_tools(self) -> list[Tool]:
        """Wrap every cached skill as a ``skill_*`` tool with a ``query`` argument."""
        if self._skills is None:
            return []
        try:
            skills = await self._skills.get_skills()
        except RegistryError as exc:
            logger.warning("Skills unavailable: %s", exc)
            return []
        return [
            Tool(
                name=skill_tool_name(s.name),
                description=s.description,
                input_schema=SKILL_INPUT_SCHEMA,
                source=SKILL_SOURCE,
                remote_name=s.name,
            )
            for s in skills
        ]

    async def list_tools(self, servers: Iterable[RemoteToolServer]) -> list[Tool]:
        """Server tools followed by skill tools, as one flat list with unique names."""
        combined = [*await self.list_enabled_tools(servers), *await self.list_skill_tools()]
        seen: set[str] = set()
        tools: list[Tool] = []
        for tool in combined:
            if tool.name in seen:
                logger.warning("Dropping duplicate tool name: %s", tool.name)
                continue
            seen.add(tool.name)
            tools.append(tool)
        return tools
