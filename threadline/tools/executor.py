"""Tool executor — routes one model tool call to a server or a skill."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from threadline.config import settings
from threadline.errors import NotFoundError, RegistryError, ToolDispatchError
from threadline.tools.models import SKILL_PREFIX, ToolResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from threadline.tools.models import Tool, ToolCall
    from threadline.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Executes tool calls against the sources in a :class:`ToolRegistry`.

    Failures never escape :meth:`execute`; they come back as a
    ``ToolResult`` with ``is_error=True`` so the model can react to them.

    Args:
        registry: Provides the MCP client and the skills cache.
        timeout: Per-call deadline in seconds.
    """

    def __init__(self, registry: ToolRegistry, timeout: float | None = None) -> None:
        self._registry = registry
        self._timeout = timeout if timeout is not None else settings.tool_call_timeout_seconds

    async def execute(self, call: ToolCall, tools: Sequence[Tool]) -> ToolResult:
        """Run *call*, resolving server tools against this turn's *tools*.

        The dispatch is shielded: if the turn is cancelled the call keeps
        running until it finishes or hits its own deadline, and the
        cancellation still propagates to the caller.
        """
        logger.info("Tool '%s' called with %s", call.name, call.arguments)
        t0 = time.monotonic()
        try:
            content = await asyncio.shield(
                asyncio.wait_for(self._dispatch(call, tools), self._timeout)
            )
        except (ToolDispatchError, RegistryError) as exc:
            elapsed = time.monotonic() - t0
            logger.warning("Tool '%s' returned error in %.2fs: %s", call.name, elapsed, exc)
            return ToolResult(call.id, call.name, f"Error: {exc}", is_error=True)
        except TimeoutError:
            logger.warning("Tool '%s' timed out after %.0fs", call.name, self._timeout)
            return ToolResult(call.id, call.name, f"Error: tool '{call.name}' timed out", is_error=True)
        except Exception:
            elapsed = time.monotonic() - t0
            logger.exception("Tool '%s' failed in %.2fs", call.name, elapsed)
            return ToolResult(
                call.id, call.name,
                f"Error: tool '{call.name}' failed. Check logs for details.",
                is_error=True,
            )

        logger.info("Tool '%s' succeeded in %.2fs", call.name, time.monotonic() - t0)
        return ToolResult(call.id, call.name, content)

    async def _dispatch(self, call: ToolCall, tools: Sequence[Tool]) -> str:
        if call.name.startswith(SKILL_PREFIX):
            return await self._execute_skill(call)
        return await self._execute_server_tool(call, tools)

    async def _execute_skill(self, call: ToolCall) -> str:
        skills = self._registry.skills
        skill_name = call.name[len(SKILL_PREFIX):]
        if skills is None:
            msg = f"Skill not found: {skill_name}"
            raise NotFoundError(msg)
        query = call.arguments.get("query", "")
        if not isinstance(query, str):
            query = str(query)
        return await skills.execute_skill(skill_name, query)

    async def _execute_server_tool(self, call: ToolCall, tools: Sequence[Tool]) -> str:
        tool = next((t for t in tools if t.name == call.name and not t.is_skill), None)
        if tool is None:
            msg = f"Unknown tool: {call.name}"
            raise NotFoundError(msg)
        try:
            return await self._registry.client.call_tool(
                tool.source, tool.remote_name or call.name, call.arguments
            )
        except ToolDispatchError:
            logger.warning("Dispatch of '%s' to server ID %d failed", call.name, tool.source)
            raise
