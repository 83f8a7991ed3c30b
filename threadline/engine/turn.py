"""ChatEngine — the single entry point for running a conversation turn."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from threadline.chats.models import Message, Role
from threadline.chats.store import ChatStore
from threadline.config import settings
from threadline.engine.context import ContextAssembler
from threadline.engine.loop import AgenticLoop
from threadline.engine.summarizer import Summarizer
from threadline.errors import ProviderError
from threadline.memory.automatic import MemoryExtractor
from threadline.memory.store import MemoryStore
from threadline.tools.executor import ToolExecutor
from threadline.tools.mcp import MCPClient
from threadline.tools.registry import ToolRegistry
from threadline.tools.servers import ServerStore
from threadline.tools.skills import SkillCache

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from threadline.engine.loop import LoopResult, ToolStatus
    from threadline.llm.messages import Provider, TextDeltaCallback
    from threadline.tools.models import Tool

logger = logging.getLogger(__name__)


class ChatEngine:
    """Wires storage, tools, the agentic loop and the summarizer together.

    Construct one per process (see :meth:`create`) and share it between
    front-ends; call :meth:`close` on shutdown.
    """

    def __init__(
        self,
        *,
        provider: Provider,
        store: ChatStore,
        servers: ServerStore,
        registry: ToolRegistry,
        executor: ToolExecutor | None = None,
        summarizer: Summarizer | None = None,
        memory: MemoryExtractor | None = None,
        turn_timeout: float | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.servers = servers
        self.registry = registry
        self.executor = executor or ToolExecutor(registry)
        self.context = ContextAssembler(store)
        self.loop = AgenticLoop(provider, self.executor)
        self.summarizer = summarizer or Summarizer(store, provider)
        self.memory = memory
        self._turn_timeout = (
            turn_timeout if turn_timeout is not None else settings.turn_timeout_seconds
        )

    @classmethod
    def create(cls, provider: Provider, db_path: Path | None = None) -> ChatEngine:
        """Build an engine with default collaborators on one database."""
        client = MCPClient()
        skills = SkillCache(db_path=db_path) if settings.skills_enabled else None
        memory = (
            MemoryExtractor(MemoryStore(db_path), provider) if settings.memory_enabled else None
        )
        return cls(
            provider=provider,
            store=ChatStore(db_path),
            servers=ServerStore(db_path, client=client),
            registry=ToolRegistry(client, skills),
            memory=memory,
        )

    async def available_tools(self) -> list[Tool]:
        """Tools from every enabled server plus the skills catalog."""
        servers = await self.servers.list_enabled_servers()
        return await self.registry.list_tools(servers)

    async def run_turn(
        self,
        chat_id: int,
        user_input: str,
        system_prompt: str | None = None,
        on_tool_status: Callable[[str, ToolStatus], Awaitable[None]] | None = None,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> str:
        """Answer *user_input* in chat *chat_id* and persist the exchange.

        *system_prompt* defaults to the chat's own prompt, then to
        ``settings.default_system_prompt``. Nothing is written unless the
        turn completes; compaction and memory extraction are scheduled
        afterwards in the background.

        Raises:
            ProviderError: A generation call failed or the turn timed out.
        """
        chat = await self.store.get_chat(chat_id)
        if system_prompt is None:
            system_prompt = (chat.system_prompt if chat else "") or settings.default_system_prompt
        # Memories belong to the session, which the chat title names.
        session_id = chat.title if chat and self.memory is not None else None
        memory_prompt = await self.memory.prompt_for(session_id) if session_id else ""

        history = await self.context.build_history(chat_id, memory_prompt)
        tools = await self.available_tools()
        logger.info(
            "Turn for chat %d: %d history message(s), %d tool(s)",
            chat_id, len(history), len(tools),
        )

        try:
            async with asyncio.timeout(self._turn_timeout):
                result = await self.loop.run(
                    history,
                    user_input,
                    system_prompt,
                    tools,
                    on_tool_status=on_tool_status,
                    on_text_delta=on_text_delta,
                )
        except TimeoutError as exc:
            msg = f"Turn timed out after {self._turn_timeout:.0f}s"
            raise ProviderError(msg) from exc

        answer = result.text.strip()
        if not answer:
            msg = "Model returned an empty answer"
            raise ProviderError(msg)

        await self.store.add_messages(chat_id, _transcript(chat_id, user_input, result, answer))
        self.summarizer.trigger(chat_id)
        if session_id:
            self.memory.schedule(session_id, user_input)
        return answer

    async def close(self) -> None:
        """Let pending compaction and memory work finish, then drop all tool server sessions."""
        try:
            await asyncio.wait_for(self.summarizer.wait_idle(), settings.summary_timeout_seconds)
        except TimeoutError:
            logger.warning("Summarizer still busy at shutdown; cancelling")
        await self.summarizer.shutdown()
        if self.memory is not None:
            try:
                await asyncio.wait_for(
                    self.memory.wait_idle(), settings.memory_extraction_timeout_seconds
                )
            except TimeoutError:
                logger.warning("Memory extraction still busy at shutdown; cancelling")
            await self.memory.shutdown()
        await self.registry.client.disconnect_all()


def _transcript(chat_id: int, user_input: str, result: LoopResult, answer: str) -> list[Message]:
    """Messages to persist for a completed turn: user, tool results, answer."""
    messages = [Message(chat_id=chat_id, role=Role.USER, content=user_input)]
    messages.extend(
        Message(chat_id=chat_id, role=Role.TOOL, content=r.to_record())
        for r in result.tool_results
    )
    messages.append(Message(chat_id=chat_id, role=Role.ASSISTANT, content=answer))
    return messages
