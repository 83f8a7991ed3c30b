"""ContextAssembler — builds the message list sent to the model for a turn."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from threadline.chats.models import CONVERSATION_ROLES, Role
from threadline.llm.messages import ChatMessage

if TYPE_CHECKING:
    from threadline.chats.store import ChatStore

logger = logging.getLogger(__name__)

SUMMARY_PREAMBLE = "Here is a summary of the earlier conversation:\n"


class ContextAssembler:
    """Rolling summary + unsummarized tail + the new user input.

    Only user and assistant messages are replayed. Persisted tool results
    are a transcript of what happened inside earlier turns; the final
    assistant answer already carries their outcome.
    """

    def __init__(self, store: ChatStore) -> None:
        self._store = store

    async def build_history(self, chat_id: int, memory_prompt: str = "") -> list[ChatMessage]:
        """Summary and memory (as system turns, if any), then the raw tail, oldest first."""
        summary, _ = await self._store.get_summary(chat_id)
        tail = await self._store.list_unsummarized(chat_id, CONVERSATION_ROLES)

        history: list[ChatMessage] = []
        if summary.strip():
            history.append(ChatMessage(role=Role.SYSTEM, content=SUMMARY_PREAMBLE + summary))
        if memory_prompt:
            history.append(ChatMessage(role=Role.SYSTEM, content=memory_prompt))
        history.extend(ChatMessage(role=m.role, content=m.content) for m in tail)
        logger.debug(
            "Context for chat %d: summary=%s, %d raw message(s)",
            chat_id, bool(summary.strip()), len(tail),
        )
        return history

    async def build_messages(self, chat_id: int, user_input: str) -> list[ChatMessage]:
        """:meth:`build_history` with *user_input* appended as the final user turn."""
        history = await self.build_history(chat_id)
        history.append(ChatMessage(role=Role.USER, content=user_input))
        return history
