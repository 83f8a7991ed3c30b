"""Conversation messages exchanged with a model provider."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from threadline.tools.models import Tool, ToolCall

TextDeltaCallback = Callable[[str], Awaitable[None]]


@dataclass
class ChatMessage:
    """One turn of the conversation sent to the model.

    ``tool_calls`` is set on assistant turns that requested tools;
    ``tool_call_id`` and ``name`` are set on ``tool`` turns.
    """

    role: str
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""
    name: str = ""
    is_error: bool = False


@dataclass
class GenerationResult:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)


class Provider(Protocol):
    """What the engine needs from a model backend."""

    async def generate(
        self,
        history: Sequence[ChatMessage],
        prompt: str,
        system_prompt: str,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> str:
        """Plain generation with no tools. *prompt* is appended as a user turn if non-empty."""
        ...

    async def generate_with_tools(
        self,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        tools: Sequence[Tool],
    ) -> GenerationResult: ...

    async def complete_text(self, prompt: str, system: str | None = None) -> str:
        """Single-shot call used for background work such as summarization."""
        ...
