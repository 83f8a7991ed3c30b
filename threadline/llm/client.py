"""Async Claude provider for the conversation engine."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import anthropic

from threadline.chats.models import Role
from threadline.config import settings
from threadline.errors import ProviderError
from threadline.llm.messages import ChatMessage, GenerationResult
from threadline.tools.models import ToolCall

if TYPE_CHECKING:
    from collections.abc import Sequence

    from threadline.llm.messages import TextDeltaCallback
    from threadline.tools.models import Tool

logger = logging.getLogger(__name__)

# Claude requires the conversation to open with a user turn.
CONTINUATION_NOTE = "(continuing the conversation)"


def _append_blocks(api_messages: list[dict[str, Any]], role: str, blocks: list[dict[str, Any]]) -> None:
    """Append *blocks* as a *role* turn, merging with the previous turn if same role."""
    if not blocks:
        return
    if api_messages and api_messages[-1]["role"] == role:
        api_messages[-1]["content"].extend(blocks)
    else:
        api_messages.append({"role": role, "content": list(blocks)})


def _text_block(text: str) -> list[dict[str, Any]]:
    return [{"type": "text", "text": text}] if text.strip() else []


def to_api_messages(
    messages: Sequence[ChatMessage], *, structured_tools: bool
) -> tuple[list[str], list[dict[str, Any]]]:
    """Convert engine messages into Claude's format.

    System-role messages are returned separately so the caller can fold
    them into the system prompt. With *structured_tools* tool requests and
    results become ``tool_use`` / ``tool_result`` blocks; without it they
    are rendered as plain text so the request is valid with no tools.

    Returns:
        ``(system_parts, api_messages)``
    """
    system_parts: list[str] = []
    api_messages: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            if msg.content.strip():
                system_parts.append(msg.content)
        elif msg.role == Role.USER:
            _append_blocks(api_messages, "user", _text_block(msg.content))
        elif msg.role == Role.ASSISTANT:
            blocks = _text_block(msg.content)
            for call in msg.tool_calls:
                if structured_tools:
                    blocks.append({
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name,
                        "input": call.arguments,
                    })
                else:
                    blocks.extend(_text_block(
                        f"[Called tool {call.name} with {json.dumps(call.arguments)}]"
                    ))
            _append_blocks(api_messages, "assistant", blocks)
        elif msg.role == Role.TOOL:
            if structured_tools and msg.tool_call_id:
                block: dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }
                if msg.is_error:
                    block["is_error"] = True
                _append_blocks(api_messages, "user", [block])
            else:
                label = msg.name or "tool"
                _append_blocks(api_messages, "user", _text_block(f"[Result of {label}]: {msg.content}"))
        else:
            logger.warning("Dropping message with unknown role: %s", msg.role)

    if api_messages and api_messages[0]["role"] != "user":
        api_messages.insert(0, {"role": "user", "content": _text_block(CONTINUATION_NOTE)})
    return system_parts, api_messages


def _join_system(system_prompt: str, extra: list[str]) -> str:
    return "\n\n".join(part for part in (system_prompt, *extra) if part.strip())


def _response_text(content: list[Any]) -> str:
    return "".join(block.text for block in content if block.type == "text")


class AnthropicProvider:
    """Claude via the Anthropic SDK.

    Args:
        client: An ``AsyncAnthropic`` instance. Created lazily from
            settings when omitted.
        model: Chat model id.
        summary_model: Model used by :meth:`complete_text`.
    """

    def __init__(
        self,
        client: anthropic.AsyncAnthropic | None = None,
        model: str | None = None,
        summary_model: str | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._client = client
        self._model = model or settings.chat_model
        self._summary_model = summary_model or settings.summary_model
        self._max_tokens = max_tokens if max_tokens is not None else settings.max_output_tokens

    def _get_client(self) -> anthropic.AsyncAnthropic:
        """Lazily initialize the Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        return self._client

    def _request(
        self,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        *,
        structured_tools: bool,
        model: str | None = None,
    ) -> dict[str, Any]:
        system_parts, api_messages = to_api_messages(messages, structured_tools=structured_tools)
        if not api_messages:
            msg = "Nothing to send: the conversation is empty"
            raise ProviderError(msg)
        kwargs: dict[str, Any] = {
            "model": model or self._model,
            "max_tokens": self._max_tokens,
            "messages": api_messages,
        }
        system = _join_system(system_prompt, system_parts)
        if system:
            kwargs["system"] = system
        return kwargs

    async def generate(
        self,
        history: Sequence[ChatMessage],
        prompt: str,
        system_prompt: str,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> str:
        """Generate without tools, streaming to *on_text_delta* when given."""
        messages = list(history)
        if prompt:
            messages.append(ChatMessage(role=Role.USER, content=prompt))
        kwargs = self._request(messages, system_prompt, structured_tools=False)
        client = self._get_client()
        try:
            if on_text_delta is None:
                response = await client.messages.create(**kwargs)
                return _response_text(response.content)

            full_text = ""
            async with client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    full_text += text
                    await on_text_delta(text)
            return full_text
        except anthropic.APIError as exc:
            msg = f"Generation failed: {exc}"
            raise ProviderError(msg) from exc

    async def generate_with_tools(
        self,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        tools: Sequence[Tool],
    ) -> GenerationResult:
        kwargs = self._request(messages, system_prompt, structured_tools=True)
        if tools:
            kwargs["tools"] = [t.to_schema() for t in tools]
        try:
            response = await self._get_client().messages.create(**kwargs)
        except anthropic.APIError as exc:
            msg = f"Generation failed: {exc}"
            raise ProviderError(msg) from exc

        tool_calls = [
            ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
            for block in response.content
            if block.type == "tool_use"
        ]
        return GenerationResult(text=_response_text(response.content), tool_calls=tool_calls)

    async def complete_text(self, prompt: str, system: str | None = None) -> str:
        """Single-shot call with the summary model: no tools, no history, no streaming."""
        kwargs: dict[str, Any] = {
            "model": self._summary_model,
            "max_tokens": self._max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        try:
            response = await self._get_client().messages.create(**kwargs)
        except anthropic.APIError as exc:
            msg = f"Completion failed: {exc}"
            raise ProviderError(msg) from exc
        return _response_text(response.content)
