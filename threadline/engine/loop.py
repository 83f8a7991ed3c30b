"""Agentic loop: the model and tool execution alternate until the model answers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from threadline.chats.models import Role
from threadline.config import settings
from threadline.llm.messages import ChatMessage

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from threadline.llm.messages import Provider, TextDeltaCallback
    from threadline.tools.executor import ToolExecutor
    from threadline.tools.models import Tool, ToolResult

logger = logging.getLogger(__name__)


class ToolStatus(StrEnum):
    CALLING = "calling"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class LoopResult:
    """Outcome of one loop run.

    Attributes:
        text: The final answer.
        messages: Turns added during the loop (assistant tool requests and
            tool results), in order. Excludes the input and the final answer.
        tool_results: Every tool result, in execution order.
        model_calls: Number of generation calls made.
        forced_final: True if the iteration cap was hit and the answer came
            from the closing tool-less call.
    """

    text: str
    messages: list[ChatMessage] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    model_calls: int = 0
    forced_final: bool = False


class AgenticLoop:
    """Drives the model through up to ``max_iterations`` tool-calling rounds.

    Tool calls in a round run one at a time, in the order the model listed
    them; later calls may depend on the effects of earlier ones. After the
    last round, one more call is made with no tools so the model has to
    answer with what it has. The loop therefore makes at most
    ``max_iterations + 1`` model calls.

    Generation failures propagate. Tool failures come back as error
    results and the loop carries on.
    """

    def __init__(
        self,
        provider: Provider,
        executor: ToolExecutor,
        max_iterations: int | None = None,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._max_iterations = (
            max_iterations if max_iterations is not None else settings.max_tool_iterations
        )

    async def run(
        self,
        history: Sequence[ChatMessage],
        user_input: str,
        system_prompt: str,
        tools: Sequence[Tool],
        on_tool_status: Callable[[str, ToolStatus], Awaitable[None]] | None = None,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> LoopResult:
        if not tools:
            text = await self._provider.generate(history, user_input, system_prompt, on_text_delta)
            return LoopResult(text=text, model_calls=1)

        messages = [*history, ChatMessage(role=Role.USER, content=user_input)]
        result = LoopResult(text="")

        for iteration in range(self._max_iterations):
            logger.info("Agentic loop iteration %d with %d tools", iteration + 1, len(tools))
            response = await self._provider.generate_with_tools(messages, system_prompt, tools)
            result.model_calls += 1

            if not response.tool_calls:
                result.text = response.text
                return result

            logger.info(
                "Round %d: %d tool call(s): %s",
                iteration + 1,
                len(response.tool_calls),
                ", ".join(c.name for c in response.tool_calls),
            )
            assistant_turn = ChatMessage(
                role=Role.ASSISTANT, content=response.text, tool_calls=list(response.tool_calls)
            )
            messages.append(assistant_turn)
            result.messages.append(assistant_turn)

            for call in response.tool_calls:
                await _notify(on_tool_status, call.name, ToolStatus.CALLING)
                tool_result = await self._executor.execute(call, tools)
                await _notify(
                    on_tool_status,
                    call.name,
                    ToolStatus.ERROR if tool_result.is_error else ToolStatus.COMPLETED,
                )
                tool_turn = ChatMessage(
                    role=Role.TOOL,
                    content=tool_result.content,
                    tool_call_id=tool_result.tool_call_id,
                    name=tool_result.name,
                    is_error=tool_result.is_error,
                )
                messages.append(tool_turn)
                result.messages.append(tool_turn)
                result.tool_results.append(tool_result)

        logger.warning("Hit max tool iterations (%d); forcing a final answer", self._max_iterations)
        result.text = await self._provider.generate(messages, "", system_prompt, on_text_delta)
        result.model_calls += 1
        result.forced_final = True
        return result


async def _notify(
    callback: Callable[[str, ToolStatus], Awaitable[None]] | None,
    name: str,
    status: ToolStatus,
) -> None:
    """Fire a status callback; observer failures never reach the loop."""
    if callback is None:
        return
    try:
        await callback(name, status)
    except Exception:
        logger.exception("Tool status callback failed for %s (%s)", name, status)
