"""Tests for the agentic loop."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from threadline.chats.models import Role
from threadline.engine.loop import AgenticLoop, ToolStatus
from threadline.errors import ProviderError
from threadline.llm.messages import ChatMessage, GenerationResult
from threadline.tools.executor import ToolExecutor
from threadline.tools.models import Tool, ToolCall

ECHO = Tool(name="echo_echo", description="Echo", input_schema={}, source=1, remote_name="echo")


class ScriptedProvider:
    """Returns queued tool-round results, then a fixed final answer."""

    def __init__(self, rounds: list[GenerationResult], final: str = "final answer") -> None:
        self.rounds = list(rounds)
        self.final = final
        self.tool_requests: list[list[ChatMessage]] = []
        self.plain_requests: list[tuple[list[ChatMessage], str]] = []

    async def generate(self, history, prompt, system_prompt, on_text_delta=None) -> str:
        self.plain_requests.append((list(history), prompt))
        if on_text_delta:
            await on_text_delta(self.final)
        return self.final

    async def generate_with_tools(self, messages, system_prompt, tools) -> GenerationResult:
        self.tool_requests.append(list(messages))
        if self.rounds:
            return self.rounds.pop(0)
        return GenerationResult(text=self.final)

    async def complete_text(self, prompt, system=None) -> str:
        return ""


def _executor(call_tool=None) -> ToolExecutor:
    registry = MagicMock()
    registry.client.call_tool = call_tool or AsyncMock(side_effect=lambda sid, name, args: args["text"])
    registry.skills = None
    return ToolExecutor(registry, timeout=5)


def _echo_call(call_id: str = "c1", text: str = "hello") -> ToolCall:
    return ToolCall(id=call_id, name="echo_echo", arguments={"text": text})


async def test_single_tool_round():
    provider = ScriptedProvider(
        [GenerationResult(text="", tool_calls=[_echo_call()]),
         GenerationResult(text="The tool said hello")]
    )
    loop = AgenticLoop(provider, _executor(), max_iterations=5)

    result = await loop.run([], "echo hello", "", [ECHO])

    assert result.text == "The tool said hello"
    assert result.model_calls == 2
    assert [m.role for m in result.messages] == [Role.ASSISTANT, Role.TOOL]
    assert result.messages[1].content == "hello"
    assert result.messages[1].tool_call_id == "c1"
    assert [r.content for r in result.tool_results] == ["hello"]
    assert not result.forced_final

    second_request = provider.tool_requests[1]
    assert [m.role for m in second_request] == [Role.USER, Role.ASSISTANT, Role.TOOL]


async def test_iteration_cap_forces_final_answer():
    provider = ScriptedProvider(
        [GenerationResult(text="", tool_calls=[_echo_call(f"c{i}")]) for i in range(10)],
        final="best effort",
    )
    loop = AgenticLoop(provider, _executor(), max_iterations=3)

    result = await loop.run([], "loop forever", "", [ECHO])

    assert result.text == "best effort"
    assert result.forced_final
    assert result.model_calls == 4
    assert len(provider.tool_requests) == 3
    assert len(provider.plain_requests) == 1
    forced_history, forced_prompt = provider.plain_requests[0]
    assert forced_prompt == ""
    assert forced_history[-1].role == Role.TOOL


async def test_zero_iterations_answers_without_tool_rounds():
    provider = ScriptedProvider([GenerationResult(text="", tool_calls=[_echo_call()])])
    loop = AgenticLoop(provider, _executor(), max_iterations=0)

    result = await loop.run([], "hi", "", [ECHO])

    assert result.forced_final
    assert result.model_calls == 1
    assert provider.tool_requests == []
    assert provider.plain_requests[0][0][-1].content == "hi"


async def test_no_tools_makes_one_plain_call():
    provider = ScriptedProvider([], final="just text")
    deltas: list[str] = []

    async def on_delta(text: str) -> None:
        deltas.append(text)

    loop = AgenticLoop(provider, _executor(), max_iterations=5)
    history = [ChatMessage(role=Role.USER, content="earlier")]
    result = await loop.run(history, "hi", "sys", [], on_text_delta=on_delta)

    assert result.text == "just text"
    assert result.model_calls == 1
    assert provider.tool_requests == []
    assert provider.plain_requests[0][1] == "hi"
    assert deltas == ["just text"]


async def test_input_history_is_not_mutated():
    provider = ScriptedProvider(
        [GenerationResult(text="", tool_calls=[_echo_call()]), GenerationResult(text="done")]
    )
    history = [ChatMessage(role=Role.USER, content="a"), ChatMessage(role=Role.ASSISTANT, content="b")]
    loop = AgenticLoop(provider, _executor(), max_iterations=5)

    await loop.run(history, "c", "", [ECHO])

    assert [m.content for m in history] == ["a", "b"]


async def test_calls_run_in_listed_order():
    order: list[str] = []

    async def call_tool(sid, name, args):
        order.append(args["text"])
        return args["text"]

    provider = ScriptedProvider([
        GenerationResult(text="", tool_calls=[_echo_call("c1", "first"), _echo_call("c2", "second")]),
        GenerationResult(text="done"),
    ])
    loop = AgenticLoop(provider, _executor(call_tool), max_iterations=5)

    result = await loop.run([], "go", "", [ECHO])

    assert order == ["first", "second"]
    assert [r.tool_call_id for r in result.tool_results] == ["c1", "c2"]


async def test_tool_error_is_fed_back():
    provider = ScriptedProvider([
        GenerationResult(text="", tool_calls=[ToolCall("c1", "missing_tool", {})]),
        GenerationResult(text="sorry, no such tool"),
    ])
    statuses: list[tuple[str, ToolStatus]] = []

    async def on_status(name: str, status: ToolStatus) -> None:
        statuses.append((name, status))

    loop = AgenticLoop(provider, _executor(), max_iterations=5)
    result = await loop.run([], "go", "", [ECHO], on_tool_status=on_status)

    assert result.text == "sorry, no such tool"
    assert result.tool_results[0].is_error
    assert statuses == [("missing_tool", ToolStatus.CALLING), ("missing_tool", ToolStatus.ERROR)]


async def test_failing_status_callback_does_not_break_loop():
    provider = ScriptedProvider(
        [GenerationResult(text="", tool_calls=[_echo_call()]), GenerationResult(text="done")]
    )

    async def on_status(name: str, status: ToolStatus) -> None:
        raise RuntimeError("ui gone")

    loop = AgenticLoop(provider, _executor(), max_iterations=5)
    result = await loop.run([], "go", "", [ECHO], on_tool_status=on_status)
    assert result.text == "done"


async def test_provider_error_propagates():
    provider = ScriptedProvider([])
    provider.generate_with_tools = AsyncMock(side_effect=ProviderError("rate limited"))
    loop = AgenticLoop(provider, _executor(), max_iterations=5)
    with pytest.raises(ProviderError):
        await loop.run([], "go", "", [ECHO])


async def test_failed_call_does_not_skip_the_next_one():
    provider = ScriptedProvider([
        GenerationResult(
            text="",
            tool_calls=[ToolCall("c1", "missing_tool", {}), _echo_call("c2", "still runs")],
        ),
        GenerationResult(text="done"),
    ])
    loop = AgenticLoop(provider, _executor(), max_iterations=5)

    result = await loop.run([], "go", "", [ECHO])

    assert [r.is_error for r in result.tool_results] == [True, False]
    assert result.tool_results[1].content == "still runs"
    assert result.text == "done"
