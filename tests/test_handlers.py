"""Tests for the Telegram handlers."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from threadline.bot import handlers
from threadline.chats.models import Chat
from threadline.engine.loop import ToolStatus
from threadline.errors import ProviderError, RegistryError
from threadline.memory.models import Memory
from threadline.tools.skills import SkillCacheEntry


@pytest.fixture(autouse=True)
def _allow_everyone(monkeypatch):
    monkeypatch.setattr(handlers, "is_allowed", lambda update: True)


def _engine() -> MagicMock:
    engine = MagicMock()
    engine.store.get_or_create_chat_for_session = AsyncMock(return_value=Chat(id=5, title="telegram:42"))
    engine.store.create_chat = AsyncMock(return_value=Chat(id=6, title="telegram:42"))
    engine.store.count_unsummarized = AsyncMock(return_value=3)
    engine.store.get_summary = AsyncMock(return_value=("summary", 2))
    engine.available_tools = AsyncMock(return_value=[MagicMock(), MagicMock()])
    engine.run_turn = AsyncMock(return_value="Final answer")
    return engine


def _update(text: str = "hello") -> tuple[MagicMock, MagicMock]:
    reply = MagicMock()
    reply.edit_text = AsyncMock()
    update = MagicMock()
    update.effective_chat.id = 42
    update.message.text = text
    update.message.reply_text = AsyncMock(return_value=reply)
    return update, reply


def _context(engine: MagicMock, args: list[str] | None = None) -> MagicMock:
    context = MagicMock()
    context.application.bot_data = {"engine": engine}
    context.args = args or []
    return context


def _skills(count: int) -> list[SkillCacheEntry]:
    return [SkillCacheEntry(f"skill-{i}", "d" * 80, "doc", "u", 0.0) for i in range(count)]


def test_session_id_for():
    assert handlers.session_id_for(42) == "telegram:42"


async def test_message_runs_turn_and_edits_reply():
    engine = _engine()
    update, reply = _update("what's up")

    await handlers.handle_message(update, _context(engine))

    engine.store.get_or_create_chat_for_session.assert_awaited_once_with("telegram:42")
    args, _ = engine.run_turn.call_args
    assert args == (5, "what's up")
    reply.edit_text.assert_awaited_with("Final answer")


async def test_message_shows_tool_status_lines():
    engine = _engine()

    async def run_turn(chat_id, text, on_tool_status=None, on_text_delta=None):
        await on_tool_status("echo_echo", ToolStatus.CALLING)
        await on_tool_status("echo_echo", ToolStatus.COMPLETED)
        return "done"

    engine.run_turn = run_turn
    update, reply = _update()

    await handlers.handle_message(update, _context(engine))

    rendered = [call.args[0] for call in reply.edit_text.await_args_list]
    assert "🔧 Calling tool: echo_echo..." in rendered[0]
    assert "✅ Tool completed: echo_echo" in rendered[1]


async def test_provider_error_reported_to_user():
    engine = _engine()
    engine.run_turn = AsyncMock(side_effect=ProviderError("down"))
    update, reply = _update()

    await handlers.handle_message(update, _context(engine))

    reply.edit_text.assert_awaited_once_with("❌ Error generating response. Please try again.")


async def test_unexpected_error_reported_to_user():
    engine = _engine()
    engine.run_turn = AsyncMock(side_effect=RuntimeError("database is locked"))
    update, reply = _update()

    await handlers.handle_message(update, _context(engine))

    reply.edit_text.assert_awaited_once_with("Something went wrong. Check the logs.")


async def test_new_starts_fresh_chat():
    engine = _engine()
    update, _ = _update()

    await handlers.handle_new(update, _context(engine))

    engine.store.create_chat.assert_awaited_once_with("telegram:42")
    update.message.reply_text.assert_awaited_once_with("Started a new conversation (#6).")


async def test_status_reports_context():
    engine = _engine()
    update, _ = _update()

    await handlers.handle_status(update, _context(engine))

    text = update.message.reply_text.call_args.args[0]
    assert "Raw messages in context: 3" in text
    assert "Summary: v2" in text
    assert "Tools available: 2" in text


async def test_skills_lists_catalog():
    engine = _engine()
    engine.registry.skills.get_skills = AsyncMock(return_value=_skills(25))
    update, _ = _update()

    await handlers.handle_skills(update, _context(engine))

    text = update.message.reply_text.call_args.args[0]
    assert "• skill-0\n  " + "d" * 50 + "...\n" in text
    assert "skill-19" in text
    assert "skill-20" not in text
    assert "...and 5 more skills" in text


async def test_skills_disabled():
    engine = _engine()
    engine.registry.skills = None
    update, _ = _update()

    await handlers.handle_skills(update, _context(engine))

    update.message.reply_text.assert_awaited_once_with("Skills are disabled.")


async def test_skills_fetch_failure():
    engine = _engine()
    engine.registry.skills.get_skills = AsyncMock(side_effect=RegistryError("offline"))
    update, _ = _update()

    await handlers.handle_skills(update, _context(engine))

    text = update.message.reply_text.call_args.args[0]
    assert text.startswith("❌ Failed to fetch skills")


async def test_refresh_skills_reports_count():
    engine = _engine()
    engine.registry.skills.refresh = AsyncMock(return_value=_skills(3))
    update, _ = _update()

    await handlers.handle_refresh_skills(update, _context(engine))

    engine.registry.skills.refresh.assert_awaited_once()
    update.message.reply_text.assert_awaited_with("✅ Refreshed 3 skills!")


async def test_refresh_skills_failure():
    engine = _engine()
    engine.registry.skills.refresh = AsyncMock(side_effect=RegistryError("rate limited"))
    update, _ = _update()

    await handlers.handle_refresh_skills(update, _context(engine))

    update.message.reply_text.assert_awaited_with("❌ Failed to refresh skills: rate limited")


async def test_memories_lists_session_memories():
    engine = _engine()
    engine.memory.store.list_memories = AsyncMock(
        return_value=[Memory("telegram:42", "city", "Lisbon")]
    )
    update, _ = _update()

    await handlers.handle_memories(update, _context(engine))

    engine.memory.store.list_memories.assert_awaited_once_with("telegram:42")
    assert "• city: Lisbon" in update.message.reply_text.call_args.args[0]


async def test_memories_empty():
    engine = _engine()
    engine.memory.store.list_memories = AsyncMock(return_value=[])
    update, _ = _update()

    await handlers.handle_memories(update, _context(engine))

    update.message.reply_text.assert_awaited_once_with("📭 No memories saved yet.")


async def test_forget_deletes_memory():
    engine = _engine()
    engine.memory.store.delete_memory = AsyncMock(return_value=True)
    update, _ = _update()

    await handlers.handle_forget(update, _context(engine, ["city"]))

    engine.memory.store.delete_memory.assert_awaited_once_with("telegram:42", "city")
    update.message.reply_text.assert_awaited_once_with("Forgot city.")


async def test_forget_requires_key():
    engine = _engine()
    update, _ = _update()

    await handlers.handle_forget(update, _context(engine))

    update.message.reply_text.assert_awaited_once_with("Usage: /forget <key>")
