"""Telegram command and message handlers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING

from threadline.bot.security import is_allowed
from threadline.engine.loop import ToolStatus
from threadline.errors import ProviderError, RegistryError

if TYPE_CHECKING:
    from telegram import Update
    from telegram.ext import ContextTypes

    from threadline.engine.turn import ChatEngine

logger = logging.getLogger(__name__)

# Minimum interval between Telegram message edits (seconds)
STREAM_UPDATE_INTERVAL = 0.5

STATUS_LINES = {
    ToolStatus.CALLING: "🔧 Calling tool: {name}...",
    ToolStatus.COMPLETED: "✅ Tool completed: {name}",
    ToolStatus.ERROR: "❌ Tool error: {name}",
}

SKILLS_LIST_LIMIT = 20
SKILL_DESCRIPTION_PREVIEW = 50
MEMORIES_LIST_LIMIT = 10


def session_id_for(chat_id: int) -> str:
    """Chat title used for a Telegram conversation."""
    return f"telegram:{chat_id}"


def _engine(context: ContextTypes.DEFAULT_TYPE) -> ChatEngine:
    return context.application.bot_data["engine"]


async def handle_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — greet the user."""
    if not is_allowed(update):
        return

    await update.message.reply_text("Hi! Send me a message and I'll get to work.")


async def handle_new(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /new — start a fresh chat; the old one stays in the database."""
    if not is_allowed(update):
        return

    engine = _engine(context)
    chat = await engine.store.create_chat(session_id_for(update.effective_chat.id))
    await update.message.reply_text(f"Started a new conversation (#{chat.id}).")


async def handle_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /status — summary state and tool availability."""
    if not is_allowed(update):
        return

    engine = _engine(context)
    chat = await engine.store.get_or_create_chat_for_session(session_id_for(update.effective_chat.id))
    raw = await engine.store.count_unsummarized(chat.id)
    summary, version = await engine.store.get_summary(chat.id)
    tools = await engine.available_tools()

    lines = [
        "**Status**",
        f"Chat: #{chat.id}",
        f"Raw messages in context: {raw}",
        f"Summary: {'v' + str(version) if summary else 'none yet'}",
        f"Tools available: {len(tools)}",
    ]
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


async def handle_skills(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /skills — list the cached skills catalog."""
    if not is_allowed(update):
        return

    skills = _engine(context).registry.skills
    if skills is None:
        await update.message.reply_text("Skills are disabled.")
        return
    try:
        entries = await skills.get_skills()
    except RegistryError:
        logger.exception("Failed to load skills")
        await update.message.reply_text("❌ Failed to fetch skills. Please try again later.")
        return
    if not entries:
        await update.message.reply_text("No skills available.")
        return

    lines = ["📚 Available skills:", ""]
    for entry in entries[:SKILLS_LIST_LIMIT]:
        preview = _preview(entry.description, SKILL_DESCRIPTION_PREVIEW)
        lines.append(f"• {entry.name}\n  {preview}")
    if len(entries) > SKILLS_LIST_LIMIT:
        lines.append(f"\n...and {len(entries) - SKILLS_LIST_LIMIT} more skills")
    lines.append("\n💡 Just ask naturally and I'll use the right skill!")
    await update.message.reply_text("\n".join(lines))


async def handle_refresh_skills(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /refresh_skills — re-download the skills catalog."""
    if not is_allowed(update):
        return

    skills = _engine(context).registry.skills
    if skills is None:
        await update.message.reply_text("Skills are disabled.")
        return
    await update.message.reply_text("🔄 Refreshing skills...")
    try:
        entries = await skills.refresh()
    except RegistryError as exc:
        logger.exception("Failed to refresh skills")
        await update.message.reply_text(f"❌ Failed to refresh skills: {exc}")
        return
    await update.message.reply_text(f"✅ Refreshed {len(entries)} skills!")


async def handle_memories(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /memories — what has been remembered about this conversation."""
    if not is_allowed(update):
        return

    memory = _engine(context).memory
    if memory is None:
        await update.message.reply_text("Memory is disabled.")
        return
    memories = await memory.store.list_memories(session_id_for(update.effective_chat.id))
    if not memories:
        await update.message.reply_text("📭 No memories saved yet.")
        return

    lines = ["📋 Your memories:", ""]
    lines.extend(f"• {m.key}: {m.value}" for m in memories[:MEMORIES_LIST_LIMIT])
    if len(memories) > MEMORIES_LIST_LIMIT:
        lines.append(f"\n...and {len(memories) - MEMORIES_LIST_LIMIT} more")
    await update.message.reply_text("\n".join(lines))


async def handle_forget(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /forget <key> — delete one memory."""
    if not is_allowed(update):
        return

    memory = _engine(context).memory
    if memory is None:
        await update.message.reply_text("Memory is disabled.")
        return
    if not context.args:
        await update.message.reply_text("Usage: /forget <key>")
        return

    key = context.args[0]
    deleted = await memory.store.delete_memory(session_id_for(update.effective_chat.id), key)
    await update.message.reply_text(f"Forgot {key}." if deleted else f"No memory named {key}.")


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Run a turn for an incoming text message, streaming progress into one reply."""
    if not is_allowed(update):
        return

    user_message = update.message.text
    chat_id = update.effective_chat.id
    logger.info("Message from %s: %s", chat_id, user_message[:80])

    engine = _engine(context)
    chat = await engine.store.get_or_create_chat_for_session(session_id_for(chat_id))

    reply = await update.message.reply_text("...")
    status_lines: list[str] = []
    streamed_text = ""
    last_edit = 0.0

    def _render() -> str:
        parts = ["\n".join(status_lines), streamed_text]
        return "\n\n".join(p for p in parts if p) or "..."

    async def _maybe_edit(force: bool = False) -> None:
        nonlocal last_edit
        now = time.monotonic()
        if force or now - last_edit >= STREAM_UPDATE_INTERVAL:
            with contextlib.suppress(Exception):
                await reply.edit_text(_render())
            last_edit = now

    async def on_tool_status(name: str, status: ToolStatus) -> None:
        status_lines.append(STATUS_LINES[status].format(name=name))
        await _maybe_edit(force=True)

    async def on_text_delta(delta: str) -> None:
        nonlocal streamed_text
        streamed_text += delta
        await _maybe_edit()

    try:
        answer = await engine.run_turn(
            chat.id,
            user_message,
            on_tool_status=on_tool_status,
            on_text_delta=on_text_delta,
        )
    except ProviderError:
        logger.exception("Error generating response for chat %d", chat.id)
        with contextlib.suppress(Exception):
            await reply.edit_text("❌ Error generating response. Please try again.")
        return
    except Exception:
        logger.exception("Error handling message for chat %d", chat.id)
        with contextlib.suppress(Exception):
            await reply.edit_text("Something went wrong. Check the logs.")
        return

    streamed_text = answer
    await _maybe_edit(force=True)

    # Small delay to avoid Telegram rate limits between conversations
    await asyncio.sleep(0.1)

