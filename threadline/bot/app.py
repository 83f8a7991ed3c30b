"""Telegram application factory."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from telegram.ext import Application, CommandHandler, MessageHandler, filters

from threadline.bot.handlers import (
    handle_forget,
    handle_memories,
    handle_message,
    handle_new,
    handle_refresh_skills,
    handle_skills,
    handle_start,
    handle_status,
)
from threadline.config import settings

if TYPE_CHECKING:
    from threadline.engine.turn import ChatEngine

logger = logging.getLogger(__name__)


async def _post_shutdown(app: Application) -> None:
    """Called during graceful shutdown."""
    engine: ChatEngine | None = app.bot_data.get("engine")
    if engine is not None:
        await engine.close()
        logger.info("Engine closed")


def create_app(engine: ChatEngine) -> Application:
    """Build the Telegram application around a shared engine."""
    app = Application.builder().token(settings.telegram_bot_token).concurrent_updates(True).build()
    app.bot_data["engine"] = engine

    app.add_handler(CommandHandler("start", handle_start))
    app.add_handler(CommandHandler("new", handle_new))
    app.add_handler(CommandHandler("status", handle_status))
    app.add_handler(CommandHandler("skills", handle_skills))
    app.add_handler(CommandHandler("refresh_skills", handle_refresh_skills))
    app.add_handler(CommandHandler("memories", handle_memories))
    app.add_handler(CommandHandler("forget", handle_forget))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    app.post_shutdown = _post_shutdown
    return app
