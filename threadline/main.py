"""Threadline entry point."""

import logging

from threadline.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Start the Telegram bot on top of the chat engine."""
    from threadline.bot.app import create_app
    from threadline.engine.turn import ChatEngine
    from threadline.llm.client import AnthropicProvider

    if not settings.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN is not set")
        raise SystemExit(1)

    allowed = settings.get_allowed_user_ids()
    if not allowed:
        logger.warning("ALLOWED_USER_IDS is empty; bot will reject all messages")
    else:
        logger.info("Allowed user IDs: %s", allowed)

    engine = ChatEngine.create(AnthropicProvider())
    logger.info("Starting Threadline on Telegram with model %s...", settings.chat_model)
    app = create_app(engine)
    app.run_polling()


if __name__ == "__main__":
    main()
