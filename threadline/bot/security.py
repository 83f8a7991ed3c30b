"""User allowlist gate for the Telegram bot."""

import logging
from functools import cache

from telegram import Update

from threadline.config import settings

logger = logging.getLogger(__name__)


@cache
def allowed_user_ids() -> frozenset[int]:
    """ALLOWED_USER_IDS, parsed once per process."""
    ids = frozenset(settings.get_allowed_user_ids())
    if not ids:
        logger.warning("ALLOWED_USER_IDS is empty; the bot will answer nobody")
    return ids


def _reset() -> None:
    """Forget the parsed allowlist (for testing)."""
    allowed_user_ids.cache_clear()


def is_allowed(update: Update) -> bool:
    """True only for users on the allowlist. Rejected updates are logged and dropped."""
    user = update.effective_user
    if user is None or user.id not in allowed_user_ids():
        logger.info("Ignoring update from user %s", user.id if user else "unknown")
        return False
    return True
