"""Tests for the Telegram user allowlist."""

from unittest.mock import MagicMock

from threadline.bot.security import is_allowed


def _update(user_id: int | None) -> MagicMock:
    update = MagicMock()
    if user_id is None:
        update.effective_user = None
    else:
        update.effective_user.id = user_id
    return update


def test_allowed_user(monkeypatch) -> None:
    monkeypatch.setattr("threadline.config.settings.allowed_user_ids", "111,222")
    assert is_allowed(_update(111)) is True


def test_unknown_user_rejected(monkeypatch) -> None:
    monkeypatch.setattr("threadline.config.settings.allowed_user_ids", "111,222")
    assert is_allowed(_update(333)) is False


def test_empty_allowlist_rejects_everyone(monkeypatch) -> None:
    monkeypatch.setattr("threadline.config.settings.allowed_user_ids", "")
    assert is_allowed(_update(111)) is False


def test_missing_user_rejected(monkeypatch) -> None:
    monkeypatch.setattr("threadline.config.settings.allowed_user_ids", "111")
    assert is_allowed(_update(None)) is False
