"""ChatStore — chats, messages and rolling summaries in SQLite."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from threadline import db as database
from threadline.chats.models import CONVERSATION_ROLES, Chat, Message
from threadline.errors import StaleBatchError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = "id, chat_id, role, content, summarized, created_at"
_CHAT_COLUMNS = "id, title, system_prompt, summary, summary_version, created_at, updated_at"


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class ChatStore:
    """Persists chats and their messages.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path

    # -- Chats -----------------------------------------------------------------

    async def create_chat(self, title: str, system_prompt: str = "") -> Chat:
        now = datetime.now(UTC).isoformat()
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "INSERT INTO chats (title, system_prompt, created_at, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (title, system_prompt, now, now),
            )
            chat_id = cursor.lastrowid
            logger.info("Created chat %d (%s)", chat_id, title)
            return Chat(id=chat_id, title=title, system_prompt=system_prompt,
                        created_at=now, updated_at=now)
        finally:
            await db.close()

    async def get_chat(self, chat_id: int) -> Chat | None:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_CHAT_COLUMNS} FROM chats WHERE id = ?", (chat_id,)
            )
            row = await cursor.fetchone()
            return Chat.from_row(row) if row else None
        finally:
            await db.close()

    async def get_or_create_chat_for_session(self, session_id: str) -> Chat:
        """Return the most recent chat titled *session_id*, creating one if needed.

        Bot front-ends key their conversations by session rather than by
        chat id, so the session id doubles as the chat title.
        """
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_CHAT_COLUMNS} FROM chats WHERE title = ? ORDER BY id DESC LIMIT 1",
                (session_id,),
            )
            row = await cursor.fetchone()
        finally:
            await db.close()
        if row:
            return Chat.from_row(row)
        return await self.create_chat(session_id)

    async def set_system_prompt(self, chat_id: int, system_prompt: str) -> bool:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "UPDATE chats SET system_prompt = ? WHERE id = ?", (system_prompt, chat_id)
            )
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def delete_chat(self, chat_id: int) -> bool:
        db = await database.connect(self._db_path)
        try:
            async with database.transaction(db):
                await db.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
                cursor = await db.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                logger.info("Deleted chat %d", chat_id)
            return deleted
        finally:
            await db.close()

    # -- Messages --------------------------------------------------------------

    async def add_messages(self, chat_id: int, messages: Sequence[Message]) -> list[Message]:
        """Insert *messages* in order, in a single transaction.

        Returns the same objects with ``id`` filled in.
        """
        now = datetime.now(UTC).isoformat()
        db = await database.connect(self._db_path)
        try:
            async with database.transaction(db):
                for msg in messages:
                    cursor = await db.execute(
                        "INSERT INTO messages (chat_id, role, content, summarized, created_at) "
                        "VALUES (?, ?, ?, 0, ?)",
                        (chat_id, str(msg.role), msg.content, msg.created_at),
                    )
                    msg.id = cursor.lastrowid
                    msg.chat_id = chat_id
                await db.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (now, chat_id))
            return list(messages)
        finally:
            await db.close()

    async def add_message(self, chat_id: int, role: str, content: str) -> Message:
        [msg] = await self.add_messages(chat_id, [Message(chat_id=chat_id, role=role, content=content)])
        return msg

    async def list_messages(self, chat_id: int) -> list[Message]:
        """All messages of a chat in creation order."""
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE chat_id = ? ORDER BY id",
                (chat_id,),
            )
            return [Message.from_row(row) for row in await cursor.fetchall()]
        finally:
            await db.close()

    async def list_unsummarized(
        self, chat_id: int, roles: Iterable[str] = CONVERSATION_ROLES
    ) -> list[Message]:
        """Unsummarized messages with one of *roles*, oldest first."""
        roles = tuple(str(r) for r in roles)
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                f"WHERE chat_id = ? AND summarized = 0 AND role IN ({_placeholders(len(roles))}) "
                "ORDER BY id",
                (chat_id, *roles),
            )
            return [Message.from_row(row) for row in await cursor.fetchall()]
        finally:
            await db.close()

    async def count_unsummarized(self, chat_id: int) -> int:
        """Count unsummarized user/assistant messages."""
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM messages "
                f"WHERE chat_id = ? AND summarized = 0 AND role IN ({_placeholders(2)})",
                (chat_id, *CONVERSATION_ROLES),
            )
            row = await cursor.fetchone()
            return row[0]
        finally:
            await db.close()

    async def oldest_unsummarized(self, chat_id: int, limit: int) -> list[Message]:
        """The *limit* oldest unsummarized user/assistant messages."""
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                f"WHERE chat_id = ? AND summarized = 0 AND role IN ({_placeholders(2)}) "
                "ORDER BY id LIMIT ?",
                (chat_id, *CONVERSATION_ROLES, limit),
            )
            return [Message.from_row(row) for row in await cursor.fetchall()]
        finally:
            await db.close()

    async def delete_message(self, message_id: int) -> bool:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            return cursor.rowcount > 0
        finally:
            await db.close()

    # -- Summary ---------------------------------------------------------------

    async def get_summary(self, chat_id: int) -> tuple[str, int]:
        """Return ``(summary, version)``; an unknown chat reads as ``("", 0)``."""
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "SELECT summary, summary_version FROM chats WHERE id = ?", (chat_id,)
            )
            row = await cursor.fetchone()
            return (row[0], row[1]) if row else ("", 0)
        finally:
            await db.close()

    async def apply_compaction(
        self,
        chat_id: int,
        expected_version: int,
        summary: str,
        message_ids: Sequence[int],
    ) -> int:
        """Replace the summary and mark *message_ids* summarized, atomically.

        The batch is re-validated inside the transaction: the summary must
        still be at *expected_version* and none of the messages may already
        be summarized. Messages deleted since the batch was read are
        skipped. On any failure nothing changes.

        Returns:
            The number of messages flipped to summarized.

        Raises:
            StaleBatchError: Another run already advanced this chat.
        """
        if not message_ids:
            return 0
        ids = tuple(message_ids)
        db = await database.connect(self._db_path)
        try:
            async with database.transaction(db):
                cursor = await db.execute(
                    f"SELECT COUNT(*) FROM messages WHERE id IN ({_placeholders(len(ids))}) "
                    "AND summarized = 1",
                    ids,
                )
                (already,) = await cursor.fetchone()
                if already:
                    msg = f"{already} message(s) of the batch for chat {chat_id} already summarized"
                    raise StaleBatchError(msg)

                cursor = await db.execute(
                    "UPDATE chats SET summary = ?, summary_version = summary_version + 1 "
                    "WHERE id = ? AND summary_version = ?",
                    (summary, chat_id, expected_version),
                )
                if cursor.rowcount == 0:
                    msg = f"Summary for chat {chat_id} moved past version {expected_version}"
                    raise StaleBatchError(msg)

                cursor = await db.execute(
                    f"UPDATE messages SET summarized = 1 WHERE chat_id = ? "
                    f"AND id IN ({_placeholders(len(ids))})",
                    (chat_id, *ids),
                )
                flipped = cursor.rowcount
            logger.info(
                "Compacted %d message(s) into summary v%d for chat %d",
                flipped, expected_version + 1, chat_id,
            )
            return flipped
        finally:
            await db.close()
