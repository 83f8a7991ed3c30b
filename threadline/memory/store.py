"""MemoryStore — per-session key/value memories in SQLite."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from threadline import db as database
from threadline.memory.models import DEFAULT_CATEGORY, DEFAULT_CONFIDENCE, Memory

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_COLUMNS = "id, session_id, key, value, category, confidence, created_at, updated_at"
SEARCH_LIMIT = 50


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class MemoryStore:
    """Memories keyed by session id, newest first.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path

    async def set_memory(
        self,
        session_id: str,
        key: str,
        value: str,
        category: str = DEFAULT_CATEGORY,
        confidence: int = DEFAULT_CONFIDENCE,
    ) -> None:
        """Insert a memory, or overwrite the one already stored under *key*."""
        now = datetime.now(UTC).isoformat()
        db = await database.connect(self._db_path)
        try:
            await db.execute(
                "INSERT INTO user_memories "
                "(session_id, key, value, category, confidence, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(session_id, key) DO UPDATE SET "
                "value = excluded.value, category = excluded.category, "
                "confidence = excluded.confidence, updated_at = excluded.updated_at",
                (session_id, key, value, category, confidence, now, now),
            )
        finally:
            await db.close()
        logger.debug("Stored memory %s for %s", key, session_id)

    async def list_memories(self, session_id: str) -> list[Memory]:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM user_memories WHERE session_id = ? "
                "ORDER BY created_at DESC, id DESC",
                (session_id,),
            )
            return [Memory.from_row(row) for row in await cursor.fetchall()]
        finally:
            await db.close()

    async def search_memories(self, session_id: str, query: str) -> list[Memory]:
        """Memories whose key, value or category contains *query*."""
        pattern = _like_pattern(query)
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM user_memories WHERE session_id = ? AND ("
                "key LIKE ? ESCAPE '\\' OR value LIKE ? ESCAPE '\\' "
                "OR category LIKE ? ESCAPE '\\') "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (session_id, pattern, pattern, pattern, SEARCH_LIMIT),
            )
            return [Memory.from_row(row) for row in await cursor.fetchall()]
        finally:
            await db.close()

    async def delete_memory(self, session_id: str, key: str) -> bool:
        """Delete one memory. Returns False if *key* was not stored."""
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "DELETE FROM user_memories WHERE session_id = ? AND key = ?",
                (session_id, key),
            )
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def clear_memories(self, session_id: str) -> int:
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "DELETE FROM user_memories WHERE session_id = ?", (session_id,)
            )
            return cursor.rowcount
        finally:
            await db.close()
