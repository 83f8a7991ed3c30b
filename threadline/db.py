"""SQLite connection helpers over aiosqlite.

Every store opens a short-lived connection per operation. The schema is
created lazily the first time a given database file is opened in this
process. Connections run in autocommit mode; multi-statement writes go
through :func:`transaction`, which issues an explicit ``BEGIN IMMEDIATE``
so that concurrent writers serialize on the database lock instead of
failing half-way.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import aiosqlite

from threadline.config import settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chats (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        system_prompt TEXT NOT NULL DEFAULT '',
        summary TEXT NOT NULL DEFAULT '',
        summary_version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chat_id INTEGER NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('user', 'assistant', 'tool', 'system')),
        content TEXT NOT NULL,
        summarized INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        FOREIGN KEY (chat_id) REFERENCES chats(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mcp_servers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        transport TEXT NOT NULL CHECK(transport IN ('http', 'process')),
        endpoint_url TEXT NOT NULL DEFAULT '',
        command TEXT NOT NULL DEFAULT '',
        args TEXT NOT NULL DEFAULT '[]',
        env TEXT NOT NULL DEFAULT '{}',
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS skills_cache (
        name TEXT PRIMARY KEY,
        description TEXT NOT NULL,
        content TEXT NOT NULL,
        url TEXT NOT NULL,
        fetched_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_memories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'fact',
        confidence INTEGER NOT NULL DEFAULT 80,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(session_id, key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_messages_unsummarized
        ON messages(chat_id, summarized) WHERE summarized = 0
    """,
    "CREATE INDEX IF NOT EXISTS idx_mcp_servers_enabled ON mcp_servers(enabled)",
    "CREATE INDEX IF NOT EXISTS idx_user_memories_session ON user_memories(session_id)",
)

_initialised: set[str] = set()


async def connect(db_path: Path | None = None) -> aiosqlite.Connection:
    """Open a connection, creating parent dirs and the schema on first use."""
    path = db_path or settings.database_path
    path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(path), isolation_level=None)
    await db.execute("PRAGMA foreign_keys=ON")
    await db.execute("PRAGMA busy_timeout=5000")
    key = str(path.resolve())
    if key not in _initialised:
        await db.execute("PRAGMA journal_mode=WAL")
        for statement in SCHEMA:
            await db.execute(statement)
        _initialised.add(key)
        logger.debug("Database schema ready at %s", path)
    return db


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Run the enclosed statements atomically.

    Commits on normal exit, rolls back on any exception (including
    cancellation) and re-raises it.
    """
    await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        await db.execute("ROLLBACK")
        raise
    await db.execute("COMMIT")


def _reset() -> None:
    """Forget which databases have a schema (for testing)."""
    _initialised.clear()
