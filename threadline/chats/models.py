"""Chat and Message data models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


# Only these roles take part in the unsummarized count and in compaction.
CONVERSATION_ROLES: tuple[str, ...] = (Role.USER, Role.ASSISTANT)


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Message:
    """A persisted chat message.

    ``id`` is the creation-order sequence; timestamps can collide.
    ``summarized`` only ever goes from False to True.
    """

    chat_id: int
    role: str
    content: str
    id: int | None = None
    summarized: bool = False
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = _now()

    @classmethod
    def from_row(cls, row: tuple) -> Message:
        """Build from ``(id, chat_id, role, content, summarized, created_at)``."""
        return cls(
            id=row[0],
            chat_id=row[1],
            role=row[2],
            content=row[3],
            summarized=bool(row[4]),
            created_at=row[5],
        )


@dataclass
class Chat:
    """A conversation thread and its rolling summary."""

    id: int
    title: str
    system_prompt: str = ""
    summary: str = ""
    summary_version: int = 0
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: tuple) -> Chat:
        return cls(
            id=row[0],
            title=row[1],
            system_prompt=row[2],
            summary=row[3],
            summary_version=row[4],
            created_at=row[5],
            updated_at=row[6],
        )


