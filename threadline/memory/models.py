"""Memory data model."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_CATEGORY = "fact"
DEFAULT_CONFIDENCE = 80


@dataclass(frozen=True)
class Memory:
    """One remembered fact about a session's user, unique by ``key``."""

    session_id: str
    key: str
    value: str
    category: str = DEFAULT_CATEGORY
    confidence: int = DEFAULT_CONFIDENCE
    id: int | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: tuple) -> Memory:
        return cls(
            id=row[0],
            session_id=row[1],
            key=row[2],
            value=row[3],
            category=row[4],
            confidence=row[5],
            created_at=row[6],
            updated_at=row[7],
        )
