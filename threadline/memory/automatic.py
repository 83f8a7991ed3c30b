"""Automatic memory extraction.

After each completed turn a background task asks the summary model what,
if anything, in the user's message is worth remembering, and upserts the
answer into the session's memories. Stored memories are shown to the
chat model at the start of every later turn in that session.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from threadline.config import settings
from threadline.memory.models import DEFAULT_CATEGORY, DEFAULT_CONFIDENCE

if TYPE_CHECKING:
    from collections.abc import Sequence

    from threadline.llm.messages import Provider
    from threadline.memory.models import Memory
    from threadline.memory.store import MemoryStore

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM = "You are a memory extraction assistant. Always respond with valid JSON arrays."

MEMORY_PREAMBLE = "You have access to the following information about this user:\n"
MEMORY_FOOTER = "\nUse this information to personalize your responses."


# -- Data structures ---------------------------------------------------------


@dataclass
class ExtractedMemory:
    key: str
    value: str
    category: str = DEFAULT_CATEGORY
    confidence: int = DEFAULT_CONFIDENCE


# -- Prompt building ---------------------------------------------------------


def build_extraction_prompt(user_message: str) -> str:
    return (
        "You are a memory extraction assistant. Analyze the following user message "
        "and extract any important information that should be remembered.\n\n"
        f'User message: "{user_message}"\n\n'
        "Extract memories in these categories:\n"
        "- reminder: Appointments, meetings, tasks, deadlines, things to remember\n"
        "- fact: Personal information, preferences, important details about the user\n"
        "- preference: How the user likes things done, communication style, formatting\n"
        "- entity: People, organizations, locations mentioned\n\n"
        "Return a JSON array of memories with this structure:\n"
        "[\n"
        "  {\n"
        '    "key": "unique_identifier (e.g., reminder_meeting_ram_5pm)",\n'
        '    "value": "detailed description (e.g., Meeting with Ram at 5 PM EST)",\n'
        '    "category": "category_name",\n'
        '    "confidence": 85\n'
        "  }\n"
        "]\n\n"
        "Guidelines:\n"
        "- Only extract if information is genuinely useful to remember\n"
        "- For reminders, include date/time/location if mentioned\n"
        "- Create descriptive but concise keys\n"
        "- Confidence 90-100 for explicit statements, 70-89 for implied information\n"
        "- If no memories to extract, return empty array []\n\n"
        "Return ONLY the JSON array, no other text."
    )


def format_memories_for_prompt(memories: Sequence[Memory]) -> str:
    """Render *memories* as the block shown to the chat model. Empty if none."""
    if not memories:
        return ""
    lines = [f"- {m.key}: {m.value}" for m in memories]
    block = "\n=== USER MEMORY ===\n" + "\n".join(lines) + "\n=== END MEMORY ===\n"
    return MEMORY_PREAMBLE + block + MEMORY_FOOTER


# -- Parsing -----------------------------------------------------------------


def _coerce(item: Any) -> ExtractedMemory | None:
    if not isinstance(item, dict):
        return None
    key = str(item.get("key") or "").strip()
    value = str(item.get("value") or "").strip()
    if not key or not value:
        return None
    try:
        confidence = int(item.get("confidence") or 0)
    except (TypeError, ValueError):
        confidence = 0
    return ExtractedMemory(
        key=key,
        value=value,
        category=str(item.get("category") or "").strip() or DEFAULT_CATEGORY,
        confidence=confidence if confidence > 0 else DEFAULT_CONFIDENCE,
    )


def parse_extraction_result(text: str) -> list[ExtractedMemory]:
    """Parse the extraction model's JSON array. Unparseable output yields nothing."""
    text = text.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # Try to extract JSON from markdown fences
        start = text.find("[")
        end = text.rfind("]") + 1
        if "```" not in text or start < 0 or end <= start:
            logger.warning("Failed to parse memory extraction JSON")
            return []
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError:
            logger.warning("Failed to parse memory extraction JSON")
            return []

    if not isinstance(data, list):
        logger.warning("Memory extraction returned %s, expected a list", type(data).__name__)
        return []
    return [m for m in (_coerce(item) for item in data) if m is not None]


# -- Background pipeline -----------------------------------------------------


class MemoryExtractor:
    """Runs extraction tasks in the background and saves what they find.

    Args:
        store: Where memories are kept.
        provider: Model used for extraction (its ``complete_text``).
        timeout: Seconds one extraction may take.
    """

    def __init__(
        self,
        store: MemoryStore,
        provider: Provider,
        timeout: float | None = None,
    ) -> None:
        self.store = store
        self._provider = provider
        self._timeout = (
            timeout if timeout is not None else settings.memory_extraction_timeout_seconds
        )
        self._tasks: set[asyncio.Task[int]] = set()

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def prompt_for(self, session_id: str) -> str:
        """Memory block for *session_id*, or an empty string."""
        return format_memories_for_prompt(await self.store.list_memories(session_id))

    def schedule(self, session_id: str, user_message: str) -> None:
        """Start extraction for *user_message*. Returns immediately."""
        task = asyncio.create_task(
            self.extract_and_save(session_id, user_message),
            name=f"memory-{session_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def extract_and_save(self, session_id: str, user_message: str) -> int:
        """Extract memories from *user_message* and upsert them. Returns how many were saved.

        Failures are logged; nothing is raised.
        """
        try:
            text = await asyncio.wait_for(
                self._provider.complete_text(
                    build_extraction_prompt(user_message), system=EXTRACTION_SYSTEM
                ),
                self._timeout,
            )
            saved = 0
            for mem in parse_extraction_result(text):
                await self.store.set_memory(
                    session_id, mem.key, mem.value, mem.category, mem.confidence
                )
                logger.info("Stored memory for %s: %s = %s", session_id, mem.key, mem.value)
                saved += 1
            return saved
        except Exception:
            logger.exception("Memory extraction failed for %s (non-fatal)", session_id)
            return 0

    async def wait_idle(self) -> None:
        while pending := [t for t in self._tasks if not t.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
