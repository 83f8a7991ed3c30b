"""Background compaction of old turns into a rolling narrative summary.

After every persisted turn the engine calls :meth:`Summarizer.trigger`.
That only schedules work: the unsummarized count is checked on a
background task so the user's response is never delayed. Each chat has
at most one worker at a time; a trigger that arrives while its worker is
busy just asks the worker to check again when it finishes.

A compaction run folds the oldest ``batch_size`` unsummarized
user/assistant messages into the summary and marks them consumed in one
transaction (see :meth:`ChatStore.apply_compaction`). A failed run is
logged and left for the next trigger.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from threadline.chats.models import Role
from threadline.config import settings
from threadline.errors import CompactionError, StaleBatchError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from threadline.chats.models import Message
    from threadline.chats.store import ChatStore
    from threadline.llm.messages import Provider

logger = logging.getLogger(__name__)

# A worker that keeps meeting the threshold stops after this many runs and
# waits for the next trigger.
MAX_RUNS_PER_WAKEUP = 20


def format_transcript(batch: Sequence[Message]) -> str:
    lines = []
    for m in batch:
        speaker = "Assistant" if m.role == Role.ASSISTANT else "User"
        lines.append(f"{speaker}: {m.content}")
    return "\n".join(lines) + "\n"


def build_merge_prompt(current_summary: str, batch: Sequence[Message]) -> str:
    """Prompt asking the model to fold *batch* into *current_summary*."""
    transcript = format_transcript(batch)
    if current_summary.strip():
        return (
            "You are a helpful context compressor.\n"
            "Current Conversation Summary:\n"
            f'"""{current_summary}"""\n\n'
            "New Conversation Chunk to Integrate:\n"
            f'"""{transcript}"""\n\n'
            'Task: Create a cohesive, concise summary that merges the "New Conversation '
            'Chunk" into the "Current Conversation Summary". Preserve key facts, names, '
            "decisions, and context. The output should be a plain text narrative.\n"
            "Updated Summary:"
        )
    return (
        "You are a helpful context compressor.\n"
        "Conversation Chunk:\n"
        f'"""{transcript}"""\n\n'
        "Task: Create a concise summary of this conversation chunk. Preserve key facts, "
        "names, and user intent. The output should be a plain text narrative.\n"
        "Summary:"
    )


class Summarizer:
    """Per-chat compaction workers.

    Args:
        store: Chat storage.
        provider: Model used to write summaries.
        threshold: Unsummarized user/assistant messages that trigger a run.
        batch_size: Messages folded per run.
        timeout: Seconds a single run may take.
    """

    def __init__(
        self,
        store: ChatStore,
        provider: Provider,
        threshold: int | None = None,
        batch_size: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._threshold = threshold if threshold is not None else settings.summary_threshold
        self._batch_size = batch_size if batch_size is not None else settings.summary_batch_size
        self._timeout = timeout if timeout is not None else settings.summary_timeout_seconds
        self._workers: dict[int, asyncio.Task[None]] = {}
        self._recheck: set[int] = set()

    @property
    def active_chats(self) -> list[int]:
        return [cid for cid, task in self._workers.items() if not task.done()]

    def trigger(self, chat_id: int) -> None:
        """Schedule a threshold check for *chat_id*. Returns immediately."""
        worker = self._workers.get(chat_id)
        if worker is not None and not worker.done():
            self._recheck.add(chat_id)
            return
        self._workers[chat_id] = asyncio.create_task(
            self._worker(chat_id), name=f"summarize-chat-{chat_id}"
        )

    async def wait_idle(self) -> None:
        """Wait until no compaction work is pending."""
        while pending := [t for t in self._workers.values() if not t.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding workers and wait for them to stop."""
        tasks = [t for t in self._workers.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._recheck.clear()

    async def _worker(self, chat_id: int) -> None:
        try:
            for _ in range(MAX_RUNS_PER_WAKEUP):
                self._recheck.discard(chat_id)
                try:
                    count = await self._store.count_unsummarized(chat_id)
                    if count < self._threshold:
                        if chat_id in self._recheck:
                            continue
                        return
                    await asyncio.wait_for(self.compact(chat_id), self._timeout)
                except StaleBatchError as exc:
                    # Someone else advanced the chat; look again.
                    logger.info("Compaction for chat %d superseded: %s", chat_id, exc)
                except TimeoutError:
                    logger.warning(
                        "Compaction for chat %d timed out after %.0fs", chat_id, self._timeout
                    )
                    return
                except CompactionError as exc:
                    logger.warning("Compaction for chat %d failed: %s", chat_id, exc)
                    return
                except Exception:
                    logger.exception("Compaction for chat %d failed", chat_id)
                    return
        finally:
            if self._workers.get(chat_id) is asyncio.current_task():
                del self._workers[chat_id]

    async def compact(self, chat_id: int) -> int:
        """Fold the oldest unsummarized batch of *chat_id* into its summary.

        Compacts whatever is available if fewer than a full batch remain.

        Returns:
            Number of messages marked summarized (0 if nothing was pending).

        Raises:
            CompactionError: The model call or the commit failed.
            StaleBatchError: A concurrent run already consumed the batch.
        """
        summary, version = await self._store.get_summary(chat_id)
        batch = await self._store.oldest_unsummarized(chat_id, self._batch_size)
        if not batch:
            return 0

        logger.info("Summarizing %d message(s) for chat %d", len(batch), chat_id)
        prompt = build_merge_prompt(summary, batch)
        try:
            new_summary = (await self._provider.complete_text(prompt)).strip()
        except Exception as exc:
            msg = f"Summary generation failed: {exc}"
            raise CompactionError(msg) from exc
        if not new_summary:
            msg = "Model returned an empty summary"
            raise CompactionError(msg)

        try:
            return await self._store.apply_compaction(
                chat_id, version, new_summary, [m.id for m in batch]
            )
        except CompactionError:
            raise
        except Exception as exc:
            msg = f"Failed to commit summary: {exc}"
            raise CompactionError(msg) from exc
