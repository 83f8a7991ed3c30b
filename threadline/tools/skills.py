"""Skills catalog — documentation-backed pseudo-tools with a TTL cache.

A skill is a ``SKILL.md`` document from a GitHub repository. It has no
live execution: "calling" a skill returns its documentation together with
the model's query, and the model acts on that in its next step.

The cache is refreshed all-or-nothing. Once the snapshot is older than
the TTL the whole catalog is fetched again and the ``skills_cache`` table
is replaced in one transaction.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import yaml

from threadline import db as database
from threadline.config import settings
from threadline.errors import NotFoundError, RegistryError
from threadline.tools.models import SKILL_NAME_MAX_LEN, sanitize_name

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
GITHUB_RAW = "https://raw.githubusercontent.com"
MAX_CONCURRENT_FETCHES = 8

_FRONT_MATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_NAME_LINE = re.compile(r"^name:\s*(.+)$", re.MULTILINE)
_DESC_LINE = re.compile(r'^description:\s*"?(.+?)"?\s*$', re.MULTILINE)


@dataclass(frozen=True)
class SkillCacheEntry:
    name: str
    description: str
    full_content: str
    source_url: str
    fetched_at: float


class SkillSource(Protocol):
    async def fetch(self) -> list[SkillCacheEntry]: ...


def parse_skill_document(content: str, fallback_name: str) -> tuple[str, str]:
    """Extract ``(name, description)`` from a SKILL.md document.

    Reads YAML front matter when present, falling back to ``name:`` /
    ``description:`` lines anywhere in the text.
    """
    meta: dict[str, Any] = {}
    if match := _FRONT_MATTER.match(content):
        try:
            loaded = yaml.safe_load(match.group(1))
        except yaml.YAMLError:
            loaded = None
        if isinstance(loaded, dict):
            meta = loaded

    name = str(meta.get("name") or "").strip()
    description = str(meta.get("description") or "").strip()
    if not name and (m := _NAME_LINE.search(content)):
        name = m.group(1).strip()
    if not description and (m := _DESC_LINE.search(content)):
        description = m.group(1).strip()

    name = name or fallback_name
    return name, description or f"Open Skill: {name}"


class GitHubSkillSource:
    """Fetches ``skills/<dir>/SKILL.md`` documents from a GitHub repository."""

    def __init__(
        self,
        repo: str | None = None,
        branch: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._repo = repo or settings.skills_repo
        self._branch = branch or settings.skills_branch
        self._timeout = timeout if timeout is not None else settings.skills_fetch_timeout_seconds

    async def fetch(self) -> list[SkillCacheEntry]:
        """Fetch every skill in the repository.

        Raises:
            RegistryError: The directory listing could not be retrieved.
        """
        list_url = f"{GITHUB_API}/repos/{self._repo}/contents/skills"
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                resp = await client.get(
                    list_url,
                    params={"ref": self._branch},
                    headers={"Accept": "application/vnd.github.v3+json"},
                )
                resp.raise_for_status()
                listing = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                msg = f"Failed to fetch skills list: {exc}"
                raise RegistryError(msg) from exc

            if not isinstance(listing, list):
                msg = "Unexpected skills listing format"
                raise RegistryError(msg)

            dirs = [d["name"] for d in listing if isinstance(d, dict) and d.get("type") == "dir"]
            semaphore = asyncio.Semaphore(MAX_CONCURRENT_FETCHES)
            fetched_at = time.time()

            async def _fetch_one(dir_name: str) -> SkillCacheEntry | None:
                url = f"{GITHUB_RAW}/{self._repo}/{self._branch}/skills/{dir_name}/SKILL.md"
                async with semaphore:
                    try:
                        skill_resp = await client.get(url)
                    except httpx.HTTPError as exc:
                        logger.warning("Error fetching skill %s: %s", dir_name, exc)
                        return None
                if skill_resp.status_code != 200:
                    logger.debug("Skipping skill %s (HTTP %d)", dir_name, skill_resp.status_code)
                    return None
                name, description = parse_skill_document(skill_resp.text, dir_name)
                return SkillCacheEntry(
                    name=name,
                    description=description,
                    full_content=skill_resp.text,
                    source_url=url,
                    fetched_at=fetched_at,
                )

            results = await asyncio.gather(*(_fetch_one(d) for d in dirs))
        return [r for r in results if r is not None]


def format_skill_result(skill: SkillCacheEntry, query: str) -> str:
    """The text a skill "returns": its documentation plus the query."""
    return (
        f"Skill: {skill.name}\n\n"
        f"Description: {skill.description}\n\n"
        f"Documentation:\n{skill.full_content}\n\n"
        f"User Query: {query}\n\n"
        "Please use the skill documentation above to help the user with their query."
    )


class SkillCache:
    """Shared, TTL-bound snapshot of the skills catalog.

    Args:
        source: Where to fetch skills from on refresh.
        db_path: Database holding the persisted copy.
        ttl: Seconds a snapshot stays valid.
        clock: Returns the current time in seconds. Injected in tests.
    """

    def __init__(
        self,
        source: SkillSource | None = None,
        db_path: Path | None = None,
        ttl: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source or GitHubSkillSource()
        self._db_path = db_path
        self._ttl = ttl if ttl is not None else settings.skills_cache_ttl_seconds
        self._clock = clock
        self._entries: list[SkillCacheEntry] = []
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and self._clock() - self._loaded_at < self._ttl

    async def get_skills(self) -> list[SkillCacheEntry]:
        """Return the current catalog, refreshing it first if expired.

        Raises:
            RegistryError: A refresh was needed and the source failed.
        """
        if self._is_fresh():
            return self._entries
        async with self._lock:
            if self._is_fresh():
                return self._entries
            if await self._load_persisted():
                return self._entries
            return await self._refresh_locked()

    async def refresh(self) -> list[SkillCacheEntry]:
        """Force a full refresh."""
        async with self._lock:
            return await self._refresh_locked()

    async def find(self, name: str) -> SkillCacheEntry | None:
        """Look a skill up by sanitized or exact name."""
        for skill in await self.get_skills():
            if sanitize_name(skill.name, SKILL_NAME_MAX_LEN) == name or skill.name == name:
                return skill
        return None

    async def execute_skill(self, name: str, query: str) -> str:
        """Resolve *name* and package its documentation with *query*.

        Raises:
            NotFoundError: No such skill in the current catalog.
            RegistryError: The catalog had to be refreshed and could not be.
        """
        skill = await self.find(name)
        if skill is None:
            msg = f"Skill not found: {name}"
            raise NotFoundError(msg)
        return format_skill_result(skill, query)

    async def _load_persisted(self) -> bool:
        """Adopt the stored catalog if it is still within the TTL."""
        cutoff = self._clock() - self._ttl
        db = await database.connect(self._db_path)
        try:
            cursor = await db.execute(
                "SELECT name, description, content, url, fetched_at FROM skills_cache"
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        if not rows or any(row[4] <= cutoff for row in rows):
            return False
        self._entries = [SkillCacheEntry(*row) for row in rows]
        self._loaded_at = min(row[4] for row in rows)
        logger.info("Loaded %d cached skills", len(self._entries))
        return True

    async def _refresh_locked(self) -> list[SkillCacheEntry]:
        skills = await self._source.fetch()
        db = await database.connect(self._db_path)
        try:
            async with database.transaction(db):
                await db.execute("DELETE FROM skills_cache")
                for s in skills:
                    await db.execute(
                        "INSERT OR REPLACE INTO skills_cache "
                        "(name, description, content, url, fetched_at) VALUES (?, ?, ?, ?, ?)",
                        (s.name, s.description, s.full_content, s.source_url, s.fetched_at),
                    )
        finally:
            await db.close()
        self._entries = skills
        self._loaded_at = self._clock()
        self.refresh_count += 1
        logger.info("Cached %d skills", len(skills))
        return skills
