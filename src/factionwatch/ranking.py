from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import aclosing
from pathlib import Path
from typing import Any

import aiosqlite
from loguru import logger

from factionwatch.client import ProgressCallback, RankingSource, iter_ranking_pages
from factionwatch.models import RankingEntry

# Provider rank tiers, best first.
RANK_TIERS = ["diamond", "platinum", "gold", "silver", "bronze", "unranked"]


def _tier(rank: str | None) -> int | None:
    text = (rank or "").lower()
    for index, tier in enumerate(RANK_TIERS):
        if tier in text:
            return index
    return None


def _entry(raw: dict[str, Any]) -> RankingEntry | None:
    try:
        return RankingEntry(
            id=int(raw["id"]),
            name=str(raw.get("name") or ""),
            members=int(raw.get("members") or 0),
            position=int(raw.get("position") or 0),
            rank=str(raw.get("rank") or ""),
        )
    except (KeyError, TypeError, ValueError):
        return None


class RankingCache:
    """Local copy of every faction in the tracked rank tiers.

    Only used to resolve names and to pick factions in bulk by rank. The cache
    is replaced as a whole on every refresh because positions shift between
    refreshes.
    """

    def __init__(
        self,
        db_path: Path,
        source: RankingSource,
        tracked_ranks: Sequence[str] = ("diamond", "platinum"),
        refresh_interval_seconds: float = 7 * 24 * 60 * 60,
        stop_after_untracked: int = 50,
        max_pages: int = 20,
        page_size: int = 100,
        page_delay: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._db_path = db_path
        self._source = source
        self.tracked_ranks = [r.lower() for r in tracked_ranks]
        self.refresh_interval_seconds = refresh_interval_seconds
        self.stop_after_untracked = stop_after_untracked
        self.max_pages = max_pages
        self.page_size = page_size
        self.page_delay = page_delay
        self._clock = clock
        self._sleep = sleep
        self._entries: list[RankingEntry] = []
        self._last_refreshed = 0.0
        self._refresh_lock = asyncio.Lock()
        tiers = [_tier(r) for r in self.tracked_ranks]
        self._lowest_tracked_tier = max((t for t in tiers if t is not None), default=len(RANK_TIERS))

    @property
    def last_refreshed(self) -> float:
        return self._last_refreshed

    @property
    def entries(self) -> list[RankingEntry]:
        return list(self._entries)

    async def init(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS ranking_entries (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    members INTEGER NOT NULL,
                    position INTEGER NOT NULL,
                    rank TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ranking_meta (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    last_refreshed REAL NOT NULL
                );
                """
            )
            await db.commit()

    async def load(self) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT id, name, members, position, rank FROM ranking_entries ORDER BY position"
            )
            rows = await cursor.fetchall()
            cursor = await db.execute("SELECT last_refreshed FROM ranking_meta WHERE id = 1")
            meta = await cursor.fetchone()

        self._entries = [RankingEntry(int(i), str(n), int(m), int(p), str(r)) for i, n, m, p, r in rows]
        self._last_refreshed = float(meta[0]) if meta else 0.0

    def is_stale(self) -> bool:
        return self._clock() - self._last_refreshed > self.refresh_interval_seconds

    def is_tracked_rank(self, rank: str | None) -> bool:
        text = (rank or "").lower()
        return bool(text) and any(r in text for r in self.tracked_ranks)

    def is_below_tracked(self, rank: str | None) -> bool:
        tier = _tier(rank)
        return tier is not None and tier > self._lowest_tracked_tier

    async def refresh(self, on_progress: ProgressCallback | None = None) -> list[RankingEntry]:
        async with self._refresh_lock:
            logger.info("Refreshing ranking cache for ranks {}", self.tracked_ranks)
            collected: list[RankingEntry] = []
            untracked_run = 0
            pages = iter_ranking_pages(
                self._source, self.page_size, self.max_pages, self.page_delay, self._sleep
            )

            async with aclosing(pages):
                async for page, rows in pages:
                    for raw in rows:
                        entry = _entry(raw)
                        if entry is None:
                            continue
                        if self.is_tracked_rank(entry.rank):
                            collected.append(entry)
                            untracked_run = 0
                        elif self.is_below_tracked(entry.rank):
                            untracked_run += 1

                    if on_progress:
                        on_progress(page, len(collected))
                    if untracked_run >= self.stop_after_untracked:
                        logger.info(
                            "Passed the tracked ranks after {} factions, stopping", len(collected)
                        )
                        break

            await self._replace(collected)
            logger.info("Ranking cache updated with {} factions", len(collected))
            return self.entries

    async def _replace(self, entries: list[RankingEntry]) -> None:
        now = self._clock()
        unique = list({e.id: e for e in entries}.values())
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM ranking_entries")
            await db.executemany(
                """
                INSERT INTO ranking_entries (id, name, members, position, rank)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(e.id, e.name, e.members, e.position, e.rank) for e in unique],
            )
            await db.execute(
                """
                INSERT INTO ranking_meta (id, last_refreshed) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET last_refreshed = excluded.last_refreshed
                """,
                (now,),
            )
            await db.commit()
        self._entries = sorted(unique, key=lambda e: e.position)
        self._last_refreshed = now

    async def ensure_fresh(self) -> bool:
        if not self.is_stale():
            return False
        await self.refresh()
        return True

    def get_by_rank(
        self, rank: str, min_members: int | None = None, max_members: int | None = None
    ) -> list[RankingEntry]:
        wanted = rank.lower().strip()
        if wanted not in self.tracked_ranks:
            logger.warning("Rank {} is not tracked (tracked: {})", rank, self.tracked_ranks)
            return []

        picked = [e for e in self._entries if wanted in e.rank.lower()]
        if min_members:
            picked = [e for e in picked if e.members >= min_members]
        if max_members:
            picked = [e for e in picked if e.members <= max_members]
        return picked

    def get_by_id(self, faction_id: int) -> RankingEntry | None:
        for entry in self._entries:
            if entry.id == faction_id:
                return entry
        return None

    def search(self, query: str, limit: int = 25) -> list[RankingEntry]:
        q = query.lower().strip()
        hits = [e for e in self._entries if q in e.name.lower() or q in str(e.id)]

        def relevance(entry: RankingEntry) -> tuple[int, int]:
            name = entry.name.lower()
            if name == q:
                return 0, entry.position
            if name.startswith(q):
                return 1, entry.position
            return 2, entry.position

        return sorted(hits, key=relevance)[:limit]

    def stats(self) -> dict[str, Any]:
        by_rank: dict[str, int] = {}
        for entry in self._entries:
            base = (entry.rank or "Unknown").split(" ")[0]
            by_rank[base] = by_rank.get(base, 0) + 1
        return {
            "total": len(self._entries),
            "last_refreshed": self._last_refreshed,
            "by_rank": by_rank,
        }
