from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

import aiosqlite

from factionwatch.models import Credential


@dataclass(slots=True)
class ChangeCount:
    added: int = 0
    skipped: int = 0
    removed: int = 0


class TrackingRepository:
    """Tracked faction ids and API keys with their per-key rate limits."""

    def __init__(
        self,
        db_path: Path,
        default_rate_limit: int = 20,
        max_rate_limit: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self.default_rate_limit = default_rate_limit
        self.max_rate_limit = max_rate_limit
        self._clock = clock

    async def init(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tracked_factions (
                    faction_id INTEGER PRIMARY KEY,
                    added_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS api_keys (
                    key TEXT PRIMARY KEY,
                    rate_limit INTEGER NOT NULL,
                    added_at INTEGER NOT NULL
                );
                """
            )
            await db.commit()

    def clamp_rate_limit(self, rate_limit: int | None) -> int:
        if rate_limit is None:
            rate_limit = self.default_rate_limit
        return max(1, min(int(rate_limit), self.max_rate_limit))

    async def add_factions(self, faction_ids: Iterable[int]) -> ChangeCount:
        result = ChangeCount()
        now = int(self._clock())
        async with aiosqlite.connect(self._db_path) as db:
            for faction_id in dict.fromkeys(int(f) for f in faction_ids):
                cursor = await db.execute(
                    "INSERT OR IGNORE INTO tracked_factions (faction_id, added_at) VALUES (?, ?)",
                    (faction_id, now),
                )
                if cursor.rowcount:
                    result.added += 1
                else:
                    result.skipped += 1
            await db.commit()
        return result

    async def remove_factions(self, faction_ids: Iterable[int]) -> ChangeCount:
        result = ChangeCount()
        async with aiosqlite.connect(self._db_path) as db:
            for faction_id in dict.fromkeys(int(f) for f in faction_ids):
                cursor = await db.execute(
                    "DELETE FROM tracked_factions WHERE faction_id = ?", (faction_id,)
                )
                result.removed += cursor.rowcount
            await db.commit()
        return result

    async def list_factions(self) -> list[int]:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT faction_id FROM tracked_factions ORDER BY added_at, faction_id"
            )
            rows = await cursor.fetchall()
        return [int(row[0]) for row in rows]

    async def add_api_key(self, key: str, rate_limit: int | None = None) -> bool:
        key = key.strip()
        if not key:
            raise ValueError("API key must not be empty")
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO api_keys (key, rate_limit, added_at) VALUES (?, ?, ?)",
                (key, self.clamp_rate_limit(rate_limit), int(self._clock())),
            )
            await db.commit()
            return bool(cursor.rowcount)

    async def remove_api_key(self, key: str) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute("DELETE FROM api_keys WHERE key = ?", (key.strip(),))
            await db.commit()
            return bool(cursor.rowcount)

    async def set_key_rate_limit(self, key: str, rate_limit: int) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE api_keys SET rate_limit = ? WHERE key = ?",
                (self.clamp_rate_limit(rate_limit), key.strip()),
            )
            await db.commit()
            return bool(cursor.rowcount)

    async def list_credentials(self) -> list[Credential]:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT key, rate_limit FROM api_keys ORDER BY added_at, key"
            )
            rows = await cursor.fetchall()
        return [Credential(key=str(k), rate_limit=self.clamp_rate_limit(int(r))) for k, r in rows]
