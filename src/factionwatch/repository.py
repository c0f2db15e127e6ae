from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from pathlib import Path
from typing import TypeVar

import aiosqlite
from loguru import logger

from factionwatch.errors import StorageError
from factionwatch.models import (
    ActivityLevel,
    AggregateRow,
    DbStats,
    FactionRecord,
    LeaderboardEntry,
    MemberRecord,
    Snapshot,
)
from factionwatch.slots import (
    cutoff_date,
    date_of,
    day_of_week,
    hour_of,
    sub_slot_of,
)

T = TypeVar("T")

# Rows per multi-row INSERT, keeps bound parameters under SQLite's limit.
BATCH_ROWS = 200
PRUNE_BATCH = 500
SLOT_TOLERANCE_SECONDS = 60
DAY_SECONDS = 24 * 60 * 60


def _batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _split_ids(raw: str | None) -> list[int]:
    if not raw:
        return []
    return [int(v) for v in raw.split(",")]


class ActivityRepository:
    def __init__(
        self,
        db_path: Path,
        clock: Callable[[], float] = time.time,
        busy_timeout: float = 30.0,
    ) -> None:
        self._db_path = db_path
        self._clock = clock
        self._busy_timeout = busy_timeout

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self._db_path, timeout=self._busy_timeout)

    async def init(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS factions (
                    id INTEGER PRIMARY KEY,
                    name TEXT,
                    last_updated INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    faction_id INTEGER NOT NULL,
                    timestamp INTEGER NOT NULL,
                    active_count INTEGER NOT NULL,
                    total_count INTEGER NOT NULL,
                    FOREIGN KEY (faction_id) REFERENCES factions(id)
                );

                CREATE TABLE IF NOT EXISTS snapshot_members (
                    snapshot_id INTEGER NOT NULL,
                    member_id INTEGER NOT NULL,
                    PRIMARY KEY (snapshot_id, member_id),
                    FOREIGN KEY (snapshot_id) REFERENCES snapshots(id)
                );

                CREATE TABLE IF NOT EXISTS members (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    last_seen INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS member_factions (
                    member_id INTEGER NOT NULL,
                    faction_id INTEGER NOT NULL,
                    first_seen INTEGER NOT NULL,
                    last_seen INTEGER NOT NULL,
                    PRIMARY KEY (member_id, faction_id)
                );

                -- active_sum adds every snapshot's active count, it is not a
                -- unique member count for the bucket.
                CREATE TABLE IF NOT EXISTS hourly_aggregates (
                    faction_id INTEGER NOT NULL,
                    date TEXT NOT NULL,
                    hour INTEGER NOT NULL,
                    day_of_week INTEGER NOT NULL,
                    slot INTEGER NOT NULL,
                    active_sum INTEGER NOT NULL,
                    snapshot_count INTEGER NOT NULL,
                    PRIMARY KEY (faction_id, date, hour, slot)
                );

                CREATE INDEX IF NOT EXISTS idx_snapshots_faction_time
                ON snapshots(faction_id, timestamp DESC);

                CREATE INDEX IF NOT EXISTS idx_snapshots_time
                ON snapshots(timestamp);

                CREATE INDEX IF NOT EXISTS idx_snapshot_members_member
                ON snapshot_members(member_id);

                CREATE INDEX IF NOT EXISTS idx_member_factions_member
                ON member_factions(member_id);

                CREATE INDEX IF NOT EXISTS idx_hourly_agg_faction
                ON hourly_aggregates(faction_id, date DESC);
                """
            )
            await db.commit()

    # ------------------------------------------------------------------
    # write path
    # ------------------------------------------------------------------

    async def add_snapshot(
        self,
        faction_id: int,
        faction_name: str | None,
        timestamp: int,
        active_member_ids: Iterable[int],
        total_count: int,
    ) -> int:
        """Record one poll result and fold it into the hourly aggregates.

        Faction upsert, snapshot row, membership rows, member/faction links and
        the aggregate bucket are written in a single transaction. Any failure
        rolls everything back and surfaces as :class:`StorageError`.
        """
        members = sorted({int(m) for m in active_member_ids})
        now = int(self._clock())

        async with self._connect() as db:
            try:
                await db.execute("BEGIN IMMEDIATE")
                await db.execute(
                    """
                    INSERT INTO factions (id, name, last_updated)
                    VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = COALESCE(excluded.name, factions.name),
                        last_updated = excluded.last_updated
                    """,
                    (faction_id, faction_name or None, now),
                )
                cursor = await db.execute(
                    """
                    INSERT INTO snapshots (faction_id, timestamp, active_count, total_count)
                    VALUES (?, ?, ?, ?)
                    """,
                    (faction_id, timestamp, len(members), total_count),
                )
                snapshot_id = cursor.lastrowid
                assert snapshot_id is not None

                for chunk in _batched(members, BATCH_ROWS):
                    await db.execute(
                        "INSERT OR IGNORE INTO snapshot_members (snapshot_id, member_id) VALUES "
                        + ",".join("(?, ?)" for _ in chunk),
                        [v for m in chunk for v in (snapshot_id, m)],
                    )
                    await db.execute(
                        "INSERT INTO member_factions (member_id, faction_id, first_seen, last_seen) VALUES "
                        + ",".join("(?, ?, ?, ?)" for _ in chunk)
                        + """
                        ON CONFLICT(member_id, faction_id) DO UPDATE SET
                            last_seen = MAX(member_factions.last_seen, excluded.last_seen)
                        """,
                        [v for m in chunk for v in (m, faction_id, timestamp, timestamp)],
                    )

                await self._bump_aggregate(db, faction_id, timestamp, len(members))
                await db.commit()
            except Exception as exc:
                await db.rollback()
                logger.error("Snapshot write for faction {} rolled back: {}", faction_id, exc)
                raise StorageError(f"Failed to store snapshot for faction {faction_id}: {exc}") from exc

        return int(snapshot_id)

    async def _bump_aggregate(
        self, db: aiosqlite.Connection, faction_id: int, timestamp: int, active_count: int
    ) -> None:
        await db.execute(
            """
            INSERT INTO hourly_aggregates (
                faction_id, date, hour, day_of_week, slot, active_sum, snapshot_count
            ) VALUES (?, ?, ?, ?, ?, ?, 1)
            ON CONFLICT(faction_id, date, hour, slot) DO UPDATE SET
                active_sum = hourly_aggregates.active_sum + excluded.active_sum,
                snapshot_count = hourly_aggregates.snapshot_count + 1
            """,
            (
                faction_id,
                date_of(timestamp),
                hour_of(timestamp),
                day_of_week(timestamp),
                sub_slot_of(timestamp),
                active_count,
            ),
        )

    async def upsert_members(self, names: dict[int, str]) -> None:
        rows = [(int(mid), name) for mid, name in names.items() if name]
        if not rows:
            return
        now = int(self._clock())
        async with self._connect() as db:
            await db.executemany(
                """
                INSERT INTO members (id, name, last_seen)
                VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    last_seen = excluded.last_seen
                """,
                [(mid, name, now) for mid, name in rows],
            )
            await db.commit()

    async def prune_old_data(self, retention_days: int = 30) -> int:
        now = self._clock()
        cutoff = int(now) - retention_days * DAY_SECONDS
        deleted = 0

        async with self._connect() as db:
            while True:
                cursor = await db.execute(
                    "SELECT id FROM snapshots WHERE timestamp < ? LIMIT ?",
                    (cutoff, PRUNE_BATCH),
                )
                ids = [int(row[0]) for row in await cursor.fetchall()]
                if not ids:
                    break
                placeholders = ",".join("?" for _ in ids)
                await db.execute(
                    f"DELETE FROM snapshot_members WHERE snapshot_id IN ({placeholders})", ids
                )
                await db.execute(f"DELETE FROM snapshots WHERE id IN ({placeholders})", ids)
                await db.commit()
                deleted += len(ids)

            await db.execute(
                "DELETE FROM hourly_aggregates WHERE date < ?",
                (cutoff_date(retention_days, now),),
            )
            await db.commit()

        if deleted:
            logger.info("Pruned {} snapshots older than {} days", deleted, retention_days)
        return deleted

    # ------------------------------------------------------------------
    # snapshots
    # ------------------------------------------------------------------

    async def has_snapshot_for_slot(self, faction_id: int, slot_timestamp: int) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT 1 FROM snapshots
                WHERE faction_id = ? AND timestamp BETWEEN ? AND ?
                LIMIT 1
                """,
                (
                    faction_id,
                    slot_timestamp - SLOT_TOLERANCE_SECONDS,
                    slot_timestamp + SLOT_TOLERANCE_SECONDS,
                ),
            )
            return await cursor.fetchone() is not None

    async def get_factions_with_snapshot(self, slot_timestamp: int) -> set[int]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT DISTINCT faction_id FROM snapshots WHERE timestamp BETWEEN ? AND ?",
                (
                    slot_timestamp - SLOT_TOLERANCE_SECONDS,
                    slot_timestamp + SLOT_TOLERANCE_SECONDS,
                ),
            )
            return {int(row[0]) for row in await cursor.fetchall()}

    async def get_snapshots_normalized(self, faction_id: int, since: int = 0) -> list[Snapshot]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT s.timestamp, s.total_count, GROUP_CONCAT(sm.member_id)
                FROM snapshots s
                LEFT JOIN snapshot_members sm ON s.id = sm.snapshot_id
                WHERE s.faction_id = ? AND s.timestamp >= ?
                GROUP BY s.id
                ORDER BY s.timestamp ASC, s.id ASC
                """,
                (faction_id, since),
            )
            rows = await cursor.fetchall()

        return [
            Snapshot(timestamp=int(ts), active=_split_ids(active), total=int(total))
            for ts, total, active in rows
        ]

    async def get_latest_snapshot(self, faction_id: int) -> Snapshot | None:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT s.timestamp, s.total_count, GROUP_CONCAT(sm.member_id)
                FROM snapshots s
                LEFT JOIN snapshot_members sm ON s.id = sm.snapshot_id
                WHERE s.faction_id = ?
                GROUP BY s.id
                ORDER BY s.timestamp DESC, s.id DESC
                LIMIT 1
                """,
                (faction_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Snapshot(timestamp=int(row[0]), active=_split_ids(row[2]), total=int(row[1]))

    async def get_snapshot_count(self, faction_id: int) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM snapshots WHERE faction_id = ?", (faction_id,)
            )
            row = await cursor.fetchone()
            return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # aggregates
    # ------------------------------------------------------------------

    async def get_hourly_aggregates(self, faction_id: int, days_back: int = 30) -> list[AggregateRow]:
        since = cutoff_date(days_back, self._clock())
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT day_of_week, hour, SUM(active_sum), SUM(snapshot_count)
                FROM hourly_aggregates
                WHERE faction_id = ? AND date >= ?
                GROUP BY day_of_week, hour
                ORDER BY day_of_week, hour
                """,
                (faction_id, since),
            )
            rows = await cursor.fetchall()
        return [
            AggregateRow(
                day_of_week=int(dow), hour=int(hour), slot=None,
                active_sum=int(total), snapshot_count=int(count),
            )
            for dow, hour, total, count in rows
        ]

    async def get_15min_aggregates(self, faction_id: int, days_back: int = 30) -> list[AggregateRow]:
        since = cutoff_date(days_back, self._clock())
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT day_of_week, hour, slot, SUM(active_sum), SUM(snapshot_count)
                FROM hourly_aggregates
                WHERE faction_id = ? AND date >= ?
                GROUP BY day_of_week, hour, slot
                ORDER BY day_of_week, hour, slot
                """,
                (faction_id, since),
            )
            rows = await cursor.fetchall()
        return [
            AggregateRow(
                day_of_week=int(dow), hour=int(hour), slot=int(slot),
                active_sum=int(total), snapshot_count=int(count),
            )
            for dow, hour, slot, total, count in rows
        ]

    async def get_bucket(
        self, faction_id: int, date: str, hour: int, slot: int
    ) -> tuple[int, int] | None:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT active_sum, snapshot_count FROM hourly_aggregates
                WHERE faction_id = ? AND date = ? AND hour = ? AND slot = ?
                """,
                (faction_id, date, hour, slot),
            )
            row = await cursor.fetchone()
        return (int(row[0]), int(row[1])) if row else None

    async def get_week_count(self, faction_id: int, days_back: int = 30) -> int:
        since = cutoff_date(days_back, self._clock())
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT COUNT(DISTINCT strftime('%Y-%W', date))
                FROM hourly_aggregates
                WHERE faction_id = ? AND date >= ?
                """,
                (faction_id, since),
            )
            row = await cursor.fetchone()
            return int(row[0]) if row else 0

    async def get_member_leaderboard(
        self, faction_id: int, days: int = 7, limit: int = 15
    ) -> list[LeaderboardEntry]:
        since = int(self._clock()) - days * DAY_SECONDS
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM snapshots WHERE faction_id = ? AND timestamp >= ?",
                (faction_id, since),
            )
            row = await cursor.fetchone()
            total = int(row[0]) if row else 0
            if total == 0:
                return []

            cursor = await db.execute(
                """
                SELECT sm.member_id, m.name, COUNT(*) AS appearances
                FROM snapshot_members sm
                JOIN snapshots s ON s.id = sm.snapshot_id
                LEFT JOIN members m ON m.id = sm.member_id
                WHERE s.faction_id = ? AND s.timestamp >= ?
                GROUP BY sm.member_id
                ORDER BY appearances DESC, sm.member_id ASC
                LIMIT ?
                """,
                (faction_id, since, limit),
            )
            rows = await cursor.fetchall()

        return [
            LeaderboardEntry(
                member_id=int(mid), name=name, appearances=int(count), total_snapshots=total
            )
            for mid, name, count in rows
        ]

    async def get_recent_activity_level(self, faction_id: int, hours: int = 6) -> ActivityLevel:
        since = int(self._clock()) - hours * 3600
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(active_count), 0), COALESCE(MAX(active_count), 0)
                FROM snapshots
                WHERE faction_id = ? AND timestamp >= ?
                """,
                (faction_id, since),
            )
            row = await cursor.fetchone()
        if row is None:
            return ActivityLevel(0, 0, 0)
        return ActivityLevel(snapshots=int(row[0]), total_active=int(row[1]), max_active=int(row[2]))

    async def is_inactive_faction(
        self, faction_id: int, avg_threshold: float = 2.0, max_threshold: int = 5
    ) -> bool:
        activity = await self.get_recent_activity_level(faction_id, hours=24)
        # never seen in the last day: always collect
        if activity.snapshots == 0:
            return False
        average = activity.total_active / activity.snapshots
        return average < avg_threshold and activity.max_active < max_threshold

    # ------------------------------------------------------------------
    # factions and members
    # ------------------------------------------------------------------

    async def get_faction(self, faction_id: int) -> FactionRecord | None:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT id, name, last_updated FROM factions WHERE id = ?", (faction_id,)
            )
            row = await cursor.fetchone()
        return FactionRecord(int(row[0]), row[1], int(row[2])) if row else None

    async def get_all_factions(self) -> list[FactionRecord]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT id, name, last_updated FROM factions ORDER BY name"
            )
            rows = await cursor.fetchall()
        return [FactionRecord(int(fid), name, int(updated)) for fid, name, updated in rows]

    async def search_factions(self, query: str, limit: int = 25) -> list[FactionRecord]:
        q = query.strip()
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT id, name, last_updated FROM factions
                WHERE name LIKE ? OR CAST(id AS TEXT) LIKE ?
                ORDER BY
                    CASE
                        WHEN LOWER(name) = LOWER(?) THEN 0
                        WHEN LOWER(name) LIKE LOWER(?) THEN 1
                        ELSE 2
                    END,
                    name
                LIMIT ?
                """,
                (f"%{q}%", f"%{q}%", q, f"{q}%", limit),
            )
            rows = await cursor.fetchall()
        return [FactionRecord(int(fid), name, int(updated)) for fid, name, updated in rows]

    async def get_faction_last_updated(self, faction_id: int) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT last_updated FROM factions WHERE id = ?", (faction_id,)
            )
            row = await cursor.fetchone()
            return int(row[0]) if row else 0

    async def get_faction_version(self, faction_id: int) -> tuple[int, int]:
        """Newest snapshot id and snapshot count, changes on every insert or prune."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT COALESCE(MAX(id), 0), COUNT(*) FROM snapshots WHERE faction_id = ?",
                (faction_id,),
            )
            row = await cursor.fetchone()
            return int(row[0]), int(row[1])

    async def get_member_version(self, member_id: int) -> tuple[int, int]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT COALESCE(MAX(s.id), 0), COUNT(s.id)
                FROM member_factions mf
                JOIN snapshots s ON s.faction_id = mf.faction_id
                WHERE mf.member_id = ?
                """,
                (member_id,),
            )
            row = await cursor.fetchone()
            return int(row[0]), int(row[1])

    async def get_member_name(self, member_id: int) -> str | None:
        async with self._connect() as db:
            cursor = await db.execute("SELECT name FROM members WHERE id = ?", (member_id,))
            row = await cursor.fetchone()
            return str(row[0]) if row else None

    async def search_members(self, query: str, limit: int = 25) -> list[MemberRecord]:
        q = query.strip()
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT id, name FROM members
                WHERE name LIKE ? OR CAST(id AS TEXT) LIKE ?
                ORDER BY
                    CASE
                        WHEN LOWER(name) = LOWER(?) THEN 0
                        WHEN LOWER(name) LIKE LOWER(?) THEN 1
                        ELSE 2
                    END,
                    name
                LIMIT ?
                """,
                (f"%{q}%", f"%{q}%", q, f"{q}%", limit),
            )
            rows = await cursor.fetchall()
        return [MemberRecord(int(mid), str(name)) for mid, name in rows]

    async def get_member_factions(self, member_id: int) -> list[int]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT faction_id FROM member_factions
                WHERE member_id = ?
                ORDER BY last_seen DESC, faction_id ASC
                """,
                (member_id,),
            )
            rows = await cursor.fetchall()
        return [int(row[0]) for row in rows]

    async def get_member_faction_span(
        self, member_id: int, faction_id: int
    ) -> tuple[int, int] | None:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT first_seen, last_seen FROM member_factions
                WHERE member_id = ? AND faction_id = ?
                """,
                (member_id, faction_id),
            )
            row = await cursor.fetchone()
        return (int(row[0]), int(row[1])) if row else None

    async def get_db_stats(self) -> DbStats:
        counts: dict[str, int] = {}
        async with self._connect() as db:
            for table in ("factions", "snapshots", "members", "hourly_aggregates"):
                cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
                row = await cursor.fetchone()
                counts[table] = int(row[0]) if row else 0

        return DbStats(
            factions=counts["factions"],
            snapshots=counts["snapshots"],
            members=counts["members"],
            aggregates=counts["hourly_aggregates"],
            db_size=self._db_path.stat().st_size if self._db_path.exists() else 0,
        )
