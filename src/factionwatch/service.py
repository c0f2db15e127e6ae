from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from factionwatch.analyzer import ActivityAnalyzer
from factionwatch.cache import ResultCache
from factionwatch.client import TornClient
from factionwatch.collector import FactionCollector, JobScheduler
from factionwatch.config import Settings
from factionwatch.models import (
    CollectionResult,
    DbStats,
    HeatmapMatrix,
    LeaderboardEntry,
    RankingEntry,
)
from factionwatch.ranking import RankingCache
from factionwatch.ratelimiter import RateLimiter
from factionwatch.repository import ActivityRepository
from factionwatch.tracking import ChangeCount, TrackingRepository

RANKING_JOB_ID = "factionwatch_ranking"


@dataclass(slots=True)
class RankChange:
    changed: int
    skipped: int
    factions: list[RankingEntry]


def estimate_collection_seconds(faction_count: int, rate_limits: list[int]) -> float:
    per_minute = sum(rate_limits)
    if per_minute <= 0:
        return math.inf
    return math.ceil(faction_count / per_minute * 60)


class FactionWatchService:
    def __init__(
        self,
        repository: ActivityRepository,
        tracking: TrackingRepository,
        limiter: RateLimiter,
        client: TornClient,
        ranking: RankingCache,
        collector: FactionCollector,
        analyzer: ActivityAnalyzer,
        scheduler: JobScheduler,
        seed_api_keys: list[str] | None = None,
        seed_factions: list[int] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo = repository
        self.tracking = tracking
        self.limiter = limiter
        self.client = client
        self.ranking = ranking
        self.collector = collector
        self.analyzer = analyzer
        self.scheduler = scheduler
        self.seed_api_keys = seed_api_keys or []
        self.seed_factions = seed_factions or []
        self._clock = clock

    async def init(self) -> None:
        await self.repo.init()
        await self.tracking.init()
        await self.ranking.init()
        await self.ranking.load()

        if self.seed_api_keys and not await self.tracking.list_credentials():
            for key in self.seed_api_keys:
                await self.tracking.add_api_key(key)
            logger.info("Seeded {} API keys from settings", len(self.seed_api_keys))
        if self.seed_factions and not await self.tracking.list_factions():
            await self.tracking.add_factions(self.seed_factions)
            logger.info("Seeded {} factions from settings", len(self.seed_factions))

        await self._sync_credentials()

    async def _sync_credentials(self) -> None:
        self.limiter.set_credentials(await self.tracking.list_credentials())

    # ------------------------------------------------------------------
    # control
    # ------------------------------------------------------------------

    async def start_scheduler(self) -> None:
        await self._sync_credentials()
        await self.collector.start()
        extra: dict[str, Any] = {}
        if self.ranking.is_stale():
            extra["next_run_time"] = datetime.now(UTC)
        self.scheduler.add_job(
            self.refresh_ranking_if_stale,
            "interval",
            hours=24,
            id=RANKING_JOB_ID,
            replace_existing=True,
            **extra,
        )

    async def stop_scheduler(self) -> bool:
        if self.scheduler.get_job(RANKING_JOB_ID) is not None:
            self.scheduler.remove_job(RANKING_JOB_ID)
        return await self.collector.stop()

    async def collect_once(self) -> CollectionResult | None:
        return await self.collector.collect_all()

    async def refresh_ranking_if_stale(self) -> bool:
        if not self.ranking.is_stale():
            return False
        try:
            await self.ranking.refresh()
        except Exception:
            logger.exception("Failed to refresh ranking cache")
            return False
        return True

    async def get_status(self) -> dict[str, Any]:
        factions = await self.tracking.list_factions()
        credentials = await self.tracking.list_credentials()
        next_run = self.collector.next_run_at
        last = self.collector.last_result
        return {
            "running": self.collector.running,
            "collecting": self.collector.collecting,
            "state": self.collector.state.value,
            "faction_count": len(factions),
            "key_count": len(credentials),
            "estimated_collection_seconds": estimate_collection_seconds(
                len(factions), [c.rate_limit for c in credentials]
            ),
            "last_collection": asdict(last) if last else None,
            "rate_limit_status": {k: asdict(v) for k, v in self.limiter.usage().items()},
            "next_run_at": next_run,
            "next_slot_eta_seconds": max(0.0, next_run - self._clock()) if next_run else None,
            "ranking": self.ranking.stats(),
        }

    # ------------------------------------------------------------------
    # tracking management
    # ------------------------------------------------------------------

    async def add_factions(self, faction_ids: list[int]) -> ChangeCount:
        return await self.tracking.add_factions(faction_ids)

    async def remove_factions(self, faction_ids: list[int]) -> ChangeCount:
        return await self.tracking.remove_factions(faction_ids)

    async def add_factions_by_rank(
        self, rank: str, min_members: int | None = None, max_members: int | None = None
    ) -> RankChange:
        picked = self.ranking.get_by_rank(rank, min_members, max_members)
        if not picked:
            return RankChange(0, 0, [])
        tracked = set(await self.tracking.list_factions())
        fresh = [f for f in picked if f.id not in tracked]
        await self.tracking.add_factions([f.id for f in fresh])
        return RankChange(changed=len(fresh), skipped=len(picked) - len(fresh), factions=fresh)

    async def remove_factions_by_rank(
        self, rank: str, min_members: int | None = None, max_members: int | None = None
    ) -> RankChange:
        picked = self.ranking.get_by_rank(rank, min_members, max_members)
        if not picked:
            return RankChange(0, 0, [])
        tracked = set(await self.tracking.list_factions())
        gone = [f for f in picked if f.id in tracked]
        await self.tracking.remove_factions([f.id for f in gone])
        return RankChange(changed=len(gone), skipped=len(picked) - len(gone), factions=gone)

    async def add_api_key(self, key: str, rate_limit: int | None = None) -> bool:
        added = await self.tracking.add_api_key(key, rate_limit)
        await self._sync_credentials()
        return added

    async def remove_api_key(self, key: str) -> bool:
        removed = await self.tracking.remove_api_key(key)
        await self._sync_credentials()
        return removed

    async def set_key_rate_limit(self, key: str, rate_limit: int) -> bool:
        changed = await self.tracking.set_key_rate_limit(key, rate_limit)
        await self._sync_credentials()
        return changed

    async def resolve_faction(self, text: str) -> tuple[int, str] | None:
        """Resolve an id or name using the ranking cache first, then stored factions."""
        text = text.strip()
        if text.isdigit():
            faction_id = int(text)
            cached = self.ranking.get_by_id(faction_id)
            stored = await self.repo.get_faction(faction_id)
            name = (cached.name if cached else None) or (stored.name if stored else None)
            return faction_id, name or f"Faction {faction_id}"

        for entry in self.ranking.search(text):
            if entry.name.lower() == text.lower():
                return entry.id, entry.name
        stored_hits = await self.repo.search_factions(text)
        for record in stored_hits:
            if (record.name or "").lower() == text.lower():
                return record.id, record.name or f"Faction {record.id}"
        ranked = self.ranking.search(text)
        if ranked:
            return ranked[0].id, ranked[0].name
        if stored_hits:
            return stored_hits[0].id, stored_hits[0].name or f"Faction {stored_hits[0].id}"
        return None

    async def resolve_factions(self, text: str) -> list[tuple[int, str]]:
        """Resolve a comma separated list, dropping unknown names and repeats."""
        resolved: dict[int, str] = {}
        for part in text.split(","):
            if not part.strip():
                continue
            hit = await self.resolve_faction(part)
            if hit is None:
                logger.debug("Could not resolve faction {!r}", part.strip())
                continue
            resolved.setdefault(hit[0], hit[1])
        return list(resolved.items())

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def faction_heatmap(
        self, faction_id: int, granularity: str = "hourly", day_filter: str = "all"
    ) -> HeatmapMatrix:
        if granularity == "15min":
            return await self.analyzer.faction_15min(faction_id, day_filter)
        return await self.analyzer.faction_hourly(faction_id, day_filter)

    async def member_heatmap(
        self, member_id: int, granularity: str = "hourly", day_filter: str = "all"
    ) -> HeatmapMatrix | None:
        if granularity == "15min":
            return await self.analyzer.member_15min(member_id, day_filter)
        return await self.analyzer.member_hourly(member_id, day_filter)

    async def leaderboard(
        self, faction_id: int, days: int = 7, limit: int = 15
    ) -> list[LeaderboardEntry]:
        return await self.analyzer.leaderboard(faction_id, days, limit)

    async def get_db_stats(self) -> DbStats:
        return await self.repo.get_db_stats()

    async def close(self) -> None:
        await self.client.aclose()


def build_service(settings: Settings, scheduler: JobScheduler | None = None) -> FactionWatchService:
    scheduler = scheduler or AsyncIOScheduler()
    repository = ActivityRepository(settings.db_path)
    tracking = TrackingRepository(
        settings.db_path,
        default_rate_limit=settings.default_calls_per_minute,
        max_rate_limit=settings.max_calls_per_minute,
    )
    limiter = RateLimiter(
        window_seconds=settings.rate_limit_window_seconds,
        quarantine_seconds=settings.quarantine_seconds,
    )
    client = TornClient(
        limiter,
        base_url=settings.api_base_url,
        timeout=settings.request_timeout_seconds,
        retry_attempts=settings.retry_attempts,
        retry_delay=settings.retry_delay_seconds,
        upstream_cooldown=settings.upstream_cooldown_seconds,
        ranking_page_delay=settings.ranking_page_delay_seconds,
        ranking_max_entries=settings.ranking_max_entries,
    )
    ranking = RankingCache(
        settings.db_path,
        client,
        tracked_ranks=settings.tracked_ranks,
        refresh_interval_seconds=settings.ranking_refresh_days * 24 * 60 * 60,
        stop_after_untracked=settings.ranking_stop_after_untracked,
        max_pages=settings.ranking_max_pages,
        page_size=settings.ranking_page_size,
        page_delay=settings.ranking_page_delay_seconds,
    )
    collector = FactionCollector(
        client,
        repository,
        tracking,
        limiter,
        scheduler,
        max_concurrency=settings.max_concurrency,
        settle_delay=settings.settle_delay_seconds,
        activity_window=settings.activity_window_seconds,
        retention_days=settings.retention_days,
        prune_probability=settings.prune_probability,
        inactive_skip_probability=settings.inactive_skip_probability,
        inactive_avg_threshold=settings.inactive_avg_threshold,
        inactive_max_threshold=settings.inactive_max_threshold,
        shutdown_timeout=settings.shutdown_timeout_seconds,
    )
    analyzer = ActivityAnalyzer(
        repository,
        ResultCache(ttl=settings.cache_ttl_seconds, max_size=settings.cache_max_size),
        retention_days=settings.retention_days,
    )
    return FactionWatchService(
        repository,
        tracking,
        limiter,
        client,
        ranking,
        collector,
        analyzer,
        scheduler,
        seed_api_keys=settings.seed_api_keys,
        seed_factions=settings.seed_factions,
    )


def format_status(status: dict[str, Any]) -> str:
    lines = [
        "=== Faction collector ===",
        f"State: {status['state']}{' (scheduled)' if status['running'] else ''}",
        f"Factions: {status['faction_count']} | Keys: {status['key_count']}",
    ]
    estimate = status["estimated_collection_seconds"]
    if math.isfinite(estimate):
        lines.append(f"Estimated run time: {int(estimate)}s")

    eta = status.get("next_slot_eta_seconds")
    if eta is not None:
        lines.append(f"Next run in: {int(eta // 60)}m {int(eta % 60)}s")

    last = status.get("last_collection")
    if last:
        lines.append(
            f"Last run: {last['success']} ok, {last['failed']} failed, {last['skipped']} skipped"
        )
        for err in last["errors"][:5]:
            lines.append(f"  - {err['faction_id']}: {err['error']}")

    for masked, usage in status["rate_limit_status"].items():
        flag = " [quarantined]" if usage["quarantined"] else ""
        lines.append(f"Key {masked}: {usage['calls']}/{usage['limit']} this minute{flag}")

    ranking = status.get("ranking") or {}
    lines.append(f"Ranking cache: {ranking.get('total', 0)} factions")
    return "\n".join(lines)
