from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from loguru import logger

from factionwatch.activity import extract_activity
from factionwatch.errors import FactionWatchError
from factionwatch.models import CollectionResult, FactionError, FactionResult
from factionwatch.ratelimiter import RateLimiter
from factionwatch.repository import ActivityRepository
from factionwatch.slots import next_slot_start, slot_start
from factionwatch.tracking import TrackingRepository

COLLECT_JOB_ID = "factionwatch_collect"


class FactionSource(Protocol):
    async def fetch_faction(self, faction_id: int) -> dict[str, Any]: ...


class JobScheduler(Protocol):
    def add_job(self, func: Callable[..., Any], trigger: str | None = None, **kwargs: Any) -> Any: ...

    def get_job(self, job_id: str) -> Any: ...

    def remove_job(self, job_id: str) -> None: ...


class CollectorState(StrEnum):
    IDLE = "idle"
    COLLECTING = "collecting"
    SHUTTING_DOWN = "shutting_down"


class FactionCollector:
    """Polls every tracked faction once per 15-minute slot.

    Runs are aligned to slot boundaries plus a settle delay and fired through
    an APScheduler instance. A run drains a shared queue of factions with up to
    ``2 x keys`` workers (capped), skipping factions that already have a
    snapshot for the slot. One faction's failure never stops the run.
    """

    def __init__(
        self,
        client: FactionSource,
        repository: ActivityRepository,
        tracking: TrackingRepository,
        limiter: RateLimiter,
        scheduler: JobScheduler,
        max_concurrency: int = 10,
        settle_delay: float = 30.0,
        activity_window: int = 900,
        retention_days: int = 30,
        prune_probability: float = 0.01,
        inactive_skip_probability: float = 0.75,
        inactive_avg_threshold: float = 2.0,
        inactive_max_threshold: int = 5,
        shutdown_timeout: float = 60.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.repo = repository
        self.tracking = tracking
        self.limiter = limiter
        self.scheduler = scheduler
        self.max_concurrency = max_concurrency
        self.settle_delay = settle_delay
        self.activity_window = activity_window
        self.retention_days = retention_days
        self.prune_probability = prune_probability
        self.inactive_skip_probability = inactive_skip_probability
        self.inactive_avg_threshold = inactive_avg_threshold
        self.inactive_max_threshold = inactive_max_threshold
        self.shutdown_timeout = shutdown_timeout
        self._rng = rng or random.Random()
        self._clock = clock

        self._state = CollectorState.IDLE
        self._running = False
        self._stop_requested = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._next_run_at: float | None = None
        self.last_result: CollectionResult | None = None

    @property
    def state(self) -> CollectorState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def collecting(self) -> bool:
        return self._state is CollectorState.COLLECTING

    @property
    def next_run_at(self) -> float | None:
        return self._next_run_at

    def concurrency_for(self, key_count: int) -> int:
        return max(1, min(key_count * 2, self.max_concurrency))

    # ------------------------------------------------------------------
    # single faction
    # ------------------------------------------------------------------

    async def collect_faction_data(
        self, faction_id: int, slot_timestamp: int | None = None
    ) -> FactionResult:
        poll_timestamp = self._clock()
        try:
            payload = await self.client.fetch_faction(faction_id)
            reading = extract_activity(payload, poll_timestamp, self.activity_window)
            await self.repo.upsert_members(reading.member_names)
            await self.repo.add_snapshot(
                faction_id,
                reading.faction_name,
                slot_timestamp if slot_timestamp is not None else reading.slot_timestamp,
                reading.active_member_ids,
                reading.total_count,
            )
        except FactionWatchError as exc:
            return FactionResult(faction_id=faction_id, success=False, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected failure collecting faction {}", faction_id)
            return FactionResult(faction_id=faction_id, success=False, error=str(exc))

        if self.prune_probability > 0 and self._rng.random() < self.prune_probability:
            await self._prune()

        return FactionResult(
            faction_id=faction_id,
            success=True,
            name=reading.faction_name,
            active=len(reading.active_member_ids),
            total=reading.total_count,
        )

    async def _prune(self) -> None:
        try:
            await self.repo.prune_old_data(self.retention_days)
        except Exception:
            logger.exception("Pruning data older than {} days failed", self.retention_days)

    # ------------------------------------------------------------------
    # collection run
    # ------------------------------------------------------------------

    async def collect_all(self) -> CollectionResult | None:
        if self._state is not CollectorState.IDLE:
            logger.warning("Collection already in progress, skipping")
            return None

        self._state = CollectorState.COLLECTING
        self._stop_requested = False
        self._idle.clear()
        try:
            return await self._run_cycle()
        finally:
            self._state = CollectorState.IDLE
            self._idle.set()

    async def _build_queue(self, factions: list[int], slot: int) -> tuple[deque[int], int]:
        done = await self.repo.get_factions_with_snapshot(slot)
        queue: deque[int] = deque()
        skipped = 0
        for faction_id in factions:
            if faction_id in done:
                skipped += 1
                continue
            if self.inactive_skip_probability > 0 and await self.repo.is_inactive_faction(
                faction_id, self.inactive_avg_threshold, self.inactive_max_threshold
            ):
                if self._rng.random() < self.inactive_skip_probability:
                    skipped += 1
                    continue
            queue.append(faction_id)
        return queue, skipped

    async def _run_cycle(self) -> CollectionResult | None:
        credentials = await self.tracking.list_credentials()
        self.limiter.set_credentials(credentials)
        factions = await self.tracking.list_factions()

        if not factions:
            logger.info("No factions configured to track")
            return None
        if not credentials:
            logger.warning("No API keys configured")
            return None

        started = self._clock()
        slot = slot_start(started)
        queue, skipped = await self._build_queue(factions, slot)
        concurrency = self.concurrency_for(len(credentials))
        result = CollectionResult(
            slot_timestamp=slot, concurrency=concurrency, started_at=started, skipped=skipped
        )
        total = len(queue)

        logger.info(
            "Starting collection of {} factions ({} skipped) with {} keys, concurrency {}",
            total,
            skipped,
            len(credentials),
            concurrency,
        )

        async def worker() -> None:
            while queue and not self._stop_requested:
                faction_id = queue.popleft()
                outcome = await self.collect_faction_data(faction_id, slot)
                if outcome.success:
                    result.success += 1
                    done = result.success + result.failed
                    if total <= 20 or done % 50 == 0:
                        logger.debug(
                            "Faction collected {}/{}: {} ({}/{} active)",
                            done,
                            total,
                            outcome.name,
                            outcome.active,
                            outcome.total,
                        )
                else:
                    result.failed += 1
                    result.errors.append(
                        FactionError(faction_id=faction_id, error=outcome.error or "unknown error")
                    )
                    logger.error(
                        "Faction {} collection failed ({}/{}): {}",
                        faction_id,
                        result.success + result.failed,
                        total,
                        outcome.error,
                    )

        await asyncio.gather(*(worker() for _ in range(concurrency)))

        result.finished_at = self._clock()
        if self._stop_requested and queue:
            logger.info("Collection stopped early, {} factions left in queue", len(queue))
        logger.info(
            "Collection complete: {} succeeded, {} failed in {}s",
            result.success,
            result.failed,
            round(result.duration_seconds),
        )
        self.last_result = result
        return result

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("Collector already running")
            return
        if self._state is CollectorState.SHUTTING_DOWN:
            logger.warning("Previous run is still shutting down, waiting for it to finish")
            await self._idle.wait()
            if self._running:
                return
        self._running = True
        self._stop_requested = False

        now = self._clock()
        slot = slot_start(now)
        factions = await self.tracking.list_factions()
        done = await self.repo.get_factions_with_snapshot(slot)
        if any(f not in done for f in factions):
            logger.info("Slot {} is missing snapshots, collecting now", slot)
            self._schedule(now)
        else:
            self._schedule_next()

    def _schedule(self, run_at: float) -> None:
        self._next_run_at = run_at
        self.scheduler.add_job(
            self._scheduled_run,
            "date",
            run_date=datetime.fromtimestamp(run_at, UTC),
            id=COLLECT_JOB_ID,
            replace_existing=True,
            misfire_grace_time=None,
        )

    def _schedule_next(self) -> None:
        run_at = next_slot_start(self._clock()) + self.settle_delay
        logger.debug("Next collection scheduled at {}", datetime.fromtimestamp(run_at, UTC))
        self._schedule(run_at)

    async def _scheduled_run(self) -> None:
        self._next_run_at = None
        try:
            await self.collect_all()
        finally:
            if self._running and not self._stop_requested:
                self._schedule_next()

    async def stop(self, timeout: float | None = None) -> bool:
        """Stop scheduling and wait for an in-flight run to finish.

        Returns ``False`` when the run did not finish within the wait bound.
        """
        self._running = False
        self._stop_requested = True
        self._next_run_at = None
        if self.scheduler.get_job(COLLECT_JOB_ID) is not None:
            self.scheduler.remove_job(COLLECT_JOB_ID)

        if self._state is CollectorState.COLLECTING:
            self._state = CollectorState.SHUTTING_DOWN
            wait = self.shutdown_timeout if timeout is None else timeout
            try:
                await asyncio.wait_for(self._idle.wait(), wait)
            except TimeoutError:
                logger.warning("Collection still running after {}s, stopping anyway", wait)
                return False

        logger.info("Collector stopped")
        return True
