from __future__ import annotations

import time
from collections.abc import Callable

from factionwatch.cache import ResultCache
from factionwatch.models import HeatmapMatrix, LeaderboardEntry
from factionwatch.repository import DAY_SECONDS, ActivityRepository
from factionwatch.slots import (
    SLOTS_PER_HOUR,
    day_of_week,
    hour_of,
    parse_days_filter,
    sub_slot_of,
    week_offset,
)

HOURS = range(24)


class ActivityAnalyzer:
    """Heatmap and leaderboard data built from the repository.

    Faction matrices come from the pre-computed hourly aggregates. Member
    matrices need the raw snapshots of every faction the member was seen in,
    because "percent of observed time active" cannot be recovered from the
    aggregate sums. Results are cached under a stamp of the underlying snapshots.
    """

    def __init__(
        self,
        repository: ActivityRepository,
        cache: ResultCache,
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo = repository
        self.cache = cache
        self.retention_days = retention_days
        self._clock = clock

    async def faction_hourly(self, faction_id: int, day_filter: str = "all") -> HeatmapMatrix:
        version = await self.repo.get_faction_version(faction_id)
        key = ("faction:hourly", faction_id, day_filter)
        cached = self.cache.get(key, version)
        if cached is not None:
            return cached

        days = parse_days_filter(day_filter)
        data = {hour: {day: 0.0 for day in days} for hour in HOURS}
        counts = {hour: {day: 0 for day in days} for hour in HOURS}
        peak = 0.0
        for row in await self.repo.get_hourly_aggregates(faction_id, self.retention_days):
            if row.day_of_week not in days:
                continue
            data[row.hour][row.day_of_week] = row.average
            counts[row.hour][row.day_of_week] = row.snapshot_count
            peak = max(peak, row.average)

        result = HeatmapMatrix(
            granularity="hourly", days=days, data=data, max_value=peak, snapshot_counts=counts
        )
        self.cache.set(key, result, version)
        return result

    async def faction_15min(self, faction_id: int, day_filter: str = "all") -> HeatmapMatrix:
        version = await self.repo.get_faction_version(faction_id)
        key = ("faction:15min", faction_id, day_filter)
        cached = self.cache.get(key, version)
        if cached is not None:
            return cached

        days = parse_days_filter(day_filter)
        data = {hour: {day: [0.0] * SLOTS_PER_HOUR for day in days} for hour in HOURS}
        peak = 0.0
        for row in await self.repo.get_15min_aggregates(faction_id, self.retention_days):
            if row.day_of_week not in days or row.slot is None:
                continue
            data[row.hour][row.day_of_week][row.slot] = row.average
            peak = max(peak, row.average)

        result = HeatmapMatrix(granularity="15min", days=days, data=data, max_value=peak)
        self.cache.set(key, result, version)
        return result

    async def member_hourly(self, member_id: int, day_filter: str = "all") -> HeatmapMatrix | None:
        """Percent of observed weeks in which the member was active, per day and hour."""
        version = await self.repo.get_member_version(member_id)
        key = ("member:hourly", member_id, day_filter)
        cached = self.cache.get(key, version)
        if cached is not None:
            return cached

        faction_ids = await self.repo.get_member_factions(member_id)
        if not faction_ids:
            return None

        days = parse_days_filter(day_filter)
        now = self._clock()
        since = int(now) - self.retention_days * DAY_SECONDS
        seen: dict[tuple[int, int], set[str]] = {}
        active: dict[tuple[int, int], set[str]] = {}

        for faction_id in faction_ids:
            for snapshot in await self.repo.get_snapshots_normalized(faction_id, since):
                day = day_of_week(snapshot.timestamp)
                if day not in days:
                    continue
                cell = (hour_of(snapshot.timestamp), day)
                week = f"{faction_id}-{week_offset(snapshot.timestamp, now)}"
                seen.setdefault(cell, set()).add(week)
                if member_id in snapshot.active:
                    active.setdefault(cell, set()).add(week)

        data: dict[int, dict[int, float]] = {hour: {} for hour in HOURS}
        for hour in HOURS:
            for day in days:
                weeks = seen.get((hour, day))
                if not weeks:
                    data[hour][day] = 0
                    continue
                data[hour][day] = round(len(active.get((hour, day), ())) / len(weeks) * 100)

        result = HeatmapMatrix(
            granularity="hourly",
            days=days,
            data=data,
            max_value=100,
            is_percentage=True,
            faction_ids=faction_ids,
        )
        self.cache.set(key, result, version)
        return result

    async def member_15min(self, member_id: int, day_filter: str = "all") -> HeatmapMatrix | None:
        """Percent of observed 15-minute slots in which the member was active."""
        version = await self.repo.get_member_version(member_id)
        key = ("member:15min", member_id, day_filter)
        cached = self.cache.get(key, version)
        if cached is not None:
            return cached

        faction_ids = await self.repo.get_member_factions(member_id)
        if not faction_ids:
            return None

        days = parse_days_filter(day_filter)
        since = int(self._clock()) - self.retention_days * DAY_SECONDS
        # one observation per slot timestamp, across every faction
        observed: dict[int, bool] = {}
        for faction_id in faction_ids:
            for snapshot in await self.repo.get_snapshots_normalized(faction_id, since):
                was_active = member_id in snapshot.active
                observed[snapshot.timestamp] = observed.get(snapshot.timestamp, False) or was_active

        totals = {hour: {day: [0] * SLOTS_PER_HOUR for day in days} for hour in HOURS}
        actives = {hour: {day: [0] * SLOTS_PER_HOUR for day in days} for hour in HOURS}
        for ts, was_active in observed.items():
            day = day_of_week(ts)
            if day not in days:
                continue
            hour, slot = hour_of(ts), sub_slot_of(ts)
            totals[hour][day][slot] += 1
            if was_active:
                actives[hour][day][slot] += 1

        data = {
            hour: {
                day: [
                    round(actives[hour][day][s] / totals[hour][day][s] * 100)
                    if totals[hour][day][s]
                    else 0
                    for s in range(SLOTS_PER_HOUR)
                ]
                for day in days
            }
            for hour in HOURS
        }

        result = HeatmapMatrix(
            granularity="15min",
            days=days,
            data=data,
            max_value=100,
            is_percentage=True,
            faction_ids=faction_ids,
        )
        self.cache.set(key, result, version)
        return result

    async def leaderboard(
        self, faction_id: int, days: int = 7, limit: int = 15
    ) -> list[LeaderboardEntry]:
        version = await self.repo.get_faction_version(faction_id)
        key = ("faction:leaderboard", faction_id, days, limit)
        cached = self.cache.get(key, version)
        if cached is not None:
            return cached

        entries = await self.repo.get_member_leaderboard(faction_id, days, limit)
        self.cache.set(key, entries, version)
        return entries
