from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class Credential:
    key: str
    rate_limit: int

    @property
    def masked(self) -> str:
        return f"...{self.key[-4:]}"


@dataclass(slots=True)
class ActivityReading:
    faction_name: str
    slot_timestamp: int
    active_member_ids: list[int]
    total_count: int
    member_names: dict[int, str] = field(default_factory=dict)


@dataclass(slots=True)
class Snapshot:
    timestamp: int
    active: list[int]
    total: int


@dataclass(slots=True)
class AggregateRow:
    day_of_week: int
    hour: int
    slot: int | None
    active_sum: int
    snapshot_count: int

    @property
    def average(self) -> float:
        if self.snapshot_count == 0:
            return 0.0
        return self.active_sum / self.snapshot_count


@dataclass(slots=True)
class ActivityLevel:
    snapshots: int
    total_active: int
    max_active: int


@dataclass(slots=True)
class LeaderboardEntry:
    member_id: int
    name: str | None
    appearances: int
    total_snapshots: int

    @property
    def percentage(self) -> float:
        if self.total_snapshots == 0:
            return 0.0
        return self.appearances / self.total_snapshots * 100


@dataclass(slots=True)
class FactionRecord:
    id: int
    name: str | None
    last_updated: int


@dataclass(slots=True)
class MemberRecord:
    id: int
    name: str


@dataclass(slots=True)
class DbStats:
    factions: int
    snapshots: int
    members: int
    aggregates: int
    db_size: int


@dataclass(slots=True)
class RankingEntry:
    id: int
    name: str
    members: int
    position: int
    rank: str


@dataclass(slots=True)
class FactionResult:
    faction_id: int
    success: bool
    name: str | None = None
    active: int = 0
    total: int = 0
    skipped: bool = False
    error: str | None = None


@dataclass(slots=True)
class FactionError:
    faction_id: int
    error: str


@dataclass(slots=True)
class CollectionResult:
    slot_timestamp: int
    concurrency: int
    started_at: float
    finished_at: float | None = None
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[FactionError] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at


@dataclass(slots=True)
class CredentialUsage:
    calls: int
    limit: int
    available: int
    quarantined: bool


@dataclass(slots=True)
class HeatmapMatrix:
    """Day-of-week x hour values, ``data[hour][day]``.

    Hourly matrices hold one float per cell, 15-minute matrices hold a list of
    four sub-slot values per cell.
    """

    granularity: str
    days: list[int]
    data: dict[int, dict[int, Any]]
    max_value: float
    is_percentage: bool = False
    snapshot_counts: dict[int, dict[int, int]] = field(default_factory=dict)
    faction_ids: list[int] = field(default_factory=list)
