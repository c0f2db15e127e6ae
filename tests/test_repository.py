from pathlib import Path

import pytest

from factionwatch.errors import StorageError
from factionwatch.repository import DAY_SECONDS, ActivityRepository

# Tuesday 2023-11-14 22:00:00 UTC, a slot boundary
SLOT = 1_699_999_200


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _repo(tmp_path: Path, now: float = SLOT + 600) -> ActivityRepository:
    repo = ActivityRepository(tmp_path / "activity.sqlite3", clock=FakeClock(now))
    await repo.init()
    return repo


@pytest.mark.asyncio
async def test_snapshot_round_trip(tmp_path) -> None:
    repo = await _repo(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT, [3, 1, 2], 10)

    snapshots = await repo.get_snapshots_normalized(1)
    assert len(snapshots) == 1
    assert sorted(snapshots[0].active) == [1, 2, 3]
    assert snapshots[0].total == 10
    assert snapshots[0].timestamp == SLOT

    latest = await repo.get_latest_snapshot(1)
    assert latest is not None and latest.timestamp == SLOT
    assert (await repo.get_faction(1)).name == "Alpha"


@pytest.mark.asyncio
async def test_snapshot_without_active_members(tmp_path) -> None:
    repo = await _repo(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT, [], 10)

    snapshots = await repo.get_snapshots_normalized(1)
    assert snapshots[0].active == []
    assert await repo.get_bucket(1, "2023-11-14", 22, 0) == (0, 1)


@pytest.mark.asyncio
async def test_large_active_set_is_stored_in_batches(tmp_path) -> None:
    repo = await _repo(tmp_path)
    members = list(range(1, 1001))
    await repo.add_snapshot(1, "Big", SLOT, members, 1200)

    snapshot = await repo.get_latest_snapshot(1)
    assert snapshot is not None
    assert sorted(snapshot.active) == members


@pytest.mark.asyncio
async def test_aggregate_bucket_sums_active_counts(tmp_path) -> None:
    repo = await _repo(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT, [1, 2], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 120, [1, 2, 3], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 300, [4], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 900, [1], 10)

    assert await repo.get_bucket(1, "2023-11-14", 22, 0) == (6, 3)
    assert await repo.get_bucket(1, "2023-11-14", 22, 1) == (1, 1)

    hourly = await repo.get_hourly_aggregates(1)
    assert len(hourly) == 1
    assert hourly[0].day_of_week == 2
    assert hourly[0].hour == 22
    assert (hourly[0].active_sum, hourly[0].snapshot_count) == (7, 4)
    assert hourly[0].average == 7 / 4

    quarter = await repo.get_15min_aggregates(1)
    assert [(row.slot, row.active_sum, row.snapshot_count) for row in quarter] == [
        (0, 6, 3),
        (1, 1, 1),
    ]


@pytest.mark.asyncio
async def test_slot_lookup_tolerance(tmp_path) -> None:
    repo = await _repo(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT + 45, [1], 10)

    assert await repo.has_snapshot_for_slot(1, SLOT)
    assert not await repo.has_snapshot_for_slot(1, SLOT + 900)
    assert not await repo.has_snapshot_for_slot(2, SLOT)
    assert await repo.get_factions_with_snapshot(SLOT) == {1}
    assert await repo.get_factions_with_snapshot(SLOT - 900) == set()


@pytest.mark.asyncio
async def test_failed_write_rolls_back_everything(tmp_path, monkeypatch) -> None:
    repo = await _repo(tmp_path)

    async def broken(*args, **kwargs) -> None:
        raise RuntimeError("disk full")

    monkeypatch.setattr(repo, "_bump_aggregate", broken)
    with pytest.raises(StorageError, match="disk full"):
        await repo.add_snapshot(1, "Alpha", SLOT, [1, 2], 10)

    stats = await repo.get_db_stats()
    assert stats.factions == 0
    assert stats.snapshots == 0
    assert stats.aggregates == 0
    assert await repo.get_member_factions(1) == []


@pytest.mark.asyncio
async def test_prune_removes_old_snapshots_and_aggregates(tmp_path) -> None:
    now = SLOT + 40 * DAY_SECONDS
    repo = await _repo(tmp_path, now=now)
    await repo.add_snapshot(1, "Alpha", now - 31 * DAY_SECONDS, [1, 2], 10)
    await repo.add_snapshot(1, "Alpha", now - DAY_SECONDS, [1], 10)

    deleted = await repo.prune_old_data(30)
    assert deleted == 1

    stats = await repo.get_db_stats()
    assert stats.snapshots == 1
    assert stats.aggregates == 1
    assert stats.db_size > 0
    remaining = await repo.get_snapshots_normalized(1)
    assert [s.active for s in remaining] == [[1]]


@pytest.mark.asyncio
async def test_inactive_faction_detection(tmp_path) -> None:
    now = SLOT + 4 * 900
    repo = await _repo(tmp_path, now=now)
    for index, active in enumerate([[1, 2, 3], [], [4], []]):
        await repo.add_snapshot(1, "Quiet", SLOT + index * 900, active, 20)
    for index, active in enumerate([[1, 2], [1, 2, 3]]):
        await repo.add_snapshot(2, "Busy", SLOT + index * 900, active, 20)

    level = await repo.get_recent_activity_level(1, hours=24)
    assert (level.snapshots, level.total_active, level.max_active) == (4, 4, 3)
    assert await repo.is_inactive_faction(1)
    assert not await repo.is_inactive_faction(2)
    assert not await repo.is_inactive_faction(3)


@pytest.mark.asyncio
async def test_member_leaderboard(tmp_path) -> None:
    repo = await _repo(tmp_path, now=SLOT + 3 * 900)
    await repo.upsert_members({1: "Ann", 2: "Bob"})
    await repo.add_snapshot(1, "Alpha", SLOT, [1, 2], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 900, [1], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 1800, [1], 10)

    board = await repo.get_member_leaderboard(1, days=7)
    assert [(e.member_id, e.name, e.appearances) for e in board] == [
        (1, "Ann", 3),
        (2, "Bob", 1),
    ]
    assert board[0].percentage == 100
    assert await repo.get_member_leaderboard(99) == []


@pytest.mark.asyncio
async def test_member_faction_history(tmp_path) -> None:
    repo = await _repo(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT, [7], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 900, [7], 10)
    await repo.add_snapshot(2, "Beta", SLOT + 1800, [7], 10)

    assert await repo.get_member_faction_span(7, 1) == (SLOT, SLOT + 900)
    assert await repo.get_member_factions(7) == [2, 1]
    assert await repo.get_member_faction_span(7, 3) is None


@pytest.mark.asyncio
async def test_last_updated_tracks_writes(tmp_path) -> None:
    repo = await _repo(tmp_path)
    clock = repo._clock
    await repo.add_snapshot(1, "Alpha", SLOT, [7], 10)
    first = await repo.get_faction_last_updated(1)

    clock.advance(60)
    await repo.add_snapshot(2, "Beta", SLOT, [7], 10)

    assert await repo.get_faction_last_updated(1) == first
    assert await repo.get_faction_last_updated(2) == first + 60
    assert await repo.get_faction_last_updated(99) == 0


@pytest.mark.asyncio
async def test_version_changes_on_every_write(tmp_path) -> None:
    repo = await _repo(tmp_path)
    assert await repo.get_faction_version(1) == (0, 0)
    assert await repo.get_member_version(7) == (0, 0)

    await repo.add_snapshot(1, "Alpha", SLOT, [7], 10)
    faction_v1 = await repo.get_faction_version(1)
    member_v1 = await repo.get_member_version(7)

    # same clock second
    await repo.add_snapshot(1, "Alpha", SLOT + 900, [], 10)
    assert await repo.get_faction_version(1) != faction_v1
    assert await repo.get_member_version(7) != member_v1

    unrelated = await repo.get_faction_version(1)
    await repo.add_snapshot(2, "Beta", SLOT, [8], 10)
    assert await repo.get_faction_version(1) == unrelated


@pytest.mark.asyncio
async def test_search_members_orders_exact_then_prefix(tmp_path) -> None:
    repo = await _repo(tmp_path)
    await repo.upsert_members({1: "Malice", 2: "Alice", 3: "Al", 4: "Bob"})

    hits = await repo.search_members("al")
    assert [m.name for m in hits] == ["Al", "Alice", "Malice"]
    assert await repo.get_member_name(4) == "Bob"
    assert await repo.get_member_name(5) is None


@pytest.mark.asyncio
async def test_search_factions(tmp_path) -> None:
    repo = await _repo(tmp_path)
    await repo.add_snapshot(10, "Red Fox", SLOT, [], 5)
    await repo.add_snapshot(11, "Fox", SLOT, [], 5)
    await repo.add_snapshot(12, "Blue Jay", SLOT, [], 5)

    assert [f.id for f in await repo.search_factions("fox")] == [11, 10]
    assert [f.name for f in await repo.get_all_factions()] == ["Blue Jay", "Fox", "Red Fox"]
