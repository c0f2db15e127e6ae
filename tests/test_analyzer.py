import pytest

from factionwatch.analyzer import ActivityAnalyzer
from factionwatch.cache import ResultCache
from factionwatch.repository import DAY_SECONDS, ActivityRepository

# Tuesday 2023-11-14 22:00:00 UTC
SLOT = 1_699_999_200
TUESDAY = 2


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _analyzer(tmp_path) -> tuple[ActivityAnalyzer, ActivityRepository, FakeClock]:
    clock = FakeClock(SLOT + 2 * 3600)
    repo = ActivityRepository(tmp_path / "analyzer.sqlite3", clock=clock)
    await repo.init()
    analyzer = ActivityAnalyzer(repo, ResultCache(ttl=900, clock=clock), clock=clock)
    return analyzer, repo, clock


@pytest.mark.asyncio
async def test_faction_hourly_averages(tmp_path) -> None:
    analyzer, repo, _ = await _analyzer(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT, [1, 2], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 120, [1], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 3600, [1, 2, 3, 4], 10)

    matrix = await analyzer.faction_hourly(1)

    assert matrix.granularity == "hourly"
    assert matrix.days == [0, 1, 2, 3, 4, 5, 6]
    assert matrix.data[22][TUESDAY] == 1.5
    assert matrix.data[23][TUESDAY] == 4.0
    assert matrix.data[21][TUESDAY] == 0.0
    assert matrix.max_value == 4.0
    assert matrix.snapshot_counts[22][TUESDAY] == 2


@pytest.mark.asyncio
async def test_faction_15min_splits_hour(tmp_path) -> None:
    analyzer, repo, _ = await _analyzer(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT, [1, 2], 10)
    await repo.add_snapshot(1, "Alpha", SLOT + 2700, [1, 2, 3, 4, 5, 6], 10)

    matrix = await analyzer.faction_15min(1)

    assert matrix.granularity == "15min"
    assert matrix.data[22][TUESDAY] == [2.0, 0.0, 0.0, 6.0]
    assert matrix.max_value == 6.0


@pytest.mark.asyncio
async def test_day_filter_limits_columns(tmp_path) -> None:
    analyzer, repo, _ = await _analyzer(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT, [1, 2], 10)

    matrix = await analyzer.faction_hourly(1, "weekend")

    assert matrix.days == [0, 6]
    assert set(matrix.data[22]) == {0, 6}
    assert matrix.max_value == 0.0


@pytest.mark.asyncio
async def test_cached_result_invalidated_by_new_snapshot(tmp_path) -> None:
    analyzer, repo, clock = await _analyzer(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT + 3600, [1, 2, 3, 4], 10)

    first = await analyzer.faction_hourly(1)
    assert await analyzer.faction_hourly(1) is first
    assert analyzer.cache.hits == 1

    clock.now += 60
    await repo.add_snapshot(1, "Alpha", SLOT + 3900, [], 10)

    second = await analyzer.faction_hourly(1)
    assert second is not first
    assert second.data[23][TUESDAY] == 2.0


@pytest.mark.asyncio
async def test_member_hourly_counts_weeks(tmp_path) -> None:
    analyzer, repo, _ = await _analyzer(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT - 7 * DAY_SECONDS, [6], 10)
    await repo.add_snapshot(1, "Alpha", SLOT, [5], 10)

    matrix = await analyzer.member_hourly(5)

    assert matrix is not None
    assert matrix.is_percentage
    assert matrix.max_value == 100
    assert matrix.faction_ids == [1]
    assert matrix.data[22][TUESDAY] == 50
    assert matrix.data[23][TUESDAY] == 0


@pytest.mark.asyncio
async def test_member_15min_merges_factions(tmp_path) -> None:
    analyzer, repo, _ = await _analyzer(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT - 7 * DAY_SECONDS, [6], 10)
    await repo.add_snapshot(1, "Alpha", SLOT, [5], 10)
    await repo.add_snapshot(2, "Beta", SLOT, [7], 10)
    await repo.add_snapshot(2, "Beta", SLOT + 900, [5], 10)

    matrix = await analyzer.member_15min(5)

    assert matrix is not None
    assert sorted(matrix.faction_ids) == [1, 2]
    assert matrix.data[22][TUESDAY] == [50, 100, 0, 0]


@pytest.mark.asyncio
async def test_unknown_member_has_no_heatmap(tmp_path) -> None:
    analyzer, _, _ = await _analyzer(tmp_path)
    assert await analyzer.member_hourly(404) is None
    assert await analyzer.member_15min(404) is None


@pytest.mark.asyncio
async def test_leaderboard_is_cached(tmp_path) -> None:
    analyzer, repo, _ = await _analyzer(tmp_path)
    await repo.upsert_members({1: "Ann"})
    await repo.add_snapshot(1, "Alpha", SLOT, [1], 10)

    board = await analyzer.leaderboard(1)
    assert [(e.name, e.appearances) for e in board] == [("Ann", 1)]
    assert await analyzer.leaderboard(1) is board


@pytest.mark.asyncio
async def test_write_within_the_same_second_invalidates_cache(tmp_path) -> None:
    analyzer, repo, _ = await _analyzer(tmp_path)
    await repo.add_snapshot(1, "Alpha", SLOT + 3600, [1, 2, 3, 4], 10)
    await repo.add_snapshot(1, "Alpha", SLOT - 7 * DAY_SECONDS, [5], 10)

    first = await analyzer.faction_hourly(1)
    before = await analyzer.member_hourly(5)
    assert before is not None and before.data[22][TUESDAY] == 100

    await repo.add_snapshot(1, "Alpha", SLOT + 3900, [], 10)
    await repo.add_snapshot(1, "Alpha", SLOT, [], 10)

    second = await analyzer.faction_hourly(1)
    assert second is not first
    assert second.data[23][TUESDAY] == 2.0
    after = await analyzer.member_hourly(5)
    assert after is not None and after.data[22][TUESDAY] == 50
    assert len(analyzer.cache) == 2
