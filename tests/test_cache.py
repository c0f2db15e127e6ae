from factionwatch.cache import ResultCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_version_mismatch_is_a_miss() -> None:
    cache = ResultCache(ttl=60, clock=FakeClock())
    cache.set("a", "value", version=1)

    assert cache.get("a", version=1) == "value"
    assert cache.get("a", version=2) is None
    assert len(cache) == 0
    assert (cache.hits, cache.misses) == (1, 1)


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = ResultCache(ttl=60, clock=clock)
    cache.set("a", "value", version=1)

    clock.now = 60
    assert cache.get("a", version=1) == "value"
    clock.now = 60.5
    assert cache.get("a", version=1) is None


def test_least_recently_used_is_evicted() -> None:
    cache = ResultCache(ttl=60, max_size=2, clock=FakeClock())
    cache.set("a", 1, version=0)
    cache.set("b", 2, version=0)
    assert cache.get("a", version=0) == 1

    cache.set("c", 3, version=0)

    assert cache.get("b", version=0) is None
    assert cache.get("a", version=0) == 1
    assert cache.get("c", version=0) == 3
