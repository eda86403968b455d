"""
Unit tests for the cache store
"""

import asyncio

import pytest

from dashsync.models.cache_entry import CacheStatus
from dashsync.services.cache_store import CacheStore


@pytest.fixture
def cache(cache_repository, clock):
    return CacheStore(cache_repository, clock, default_ttl=60.0, max_stale=600.0)


def counting_loader(value, calls, gate=None):
    async def load():
        calls.append(1)
        if gate is not None:
            await gate.wait()
        return value
    return load


@pytest.mark.unit
class TestLookup:
    """Test freshness classification"""

    async def test_miss(self, cache):
        assert cache.get("dashboard-summary").status == CacheStatus.MISS

    async def test_fresh_then_stale(self, cache, clock):
        await cache.put("bills", [1, 2])
        assert cache.get("bills").status == CacheStatus.FRESH

        await clock.advance(59)
        assert cache.get("bills").fresh

        await clock.advance(1)
        lookup = cache.get("bills")
        assert lookup.status == CacheStatus.STALE
        assert lookup.value == [1, 2]

    async def test_expired_beyond_max_stale(self, cache, clock):
        await cache.put("bills", [1])
        await clock.advance(660)
        assert not cache.get("bills").hit

    async def test_custom_ttl(self, cache, clock):
        await cache.put("weekly-summary", {"week": 1}, ttl=5)
        await clock.advance(5)
        assert cache.get("weekly-summary").status == CacheStatus.STALE

    async def test_stats(self, cache, clock):
        await cache.put("bills", [])
        cache.get("bills")
        cache.get("missing")
        await clock.advance(61)
        cache.get("bills")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["stale_hits"] == 1
        assert stats["hit_rate"] == pytest.approx(2 / 3)


@pytest.mark.unit
class TestInvalidation:
    """Test invalidation and persistence"""

    async def test_invalidate(self, cache, cache_repository):
        await cache.put("bills", [1])
        assert await cache.invalidate("bills") is True
        assert not cache.get("bills").hit
        assert cache_repository.find_by_key("bills") is None

    async def test_invalidate_all(self, cache, cache_repository):
        await cache.put("bills", [1])
        await cache.put("dashboard-summary", {"totalBusinessProfit": 1})
        await cache.invalidate_all()
        assert cache.memory_cache == {}
        assert cache_repository.count() == 0

    async def test_load_restores_persisted_entries(self, cache_repository, clock):
        first = CacheStore(cache_repository, clock, default_ttl=60.0, max_stale=600.0)
        await first.put("dashboard-summary", {"totalBusinessProfit": 250})

        second = CacheStore(cache_repository, clock, default_ttl=60.0, max_stale=600.0)
        assert await second.load() == 1
        assert second.get("dashboard-summary").value == {"totalBusinessProfit": 250}

    async def test_sweep_removes_expired(self, cache, cache_repository, clock):
        await cache.put("old", 1)
        await clock.advance(400)
        await cache.put("new", 2)
        await clock.advance(300)

        assert await cache.sweep() == 1
        assert "old" not in cache.memory_cache
        assert cache_repository.find_by_key("old") is None
        assert cache_repository.find_by_key("new") is not None


@pytest.mark.unit
class TestReadThrough:
    """Test read-through with stale-while-revalidate"""

    async def test_miss_waits_for_load(self, cache):
        calls = []
        value = await cache.read_through("bills", counting_loader(["b1"], calls))
        assert value == ["b1"]
        assert len(calls) == 1
        assert cache.get("bills").fresh

    async def test_fresh_does_not_load(self, cache):
        calls = []
        await cache.put("bills", ["cached"])
        assert await cache.read_through("bills", counting_loader(["new"], calls)) == ["cached"]
        assert calls == []

    async def test_stale_returns_immediately_with_one_refresh(self, cache, clock, wait_for):
        await cache.put("dashboard-summary", {"v": 1})
        await clock.advance(61)

        calls = []
        gate = asyncio.Event()
        loader = counting_loader({"v": 2}, calls, gate)

        results = await asyncio.gather(*(cache.read_through("dashboard-summary", loader) for _ in range(10)))
        assert results == [{"v": 1}] * 10

        await wait_for(lambda: len(calls) == 1)
        assert cache.refreshing("dashboard-summary")

        gate.set()
        await wait_for(lambda: cache.get("dashboard-summary").value == {"v": 2})
        assert len(calls) == 1
        assert cache.get_stats()["refreshes"] == 1

    async def test_concurrent_refresh_coalesces(self, cache):
        calls = []
        gate = asyncio.Event()
        loader = counting_loader("value", calls, gate)

        waiters = [asyncio.ensure_future(cache.refresh("bills", loader)) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*waiters)

        assert results == ["value"] * 5
        assert len(calls) == 1

    async def test_refresh_failure_reaches_every_waiter(self, cache):
        async def failing():
            await asyncio.sleep(0)
            raise RuntimeError("remote down")

        results = await asyncio.gather(
            cache.refresh("bills", failing),
            cache.refresh("bills", failing),
            return_exceptions=True,
        )
        assert all(isinstance(r, RuntimeError) for r in results)
        assert not cache.refreshing("bills")

    async def test_failed_background_refresh_keeps_stale_value(self, cache, clock, wait_for):
        await cache.put("bills", ["old"])
        await clock.advance(61)

        async def failing():
            raise RuntimeError("remote down")

        assert await cache.read_through("bills", failing) == ["old"]
        await wait_for(lambda: not cache.refreshing("bills"))
        assert cache.get("bills").value == ["old"]


@pytest.mark.unit
class TestInvalidationDuringLoad:
    """Test that a load racing an invalidation cannot restore old data"""

    async def test_invalidated_load_is_not_joined_or_stored(self, cache, cache_repository):
        release = asyncio.Event()

        async def old_loader():
            await release.wait()
            return {"totalBusinessProfit": 1000}

        async def new_loader():
            return {"totalBusinessProfit": 9999}

        old = asyncio.ensure_future(cache.refresh("dashboard-summary", old_loader))
        await asyncio.sleep(0)
        assert cache.refreshing("dashboard-summary")

        await cache.invalidate("dashboard-summary")
        assert not cache.refreshing("dashboard-summary")
        assert await cache.refresh("dashboard-summary", new_loader) == {"totalBusinessProfit": 9999}

        release.set()
        assert await old == {"totalBusinessProfit": 1000}
        assert cache.get("dashboard-summary").value == {"totalBusinessProfit": 9999}
        assert cache_repository.find_by_key("dashboard-summary").value == {"totalBusinessProfit": 9999}

    async def test_load_finishing_after_invalidate_all_is_dropped(self, cache, cache_repository):
        release = asyncio.Event()

        async def old_loader():
            await release.wait()
            return ["old"]

        old = asyncio.ensure_future(cache.refresh("bills", old_loader))
        await asyncio.sleep(0)
        await cache.invalidate_all()

        release.set()
        await old
        assert not cache.get("bills").hit
        assert cache_repository.find_by_key("bills") is None

    async def test_invalidate_all_waits_for_write_in_progress(self, cache, cache_repository):
        write = asyncio.ensure_future(cache.put("bills", ["written"]))
        await asyncio.sleep(0)
        await cache.invalidate_all()
        await write

        assert cache.memory_cache == {}
        assert cache_repository.find_by_key("bills") is None
