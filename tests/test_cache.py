"""
TTL cache tests.

All expiry checks use an injected fake clock.
"""

import asyncio

import pytest

from utils.cache import TTLCache


@pytest.fixture
def cache(clock):
    return TTLCache(clock=clock)


class TestExpiry:
    def test_value_visible_until_ttl(self, cache, clock):
        """
        An entry is returned before its TTL and absent at the TTL.

        Algorithm:
            1. set with ttl 10s
            2. Advance 9.5s -> value
            3. Advance 0.5s -> None, and the entry is evicted
        """
        cache.set("trending:TRENDING:GLOBAL:10", ["t1"], 10)

        clock.advance(9.5)
        assert cache.get("trending:TRENDING:GLOBAL:10") == ["t1"]

        clock.advance(0.5)
        assert cache.get("trending:TRENDING:GLOBAL:10") is None
        assert len(cache) == 0

    def test_missing_key(self, cache):
        assert cache.get("nope") is None

    def test_non_positive_ttl_not_stored(self, cache):
        cache.set("k", 1, 0)

        assert cache.get("k") is None
        assert len(cache) == 0

    def test_overwrite_refreshes_ttl(self, cache, clock):
        cache.set("k", 1, 5)
        clock.advance(4)
        cache.set("k", 2, 5)
        clock.advance(4)

        assert cache.get("k") == 2

    def test_purge_expired(self, cache, clock):
        cache.set("short", 1, 1)
        cache.set("long", 2, 100)
        clock.advance(2)

        assert cache.purge_expired() == 1
        assert len(cache) == 1


class TestClear:
    def test_clear_prefix(self, cache):
        """
        clear(prefix) removes matching keys only.

        Algorithm:
            1. Store two trending keys and one other key
            2. clear("trending:")
            3. Verify count removed and the other key survives
        """
        cache.set("trending:DAILY:US:10", [1], 60)
        cache.set("trending:TRENDING:GLOBAL:10", [2], 60)
        cache.set("profile:p1", {"name": "A"}, 60)

        assert cache.clear("trending:") == 2
        assert cache.get("trending:DAILY:US:10") is None
        assert cache.get("profile:p1") == {"name": "A"}

    def test_clear_all(self, cache):
        cache.set("a", 1, 60)
        cache.set("b", 2, 60)

        assert cache.clear() == 2
        assert len(cache) == 0


class TestBounds:
    def test_max_entries_evicts_soonest_expiry(self, clock):
        """
        A full cache evicts the entry closest to expiry.

        Algorithm:
            1. max_entries=2, store ttl 10 and ttl 100
            2. Store a third entry
            3. Verify the ttl-10 entry is gone
        """
        cache = TTLCache(clock=clock, max_entries=2)
        cache.set("soon", 1, 10)
        cache.set("later", 2, 100)
        cache.set("new", 3, 50)

        assert len(cache) == 2
        assert cache.get("soon") is None
        assert cache.get("later") == 2
        assert cache.get("new") == 3


class TestGetOrLoad:
    @pytest.mark.asyncio
    async def test_loader_called_once_within_ttl(self, cache, clock):
        """
        Read-through caches the loader result for the TTL.

        Algorithm:
            1. get_or_load twice within the TTL -> loader called once
            2. Advance past TTL -> loader called again
        """
        calls = []

        async def loader():
            calls.append(1)
            return len(calls)

        assert await cache.get_or_load("k", 30, loader) == 1
        assert await cache.get_or_load("k", 30, loader) == 1
        clock.advance(30)
        assert await cache.get_or_load("k", 30, loader) == 2
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_cache_failure_falls_through(self, clock):
        """
        A broken cache behaves like a miss; the loader result is still returned.

        Algorithm:
            1. Clock raises on every call (get and set both fail)
            2. get_or_load returns the loader value
        """

        def broken_clock():
            raise RuntimeError("clock unavailable")

        cache = TTLCache(clock=broken_clock)
        cache._store["k"] = ("stale", 0)

        async def loader():
            return "fresh"

        assert await cache.get_or_load("k", 30, loader) == "fresh"

    @pytest.mark.asyncio
    async def test_none_not_cached(self, cache):
        calls = []

        async def loader():
            calls.append(1)
            return None

        await cache.get_or_load("k", 30, loader)
        await cache.get_or_load("k", 30, loader)

        assert len(calls) == 2


class TestSweeper:
    @pytest.mark.asyncio
    async def test_sweeper_purges_in_background(self, clock):
        """
        The sweeper task removes expired entries nobody reads.

        Algorithm:
            1. Store an entry, expire it on the fake clock
            2. Start sweeper with a tiny interval and yield briefly
            3. Verify the entry is gone, then stop the sweeper
        """
        cache = TTLCache(clock=clock)
        cache.set("k", 1, 1)
        clock.advance(2)

        cache.start_sweeper(0.01)
        await asyncio.sleep(0.05)
        await cache.stop_sweeper()

        assert len(cache) == 0
