"""
Tests for the per-resolver TTL cache.
"""

import asyncio

import pytest

from carehub.core.cache import TTLCache
from tests.conftest import FakeClock


@pytest.fixture
def cache(clock):
    return TTLCache(ttl_seconds=60, max_size=3, clock=clock, name="test")


class TestFreshness:
    """Entries expire after the freshness window"""

    def test_fresh_entry_is_returned(self, cache, clock):
        cache.set(("user-1", "roles"), ["nurse"])
        clock.advance(59)
        assert cache.get(("user-1", "roles")) == ["nurse"]

    def test_stale_entry_is_dropped(self, cache, clock):
        cache.set(("user-1", "roles"), ["nurse"])
        clock.advance(60)
        assert cache.get(("user-1", "roles")) is None
        assert len(cache) == 0

    def test_missing_key_returns_default(self, cache):
        assert cache.get(("nobody", "roles"), "fallback") == "fallback"


class TestInvalidation:
    """Per-user invalidation and clearing"""

    def test_invalidate_user_drops_only_that_user(self, cache):
        cache.set(("user-1", "effective"), [1])
        cache.set(("user-1", "check", "patients:read", None), True)
        cache.set(("user-2", "effective"), [2])

        removed = cache.invalidate_user("user-1")

        assert removed == 2
        assert cache.get(("user-1", "effective")) is None
        assert cache.get(("user-2", "effective")) == [2]

    def test_clear(self, cache):
        cache.set(("user-1", "effective"), [1])
        cache.clear()
        assert len(cache) == 0


class TestEviction:
    """Bounded size"""

    def test_oldest_entry_is_evicted_when_full(self, cache, clock):
        for i in range(3):
            cache.set((f"user-{i}", "roles"), i)
            clock.advance(1)
        cache.set(("user-3", "roles"), 3)

        assert len(cache) == 3
        assert cache.get(("user-0", "roles")) is None
        assert cache.get(("user-3", "roles")) == 3

    def test_stale_entries_are_evicted_first(self, clock):
        cache = TTLCache(ttl_seconds=10, max_size=2, clock=clock)
        cache.set(("old", "roles"), "old")
        clock.advance(5)
        cache.set(("young", "roles"), "young")
        clock.advance(6)
        cache.set(("new", "roles"), "new")

        assert cache.get(("young", "roles")) == "young"
        assert cache.get(("new", "roles")) == "new"


class TestGetOrLoad:
    """Loading through the cache"""

    @pytest.mark.asyncio
    async def test_value_is_cached(self, cache):
        calls = []

        async def loader():
            calls.append(1)
            return "value"

        assert await cache.get_or_load(("user-1", "x"), loader) == "value"
        assert await cache.get_or_load(("user-1", "x"), loader) == "value"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_load(self, cache):
        calls = []
        release = asyncio.Event()

        async def loader():
            calls.append(1)
            await release.wait()
            return ["onboarding"]

        tasks = [asyncio.create_task(cache.get_or_load(("user-1", "effective"), loader)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert len(calls) == 1
        assert results == [["onboarding"]] * 5

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, cache):
        attempts = []

        async def loader():
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("down")
            return "recovered"

        with pytest.raises(ConnectionError):
            await cache.get_or_load(("user-1", "x"), loader)
        assert await cache.get_or_load(("user-1", "x"), loader) == "recovered"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_waiters_receive_the_loader_error(self, cache):
        release = asyncio.Event()

        async def loader():
            await release.wait()
            raise ConnectionError("down")

        tasks = [asyncio.create_task(cache.get_or_load(("user-1", "x"), loader)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, ConnectionError) for r in results)

    @pytest.mark.asyncio
    async def test_load_racing_invalidation_is_not_stored(self, cache):
        release = asyncio.Event()

        async def loader():
            await release.wait()
            return "pre-revoke"

        task = asyncio.create_task(cache.get_or_load(("user-1", "effective"), loader))
        await asyncio.sleep(0)
        cache.invalidate_user("user-1")
        release.set()

        assert await task == "pre-revoke"
        assert cache.get(("user-1", "effective")) is None

    @pytest.mark.asyncio
    async def test_reload_after_expiry(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=1, clock=clock)
        values = iter(["first", "second"])

        async def loader():
            return next(values)

        assert await cache.get_or_load(("u", "k"), loader) == "first"
        clock.advance(2)
        assert await cache.get_or_load(("u", "k"), loader) == "second"
