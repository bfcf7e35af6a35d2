"""
Unit tests for the TTL snapshot cache.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from shared.errors import StaleResultDiscarded
from entitlement_engine.cache.ttl_cache import SnapshotCache
from entitlement_engine.tests.fakes import ManualClock


class CountingLoader:
    def __init__(self, gate=None):
        self.calls = 0
        self.gate = gate

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return f"value-{self.calls}"


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


class TestSnapshotCache:
    """Staleness, gc, coalescing and discard."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def cache(self, clock, metrics):
        return SnapshotCache("test", stale_time=10, gc_time=20, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_fresh_entry_is_reused(self, cache, clock):
        loader = CountingLoader()

        first = await cache.get("k", loader)
        clock.advance(9.9)
        second = await cache.get("k", loader)

        assert first == second == "value-1"
        assert loader.calls == 1
        assert cache.is_fresh("k")

    @pytest.mark.asyncio
    async def test_stale_entry_reloads(self, cache, clock):
        loader = CountingLoader()

        await cache.get("k", loader)
        clock.advance(10)

        assert cache.is_fresh("k") is False
        assert cache.peek("k").value == "value-1"
        assert await cache.get("k", loader) == "value-2"

    @pytest.mark.asyncio
    async def test_gc_evicts_old_entries(self, cache, clock, metrics):
        await cache.get("a", CountingLoader())
        clock.advance(20)

        assert cache.peek("a") is None
        assert cache.evict_expired() == 1
        assert len(cache) == 0
        assert metrics.get_sample("entitlement_cache_evictions_total", {"cache": "test"}) == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self, cache):
        loader = CountingLoader()

        await cache.get("k", loader)
        await cache.invalidate("k")

        assert await cache.get("k", loader) == "value-2"
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_reads_share_one_load(self, cache):
        gate = asyncio.Event()
        loader = CountingLoader(gate)

        readers = [asyncio.ensure_future(cache.get("k", loader)) for _ in range(3)]
        await settle()
        assert cache.is_loading("k")

        gate.set()
        results = await asyncio.gather(*readers)

        assert results == ["value-1"] * 3
        assert loader.calls == 1
        assert cache.is_loading("k") is False

    @pytest.mark.asyncio
    async def test_invalidate_during_load_discards_result(self, cache):
        gate = asyncio.Event()
        loader = CountingLoader(gate)

        reader = asyncio.ensure_future(cache.get("k", loader))
        await settle()
        await cache.invalidate("k")
        gate.set()

        # The waiter still gets its answer, but it is not committed
        assert await reader == "value-1"
        assert cache.peek("k") is None

    @pytest.mark.asyncio
    async def test_cancel_abandons_load(self, cache):
        gate = asyncio.Event()
        loader = CountingLoader(gate)

        reader = asyncio.ensure_future(cache.get("k", loader))
        await settle()

        assert cache.cancel("k") is True
        with pytest.raises(StaleResultDiscarded):
            await reader
        assert cache.peek("k") is None
        assert cache.is_loading("k") is False
        assert cache.cancel("k") is False

    @pytest.mark.asyncio
    async def test_release_leaves_other_readers_their_answer(self, cache):
        gate = asyncio.Event()
        loader = CountingLoader(gate)
        leaving, staying = object(), object()

        left = asyncio.ensure_future(cache.get("k", loader, owner=leaving))
        kept = asyncio.ensure_future(cache.get("k", loader, owner=staying))
        await settle()

        assert cache.release("k", leaving) is True
        with pytest.raises(StaleResultDiscarded):
            await left

        gate.set()
        assert await kept == "value-1"
        assert cache.peek("k") is None
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_release_by_last_reader_cancels_load(self, cache):
        gate = asyncio.Event()
        owner = object()

        reader = asyncio.ensure_future(cache.get("k", CountingLoader(gate), owner=owner))
        await settle()

        assert cache.release("k", object()) is False
        assert cache.release("k", owner) is True
        with pytest.raises(StaleResultDiscarded):
            await reader
        await settle()
        assert cache.is_loading("k") is False

    @pytest.mark.asyncio
    async def test_invalidation_leaves_no_bookkeeping_behind(self, cache):
        gate = asyncio.Event()
        reader = asyncio.ensure_future(cache.get("busy", CountingLoader(gate)))
        await settle()

        for index in range(1000):
            await cache.invalidate(f"subject-{index}")
        await cache.invalidate("busy")
        gate.set()
        await reader
        await settle()

        assert len(cache) == 0
        assert cache._inflight == {}

    @pytest.mark.asyncio
    async def test_loader_error_is_not_cached(self, cache):
        loader = AsyncMock(side_effect=[RuntimeError("boom"), "ok"])

        with pytest.raises(RuntimeError):
            await cache.get("k", loader)
        assert await cache.get("k", loader) == "ok"

    @pytest.mark.asyncio
    async def test_uncacheable_result_is_returned_not_committed(self, clock):
        cache = SnapshotCache("test", stale_time=10, gc_time=20, clock=clock,
                              cacheable=lambda value: value != "value-1")
        loader = CountingLoader()

        assert await cache.get("k", loader) == "value-1"
        assert await cache.get("k", loader) == "value-2"
        assert await cache.get("k", loader) == "value-2"
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_hit_and_miss_metrics(self, cache, metrics):
        loader = CountingLoader()
        await cache.get("k", loader)
        await cache.get("k", loader)

        assert metrics.get_sample("entitlement_cache_requests_total", {"cache": "test", "result": "miss"}) == 1
        assert metrics.get_sample("entitlement_cache_requests_total", {"cache": "test", "result": "hit"}) == 1

    def test_rejects_gc_shorter_than_stale(self):
        with pytest.raises(ValueError):
            SnapshotCache("bad", stale_time=10, gc_time=5)


class TestSnapshotCacheStore:
    """Second-level store behaviour."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.mark.asyncio
    async def test_fresh_store_entry_skips_loader(self, clock):
        store = AsyncMock()
        store.load.return_value = ("shared", clock() - 1)
        cache = SnapshotCache("test", stale_time=10, gc_time=20, clock=clock, store=store)
        loader = CountingLoader()

        assert await cache.get("k", loader) == "shared"
        assert loader.calls == 0
        store.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_store_entry_is_ignored_and_replaced(self, clock):
        store = AsyncMock()
        store.load.return_value = ("old", clock() - 11)
        cache = SnapshotCache("test", stale_time=10, gc_time=20, clock=clock, store=store)

        assert await cache.get("k", CountingLoader()) == "value-1"
        store.save.assert_awaited_once_with("k", "value-1", clock(), 20)

    @pytest.mark.asyncio
    async def test_store_failures_are_not_fatal(self, clock):
        store = AsyncMock()
        store.load.side_effect = ConnectionError("redis down")
        store.save.side_effect = ConnectionError("redis down")
        store.delete.side_effect = ConnectionError("redis down")
        cache = SnapshotCache("test", stale_time=10, gc_time=20, clock=clock, store=store)

        assert await cache.get("k", CountingLoader()) == "value-1"
        await cache.invalidate("k")
        assert cache.peek("k") is None
