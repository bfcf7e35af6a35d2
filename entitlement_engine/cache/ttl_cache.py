"""
Time-to-live snapshot cache with in-flight load coalescing.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Generic, List, Optional, Protocol, Tuple, TypeVar

from shared.errors import StaleResultDiscarded
from shared.logging import get_logger
from shared.metrics import EngineMetrics

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A committed snapshot and the clock reading it was captured at."""
    value: T
    captured_at: float


@dataclass(eq=False)
class _Waiter:
    owner: Optional[object]
    future: "asyncio.Future"


@dataclass
class InflightLoad:
    """One shared load and the readers waiting on it."""
    task: Optional["asyncio.Task"] = None
    waiters: List[_Waiter] = field(default_factory=list)
    # Set once the key is invalidated or released; the result is then never committed
    discarded: bool = False

    def pending_waiters(self) -> List[_Waiter]:
        return [waiter for waiter in self.waiters if not waiter.future.done()]


class SnapshotStore(Protocol[T]):
    """Optional second-level store shared between processes."""

    async def load(self, key: str) -> Optional[Tuple[T, float]]:
        ...

    async def save(self, key: str, value: T, captured_at: float, ttl_seconds: float) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class SnapshotCache(Generic[T]):
    """Per-key snapshots that go stale after ``stale_time`` and are evicted after ``gc_time``.

    Concurrent reads of a stale or missing key share one load. A load is
    only committed if the key was neither invalidated nor released while
    it ran. Readers may pass an ``owner`` token so that one of them can
    walk away from a shared load with ``release`` while the rest still get
    their answer.
    """

    def __init__(self,
                 name: str,
                 stale_time: float,
                 gc_time: float,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[EngineMetrics] = None,
                 store: Optional[SnapshotStore[T]] = None,
                 cacheable: Optional[Callable[[T], bool]] = None):
        if stale_time < 0:
            raise ValueError("stale_time must be non-negative")
        if gc_time < stale_time:
            raise ValueError("gc_time must not be shorter than stale_time")
        self.name = name
        self.stale_time = stale_time
        self.gc_time = gc_time
        self.metrics = metrics
        self.store = store
        self.cacheable = cacheable
        self.logger = get_logger(f"entitlements.cache.{name}")
        self._clock = clock

        self._entries: Dict[str, CacheEntry[T]] = {}
        self._inflight: Dict[str, InflightLoad] = {}

    def _age(self, entry: CacheEntry[T]) -> float:
        return self._clock() - entry.captured_at

    def peek(self, key: str) -> Optional[CacheEntry[T]]:
        """Committed entry for ``key``, stale or not, unless past gc."""
        entry = self._entries.get(key)
        if entry is None or self._age(entry) >= self.gc_time:
            return None
        return entry

    def is_fresh(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._age(entry) < self.stale_time

    def is_loading(self, key: str) -> bool:
        return key in self._inflight

    async def get(self, key: str, loader: Callable[[], Awaitable[T]], owner: Optional[object] = None) -> T:
        """Fresh snapshot for ``key``, loading it (once) when missing or stale."""
        entry = self._entries.get(key)
        if entry is not None and self._age(entry) < self.stale_time:
            if self.metrics:
                self.metrics.record_cache_lookup(self.name, hit=True)
            return entry.value

        if self.metrics:
            self.metrics.record_cache_lookup(self.name, hit=False)

        load = self._inflight.get(key)
        if load is None:
            load = InflightLoad()
            load.task = asyncio.ensure_future(self._load(key, loader, load))
            load.task.add_done_callback(lambda task, load=load: self._settle(key, load))
            self._inflight[key] = load
        else:
            self.logger.debug("Joining in-flight load", key=key)

        waiter = _Waiter(owner, asyncio.get_running_loop().create_future())
        load.waiters.append(waiter)
        try:
            return await waiter.future
        finally:
            if waiter in load.waiters:
                load.waiters.remove(waiter)

    def _settle(self, key: str, load: InflightLoad):
        task = load.task
        if task.cancelled():
            error: Optional[BaseException] = StaleResultDiscarded(key)
        else:
            error = task.exception()
        for waiter in load.pending_waiters():
            if error is not None:
                waiter.future.set_exception(error)
            else:
                waiter.future.set_result(task.result())
        if self._inflight.get(key) is load:
            del self._inflight[key]

    async def _load(self, key: str, loader: Callable[[], Awaitable[T]], load: InflightLoad) -> T:
        shared = await self._load_from_store(key)
        if shared is not None:
            value, captured_at = shared
        else:
            value = await loader()
            captured_at = self._clock()

        if load.discarded:
            # Invalidated or released while loading; hand the value to remaining waiters only
            self.logger.info("Discarding result of abandoned load", key=key)
            return value

        if self.cacheable is not None and not self.cacheable(value):
            self.logger.debug("Result not cacheable, returning uncommitted", key=key)
            return value

        self._entries[key] = CacheEntry(value=value, captured_at=captured_at)
        if shared is None:
            await self._save_to_store(key, value, captured_at)
        self.evict_expired()
        return value

    async def _load_from_store(self, key: str) -> Optional[Tuple[T, float]]:
        if self.store is None:
            return None
        try:
            shared = await self.store.load(key)
        except Exception as e:
            self.logger.warning("Snapshot store read failed", key=key, error=str(e))
            return None
        if shared is None or self._clock() - shared[1] >= self.stale_time:
            return None
        return shared

    async def _save_to_store(self, key: str, value: T, captured_at: float):
        if self.store is None:
            return
        try:
            await self.store.save(key, value, captured_at, self.gc_time)
        except Exception as e:
            self.logger.warning("Snapshot store write failed", key=key, error=str(e))

    def _detach(self, key: str) -> Optional[InflightLoad]:
        load = self._inflight.pop(key, None)
        if load is not None:
            load.discarded = True
        return load

    async def invalidate(self, key: str):
        """Drop ``key`` so the next read reloads; an in-flight load is not committed."""
        self._entries.pop(key, None)
        self._detach(key)
        if self.store is not None:
            try:
                await self.store.delete(key)
            except Exception as e:
                self.logger.warning("Snapshot store delete failed", key=key, error=str(e))
        self.logger.debug("Snapshot invalidated", key=key)

    def release(self, key: str, owner: object) -> bool:
        """Walk ``owner`` away from the in-flight load for ``key``.

        The load is never committed. ``owner``'s readers get
        StaleResultDiscarded; other readers still get the loaded value.
        The load itself is cancelled only once nobody else waits on it.
        """
        load = self._inflight.get(key)
        if load is None:
            return False
        leaving = [waiter for waiter in load.pending_waiters() if waiter.owner is owner]
        if not leaving:
            return False

        self._detach(key)
        for waiter in leaving:
            waiter.future.set_exception(StaleResultDiscarded(key))
        if not load.pending_waiters():
            load.task.cancel()
            self.logger.info("In-flight load cancelled", key=key)
        else:
            self.logger.info("Released in-flight load", key=key, remaining=len(load.pending_waiters()))
        return True

    def cancel(self, key: str) -> bool:
        """Abandon an in-flight load for ``key`` for every reader, without committing it."""
        load = self._detach(key)
        if load is None:
            return False
        load.task.cancel()
        self.logger.info("In-flight load cancelled", key=key)
        return True

    def evict_expired(self) -> int:
        """Drop entries older than ``gc_time``."""
        expired = [key for key, entry in self._entries.items() if self._age(entry) >= self.gc_time]
        for key in expired:
            del self._entries[key]

        if expired:
            self.logger.debug("Evicted expired snapshots", count=len(expired))
            if self.metrics:
                self.metrics.record_cache_eviction(self.name, len(expired))
        return len(expired)

    def clear(self):
        for key in list(self._inflight):
            self.cancel(key)
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
