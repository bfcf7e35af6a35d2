"""
Per-subject entitlement cache.

Holds one ResolvedEntitlements snapshot per subject. Misses and stale
entries run the full grant source fan-out; concurrent readers of the same
subject share that load.
"""

import time
from typing import Callable, FrozenSet, List, Optional

from shared.errors import ResolutionFailedError
from shared.logging import get_logger
from shared.metrics import EngineMetrics
from ..rules.models import AccessSource, ResolvedEntitlements
from ..sources.collector import GrantCollector
from .ttl_cache import SnapshotCache, SnapshotStore


def _is_cacheable(snapshot: ResolvedEntitlements) -> bool:
    # Degraded snapshots are served once and never committed
    return not snapshot.degraded


class EntitlementCache:
    """Memoized resolution per subject with TTL and explicit invalidation."""

    def __init__(self,
                 collector: GrantCollector,
                 stale_time: float = 300.0,
                 gc_time: float = 600.0,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[EngineMetrics] = None,
                 store: Optional[SnapshotStore[ResolvedEntitlements]] = None):
        self.collector = collector
        self.metrics = metrics
        self.logger = get_logger("entitlements.cache.entitlements")
        self.snapshots: SnapshotCache[ResolvedEntitlements] = SnapshotCache(
            "entitlements",
            stale_time=stale_time,
            gc_time=gc_time,
            clock=clock,
            metrics=metrics,
            store=store,
            cacheable=_is_cacheable,
        )

    async def get(self, subject_id: str, owner: Optional[object] = None) -> ResolvedEntitlements:
        """Resolved snapshot for ``subject_id``.

        A fail-closed resolution yields an empty degraded snapshot: the
        subject has no entitlements until a later read succeeds.
        """
        if not subject_id:
            return ResolvedEntitlements.empty()

        try:
            return await self.snapshots.get(subject_id, lambda: self.collector.load(subject_id), owner=owner)
        except ResolutionFailedError as e:
            self.logger.error(
                "Entitlements unavailable, failing closed",
                subject_id=subject_id,
                failed_sources=e.failed_sources
            )
            return ResolvedEntitlements.empty(tuple(e.failed_sources))

    async def has_feature(self, subject_id: str, feature_key: str) -> bool:
        return (await self.get(subject_id)).has_feature(feature_key)

    async def get_limit(self, subject_id: str, feature_key: str) -> Optional[int]:
        return (await self.get(subject_id)).get_limit(feature_key)

    async def get_access_source(self, subject_id: str, feature_key: str) -> Optional[AccessSource]:
        return (await self.get(subject_id)).get_access_source(feature_key)

    async def get_features_by_prefix(self, subject_id: str, prefix: str) -> FrozenSet[str]:
        return (await self.get(subject_id)).get_features_by_prefix(prefix)

    async def get_all_enabled_features(self, subject_id: str) -> List[str]:
        return (await self.get(subject_id)).get_all_enabled_features()

    async def invalidate(self, subject_id: str):
        """Force the next read for ``subject_id`` to refetch every grant source."""
        await self.snapshots.invalidate(subject_id)
        self.logger.info("Entitlements invalidated", subject_id=subject_id)

    def cancel(self, subject_id: str) -> bool:
        return self.snapshots.cancel(subject_id)

    def release(self, subject_id: str, owner: object) -> bool:
        return self.snapshots.release(subject_id, owner)

    def has_snapshot(self, subject_id: str) -> bool:
        return self.snapshots.peek(subject_id) is not None

    def is_loading(self, subject_id: str) -> bool:
        return self.snapshots.is_loading(subject_id)

    def is_fresh(self, subject_id: str) -> bool:
        return self.snapshots.is_fresh(subject_id)

    def evict_expired(self) -> int:
        return self.snapshots.evict_expired()

    def clear(self):
        self.snapshots.clear()
