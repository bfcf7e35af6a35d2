"""
Snapshot caching for resolved entitlements and catalog lookups.
"""

from .entitlement_cache import EntitlementCache
from .redis_store import RedisSnapshotStore, decode_snapshot, encode_snapshot
from .ttl_cache import CacheEntry, SnapshotCache, SnapshotStore

__all__ = [
    "CacheEntry",
    "EntitlementCache",
    "RedisSnapshotStore",
    "SnapshotCache",
    "SnapshotStore",
    "decode_snapshot",
    "encode_snapshot",
]
