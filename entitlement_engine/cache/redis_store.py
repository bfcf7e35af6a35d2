"""
Redis-backed snapshot store for resolved entitlements.

Lets several engine processes share resolved snapshots. The in-process
SnapshotCache stays authoritative for staleness; Redis only keeps a copy
until the gc threshold.
"""

import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

from shared.logging import get_logger
from shared.errors import EntitlementEngineError
from ..rules.models import AccessSource, ResolvedEntitlements, ResolvedFeature

CACHE_SCHEMA_VERSION = 1


def encode_snapshot(snapshot: ResolvedEntitlements, captured_at: float) -> Dict[str, Any]:
    return {
        "schema_version": CACHE_SCHEMA_VERSION,
        "captured_at": captured_at,
        "features": {
            key: {"enabled": value.enabled, "limit": value.limit, "source": value.source.value}
            for key, value in snapshot.features.items()
        },
        "features_by_prefix": {
            prefix: sorted(keys) for prefix, keys in snapshot.features_by_prefix.items()
        },
    }


def decode_snapshot(raw: Dict[str, Any]) -> Tuple[ResolvedEntitlements, float]:
    if int(raw.get("schema_version", 0)) != CACHE_SCHEMA_VERSION:
        raise ValueError("Unsupported entitlement snapshot schema version")

    features = {
        key: ResolvedFeature(
            enabled=bool(value["enabled"]),
            limit=value["limit"],
            source=AccessSource(value["source"]),
        )
        for key, value in raw["features"].items()
    }
    snapshot = ResolvedEntitlements(
        features=features,
        features_by_prefix={prefix: set(keys) for prefix, keys in raw["features_by_prefix"].items()},
    )
    return snapshot, float(raw["captured_at"])


class RedisSnapshotStore:
    """Stores one JSON document per subject under ``entitlements:v1:<subject>``."""

    KEY_PREFIX = "entitlements:v1:"

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.logger = get_logger("entitlements.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Connect to Redis."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis snapshot store started")

        except Exception as e:
            self.logger.error("Failed to start Redis snapshot store", error=str(e))
            raise EntitlementEngineError("REDIS_START_FAILED", str(e)) from e

    async def stop(self):
        if self.redis:
            await self.redis.close()
            self.redis = None
            self.logger.info("Redis snapshot store stopped")

    def _key(self, subject_id: str) -> str:
        return f"{self.KEY_PREFIX}{subject_id}"

    async def load(self, key: str) -> Optional[Tuple[ResolvedEntitlements, float]]:
        if self.redis is None:
            return None
        raw = await self.redis.get(self._key(key))
        if not raw:
            return None
        return decode_snapshot(json.loads(raw))

    async def save(self, key: str, value: ResolvedEntitlements, captured_at: float, ttl_seconds: float) -> None:
        if self.redis is None:
            return
        await self.redis.setex(
            self._key(key),
            max(1, int(ttl_seconds)),
            json.dumps(encode_snapshot(value, captured_at))
        )

    async def delete(self, key: str) -> None:
        if self.redis is None:
            return
        await self.redis.delete(self._key(key))

    async def health_check(self) -> bool:
        try:
            return self.redis is not None and bool(await self.redis.ping())
        except Exception:
            return False
