"""
Usage accessor.

Combines a subject's resolved limit with the usage counter. The counter is
only consulted for finite limits; an unlimited feature has nothing to
compare against.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from shared.logging import get_logger
from shared.metrics import EngineMetrics
from ..cache.entitlement_cache import EntitlementCache
from .client import UsageCounter


@dataclass(frozen=True)
class FeatureUsage:
    """Resolved access plus current-period usage for one feature.

    ``usage_known`` is False when the counter could not be read; ``used``
    and ``remaining`` are then None.
    """
    feature_key: str
    has_access: bool
    limit: Optional[int]
    used: Optional[int]
    remaining: Optional[int]
    usage_known: bool

    @property
    def can_consume(self) -> bool:
        if not self.has_access:
            return False
        if self.limit is None:
            return True
        return self.remaining is not None and self.remaining >= 1

    def to_dict(self) -> Dict[str, object]:
        return {
            "feature_key": self.feature_key,
            "has_access": self.has_access,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "usage_known": self.usage_known,
            "can_consume": self.can_consume,
        }


def remaining_usage(limit: int, used: int) -> int:
    return max(0, limit - used)


class UsageAccessor:
    """Stateless reader; it caches nothing beyond the entitlement cache it sits on."""

    def __init__(self,
                 counter: UsageCounter,
                 entitlements: Optional[EntitlementCache] = None,
                 metrics: Optional[EngineMetrics] = None):
        self.counter = counter
        self.entitlements = entitlements
        self.metrics = metrics
        self.logger = get_logger("entitlements.usage.accessor")

    async def get_current_usage(self, subject_id: str, feature_key: str) -> Optional[int]:
        """Counter value, or None when the counter failed."""
        try:
            return await self.counter.get_current_usage(subject_id, feature_key)
        except Exception as e:
            self.logger.warning(
                "Usage counter failed, remaining usage unknown",
                subject_id=subject_id,
                feature_key=feature_key,
                error=str(e)
            )
            if self.metrics:
                self.metrics.record_usage_failure()
            return None

    async def get_remaining_usage(self, subject_id: str, feature_key: str,
                                  limit: Optional[int]) -> Optional[int]:
        """Remaining quota under ``limit``; None when unlimited or unknown."""
        if limit is None:
            return None
        used = await self.get_current_usage(subject_id, feature_key)
        if used is None:
            return None
        return remaining_usage(limit, used)

    async def usage_for(self, subject_id: str, feature_key: str,
                        has_access: bool, limit: Optional[int]) -> FeatureUsage:
        """Usage for an already-resolved entitlement."""
        if not has_access or limit is None:
            return FeatureUsage(
                feature_key=feature_key,
                has_access=has_access,
                limit=limit if has_access else None,
                used=None,
                remaining=None,
                usage_known=has_access,
            )

        used = await self.get_current_usage(subject_id, feature_key)
        return FeatureUsage(
            feature_key=feature_key,
            has_access=True,
            limit=limit,
            used=used,
            remaining=remaining_usage(limit, used) if used is not None else None,
            usage_known=used is not None,
        )

    async def get_feature_usage(self, subject_id: str, feature_key: str) -> FeatureUsage:
        """Resolve ``feature_key`` for ``subject_id`` and attach its usage."""
        if self.entitlements is None:
            raise RuntimeError("UsageAccessor needs an EntitlementCache to resolve entitlements")
        snapshot = await self.entitlements.get(subject_id)
        return await self.usage_for(
            subject_id,
            feature_key,
            has_access=snapshot.has_feature(feature_key),
            limit=snapshot.get_limit(feature_key),
        )

    async def get_usage_summary(self, subject_id: str) -> Dict[str, FeatureUsage]:
        """Usage of every enabled feature with a finite limit, read concurrently."""
        if self.entitlements is None:
            raise RuntimeError("UsageAccessor needs an EntitlementCache to resolve entitlements")
        snapshot = await self.entitlements.get(subject_id)
        limited = [
            (key, resolved.limit)
            for key, resolved in snapshot.features.items()
            if resolved.enabled and resolved.limit is not None
        ]
        results = await asyncio.gather(*(
            self.usage_for(subject_id, key, has_access=True, limit=limit)
            for key, limit in limited
        ))
        return {usage.feature_key: usage for usage in results}
