"""
Visibility tiering.

Decides what a UI should render for a feature: hidden, locked (shown with
upsell) or accessible. This is a presentation decision layered on top of
resolved entitlements; backend enforcement keeps using has_feature.

Rules, first match wins:

1. no feature key: accessible (ungated)
2. feature not in the catalog: accessible (unmigrated feature)
3. feature inactive: hidden, or locked for elevated roles
4. feature not sold anywhere: hidden, or locked for elevated roles
5. subject holds the feature: accessible
6. otherwise locked, naming the lowest tier offer for upsell

Catalog lookup errors are treated as rule 2 (fail open). Entitlement
resolution errors have already failed closed in the entitlement cache.
"""

import asyncio
from typing import Collection, Dict, Iterable, Optional, Sequence

from shared.errors import CatalogLookupError
from shared.logging import get_logger
from shared.metrics import EngineMetrics
from ..cache.entitlement_cache import EntitlementCache
from ..rules.models import ResolvedEntitlements
from .catalog import FeatureCatalog, unique_keys
from .models import ACCESSIBLE, HiddenReason, MonetizedFeature, Visibility, VisibilityDecision

DEFAULT_ADMIN_ROLES = frozenset({"admin"})


def classify(feature_key: Optional[str],
             feature: Optional[MonetizedFeature],
             has_feature: bool,
             is_admin: bool) -> VisibilityDecision:
    """Pure visibility decision for one feature."""
    if not feature_key:
        return ACCESSIBLE

    if feature is None:
        return ACCESSIBLE

    gated = Visibility.LOCKED if is_admin else Visibility.HIDDEN

    if not feature.is_active:
        return VisibilityDecision(visibility=gated, hidden_reason=HiddenReason.INACTIVE)

    if not feature.is_monetized:
        return VisibilityDecision(visibility=gated, hidden_reason=HiddenReason.NOT_MONETIZED)

    if has_feature:
        return ACCESSIBLE

    offer = feature.offer
    return VisibilityDecision(
        visibility=Visibility.LOCKED,
        required_plan_name=offer.name,
        source_type=offer.source_type,
        source_display_name=offer.source_display_name,
    )


class VisibilityService:
    """Combines catalog facts with a subject's resolved entitlements."""

    def __init__(self,
                 catalog: FeatureCatalog,
                 entitlements: EntitlementCache,
                 admin_roles: Iterable[str] = DEFAULT_ADMIN_ROLES,
                 metrics: Optional[EngineMetrics] = None):
        self.catalog = catalog
        self.entitlements = entitlements
        self.admin_roles = frozenset(admin_roles)
        self.metrics = metrics
        self.logger = get_logger("entitlements.visibility.tiering")

    def is_admin(self, roles: Collection[str]) -> bool:
        return bool(self.admin_roles.intersection(roles or ()))

    def _record(self, decision: VisibilityDecision) -> VisibilityDecision:
        if self.metrics:
            self.metrics.record_visibility(decision.visibility.value)
        return decision

    async def _lookup_feature(self, feature_key: str) -> Optional[MonetizedFeature]:
        try:
            return await self.catalog.get_feature(feature_key)
        except CatalogLookupError as e:
            self.logger.warning(
                "Catalog lookup failed, treating feature as uncatalogued",
                feature_key=feature_key,
                error=e.message
            )
            return None

    async def _lookup_features(self, feature_keys: Sequence[str]) -> Dict[str, MonetizedFeature]:
        try:
            return await self.catalog.get_features(feature_keys)
        except CatalogLookupError as e:
            self.logger.warning(
                "Bulk catalog lookup failed, treating features as uncatalogued",
                feature_count=len(feature_keys),
                error=e.message
            )
            return {}

    async def get_visibility(self, subject_id: str, roles: Collection[str],
                             feature_key: Optional[str]) -> VisibilityDecision:
        """Visibility of one feature for one subject."""
        if not feature_key:
            return self._record(ACCESSIBLE)

        # Catalog and entitlements are independent; fetch both at once
        feature, snapshot = await asyncio.gather(
            self._lookup_feature(feature_key),
            self.entitlements.get(subject_id),
        )
        return self._record(classify(
            feature_key,
            feature,
            has_feature=snapshot.has_feature(feature_key),
            is_admin=self.is_admin(roles),
        ))

    async def get_visibility_batch(self, subject_id: str, roles: Collection[str],
                                   feature_keys: Iterable[Optional[str]]) -> "VisibilityBatch":
        """Visibility of many features with one bulk catalog lookup."""
        keys = unique_keys(feature_keys)
        if keys:
            features, snapshot = await asyncio.gather(
                self._lookup_features(keys),
                self.entitlements.get(subject_id),
            )
        else:
            features, snapshot = {}, ResolvedEntitlements.empty()

        batch = VisibilityBatch(features, snapshot, is_admin=self.is_admin(roles))
        for key in keys:
            self._record(batch.get_visibility(key))
        return batch


class VisibilityBatch:
    """Decisions for a set of feature keys, computed from one catalog round trip."""

    def __init__(self, features: Dict[str, MonetizedFeature], snapshot: ResolvedEntitlements, is_admin: bool):
        self.features = features
        self.snapshot = snapshot
        self.is_admin = is_admin

    def get_visibility(self, feature_key: Optional[str]) -> VisibilityDecision:
        return classify(
            feature_key,
            self.features.get(feature_key) if feature_key else None,
            has_feature=bool(feature_key) and self.snapshot.has_feature(feature_key),
            is_admin=self.is_admin,
        )

    def as_dict(self, feature_keys: Iterable[Optional[str]]) -> Dict[str, VisibilityDecision]:
        return {key: self.get_visibility(key) for key in unique_keys(feature_keys)}
