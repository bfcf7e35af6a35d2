"""
Entitlement resolution.

Merges every grant source's candidates for a feature into one decision:

1. any deny blocks the feature (``enabled=False, limit=0``)
2. keys with no enabled candidate are dropped
3. a ``None`` limit (unlimited) wins, else the highest limit wins
4. the reported source is the highest in ``SOURCE_PRIORITY`` among the
   enabled candidates; it is a display label and need not be the source
   that supplied the limit
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .models import (
    SOURCE_PRIORITY, AccessSource, FeatureEntitlement, ResolvedEntitlements, ResolvedFeature
)

DEFAULT_PREFIX_SEPARATOR = "_"


def group_by_feature(candidate_lists: Iterable[Iterable[FeatureEntitlement]]) -> Dict[str, List[FeatureEntitlement]]:
    """Flatten per-source candidate lists into ``feature_key -> candidates``."""
    grouped: Dict[str, List[FeatureEntitlement]] = {}
    for candidates in candidate_lists:
        for candidate in candidates:
            grouped.setdefault(candidate.feature_key, []).append(candidate)
    return grouped


def feature_prefix(feature_key: str, separator: str = DEFAULT_PREFIX_SEPARATOR) -> str:
    """Text before the first separator, or the whole key."""
    return feature_key.split(separator, 1)[0]


def merge_limits(limits: Sequence[Optional[int]]) -> Optional[int]:
    """None dominates; otherwise the maximum."""
    if any(limit is None for limit in limits):
        return None
    return max(limits)


def pick_display_source(candidates: Sequence[FeatureEntitlement]) -> AccessSource:
    present = {candidate.source for candidate in candidates}
    for source in SOURCE_PRIORITY:
        if source in present:
            return source
    # Unreachable for non-empty input; every source is in SOURCE_PRIORITY
    return AccessSource.PROGRAM_PLAN


def resolve_feature(candidates: Sequence[FeatureEntitlement]) -> Optional[ResolvedFeature]:
    """Resolve one feature's candidates, or None when nothing grants it."""
    for candidate in candidates:
        if candidate.is_denied:
            return ResolvedFeature(enabled=False, limit=0, source=candidate.source)

    granted = [candidate for candidate in candidates if candidate.enabled]
    if not granted:
        return None

    return ResolvedFeature(
        enabled=True,
        limit=merge_limits([candidate.limit for candidate in granted]),
        source=pick_display_source(granted),
    )


def resolve(candidates_by_feature: Mapping[str, Sequence[FeatureEntitlement]],
            separator: str = DEFAULT_PREFIX_SEPARATOR) -> ResolvedEntitlements:
    """Resolve a full candidate map. Pure: same input, same output."""
    features: Dict[str, ResolvedFeature] = {}
    by_prefix: Dict[str, Set[str]] = {}

    for feature_key, candidates in candidates_by_feature.items():
        resolved = resolve_feature(candidates)
        if resolved is None:
            continue

        features[feature_key] = resolved
        if resolved.enabled:
            by_prefix.setdefault(feature_prefix(feature_key, separator), set()).add(feature_key)

    return ResolvedEntitlements(features=features, features_by_prefix=by_prefix)
