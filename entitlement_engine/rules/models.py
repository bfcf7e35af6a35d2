"""
Entitlement data models.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Optional, Tuple

from shared.errors import ValidationError


class AccessSource(str, Enum):
    """Grant source a feature entitlement came from."""
    SUBSCRIPTION = "subscription"
    PROGRAM_PLAN = "program_plan"
    ADD_ON = "add_on"
    TRACK = "track"
    ORG_SPONSORED = "org_sponsored"


# Display priority, highest first
SOURCE_PRIORITY: Tuple[AccessSource, ...] = (
    AccessSource.ADD_ON,
    AccessSource.TRACK,
    AccessSource.ORG_SPONSORED,
    AccessSource.SUBSCRIPTION,
    AccessSource.PROGRAM_PLAN,
)


@dataclass(frozen=True)
class FeatureEntitlement:
    """One grant source's claim about one feature for one subject."""
    feature_key: str
    enabled: bool
    limit: Optional[int]
    source: AccessSource
    is_denied: bool = False

    def __post_init__(self) -> None:
        feature_key = str(self.feature_key).strip()
        if not feature_key:
            raise ValidationError("feature_key is required")
        if self.limit is not None and self.limit < 0:
            raise ValidationError(
                "limit must be non-negative or None",
                details={"feature_key": feature_key, "limit": self.limit}
            )
        object.__setattr__(self, "feature_key", feature_key)
        object.__setattr__(self, "source", AccessSource(self.source))

    @classmethod
    def deny(cls, feature_key: str, source: AccessSource) -> "FeatureEntitlement":
        return cls(feature_key=feature_key, enabled=False, limit=0, source=source, is_denied=True)


@dataclass(frozen=True)
class ResolvedFeature:
    """Final entitlement for one feature key."""
    enabled: bool
    limit: Optional[int]
    source: AccessSource


@dataclass(frozen=True)
class ResolvedEntitlements:
    """Resolved entitlement snapshot for one subject.

    ``features`` holds every granted key plus every explicitly denied key
    (``enabled=False, limit=0``). Keys no source mentioned are absent.
    ``features_by_prefix`` only indexes enabled keys.
    """
    features: Mapping[str, ResolvedFeature] = field(default_factory=dict)
    features_by_prefix: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    degraded: bool = False
    failed_sources: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "features", MappingProxyType(dict(self.features)))
        object.__setattr__(
            self,
            "features_by_prefix",
            MappingProxyType({k: frozenset(v) for k, v in self.features_by_prefix.items()})
        )
        object.__setattr__(self, "failed_sources", tuple(self.failed_sources))

    @classmethod
    def empty(cls, failed_sources: Tuple[str, ...] = ()) -> "ResolvedEntitlements":
        return cls(degraded=bool(failed_sources), failed_sources=failed_sources)

    def has_feature(self, feature_key: str) -> bool:
        resolved = self.features.get(feature_key)
        return bool(resolved and resolved.enabled)

    def get_limit(self, feature_key: str) -> Optional[int]:
        resolved = self.features.get(feature_key)
        return resolved.limit if resolved else None

    def get_access_source(self, feature_key: str) -> Optional[AccessSource]:
        resolved = self.features.get(feature_key)
        return resolved.source if resolved else None

    def get_features_by_prefix(self, prefix: str) -> FrozenSet[str]:
        return self.features_by_prefix.get(prefix, frozenset())

    def get_all_enabled_features(self) -> List[str]:
        return [key for key, resolved in self.features.items() if resolved.enabled]
