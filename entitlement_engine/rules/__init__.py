"""
Resolution rules package.

Holds the entitlement data model and the pure resolver that merges the
candidates of all grant sources into one decision per feature key:
deny overrides everything, unlimited beats any finite limit, otherwise the
highest limit wins, and the reported source follows a fixed display
priority.

Modules of interest:
- models: AccessSource, FeatureEntitlement, ResolvedEntitlements.
- resolver: group_by_feature and resolve.
"""

from .models import (
    SOURCE_PRIORITY, AccessSource, FeatureEntitlement, ResolvedEntitlements, ResolvedFeature
)
from .resolver import feature_prefix, group_by_feature, resolve, resolve_feature

__all__ = [
    "SOURCE_PRIORITY",
    "AccessSource",
    "FeatureEntitlement",
    "ResolvedEntitlements",
    "ResolvedFeature",
    "feature_prefix",
    "group_by_feature",
    "resolve",
    "resolve_feature",
]
