"""
Visibility tiering package.

Turns catalog activation, cross-catalog monetization, elevated roles and
resolved entitlements into a hidden / locked / accessible decision with
upsell details.
"""

from .catalog import CachedFeatureCatalog, FeatureCatalog, PostgresFeatureCatalog, lowest_tier_offer
from .models import (
    CatalogOffer,
    CatalogSourceType,
    FeatureAssignmentExport,
    HiddenReason,
    MonetizedFeature,
    Visibility,
    VisibilityDecision,
)
from .tiering import VisibilityBatch, VisibilityService, classify

__all__ = [
    "CachedFeatureCatalog",
    "CatalogOffer",
    "CatalogSourceType",
    "FeatureAssignmentExport",
    "FeatureCatalog",
    "HiddenReason",
    "MonetizedFeature",
    "PostgresFeatureCatalog",
    "Visibility",
    "VisibilityBatch",
    "VisibilityDecision",
    "VisibilityService",
    "classify",
    "lowest_tier_offer",
]
