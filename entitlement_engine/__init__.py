"""
Entitlement engine.

Resolves which paid features a subject may use from five independent grant
sources, caches the result per subject, reads usage for limited features
and classifies features for display as hidden, locked or accessible.
"""

from .rules.models import AccessSource, FeatureEntitlement, ResolvedEntitlements, ResolvedFeature
from .rules.resolver import resolve
from .service import EntitlementService, EntitlementSession, FeatureAccess, SubjectEntitlements

__version__ = "1.0.0"

__all__ = [
    "AccessSource",
    "EntitlementService",
    "EntitlementSession",
    "FeatureAccess",
    "FeatureEntitlement",
    "ResolvedEntitlements",
    "ResolvedFeature",
    "SubjectEntitlements",
    "resolve",
]
