"""
Grant source package.

Each grant source (personal subscription, program plan, add-on, track,
organization sponsorship) is read by an independent adapter. The
collector launches all of them at once and waits for every answer
before resolving, since the merge rules need the complete candidate set.
"""

from .base import GrantSourceAdapter
from .collector import CollectionResult, GrantCollector
from .postgres import (
    AddOnGrantSource,
    OrgSponsoredGrantSource,
    ProgramPlanGrantSource,
    SubscriptionGrantSource,
    TrackGrantSource,
    create_postgres_sources,
)

__all__ = [
    "GrantSourceAdapter",
    "CollectionResult",
    "GrantCollector",
    "AddOnGrantSource",
    "OrgSponsoredGrantSource",
    "ProgramPlanGrantSource",
    "SubscriptionGrantSource",
    "TrackGrantSource",
    "create_postgres_sources",
]
