"""
Usage counter access for features with a finite limit.
"""

from .accessor import FeatureUsage, UsageAccessor, remaining_usage
from .client import HttpUsageCounter, PostgresUsageCounter, UsageCounter

__all__ = [
    "FeatureUsage",
    "HttpUsageCounter",
    "PostgresUsageCounter",
    "UsageAccessor",
    "UsageCounter",
    "remaining_usage",
]
