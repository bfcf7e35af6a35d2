"""
Shared fixtures for entitlement engine tests.
"""

import pytest

from shared.metrics import EngineMetrics
from entitlement_engine.cache.entitlement_cache import EntitlementCache
from entitlement_engine.rules.models import AccessSource
from entitlement_engine.sources.collector import GrantCollector
from entitlement_engine.tests.fakes import FakeGrantSource, ManualClock, grant


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def metrics():
    return EngineMetrics()


@pytest.fixture
def adapters():
    """One fake adapter per grant source; subject ``user-1`` holds a few features."""
    return {
        AccessSource.SUBSCRIPTION: FakeGrantSource(AccessSource.SUBSCRIPTION, {
            "user-1": [grant("ai_insights", AccessSource.SUBSCRIPTION, limit=10),
                       grant("ai_coach", AccessSource.SUBSCRIPTION, limit=5)],
        }),
        AccessSource.PROGRAM_PLAN: FakeGrantSource(AccessSource.PROGRAM_PLAN, {
            "user-1": [grant("ai_insights", AccessSource.PROGRAM_PLAN, limit=30)],
        }),
        AccessSource.ADD_ON: FakeGrantSource(AccessSource.ADD_ON, {
            "user-1": [grant("community", AccessSource.ADD_ON)],
        }),
        AccessSource.TRACK: FakeGrantSource(AccessSource.TRACK),
        AccessSource.ORG_SPONSORED: FakeGrantSource(AccessSource.ORG_SPONSORED),
    }


@pytest.fixture
def collector(adapters, metrics):
    return GrantCollector(list(adapters.values()), metrics=metrics)


@pytest.fixture
def entitlement_cache(collector, clock, metrics):
    return EntitlementCache(collector, stale_time=300, gc_time=600, clock=clock, metrics=metrics)
