"""
Unit tests for the PostgreSQL grant source adapters.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from entitlement_engine.rules.models import AccessSource
from entitlement_engine.sources.postgres import (
    AddOnGrantSource,
    OrgSponsoredGrantSource,
    ProgramPlanGrantSource,
    SubscriptionGrantSource,
    TrackGrantSource,
    create_postgres_sources,
    pick_highest_tier_plan,
    plan_ids_for_enrollments,
    tier_level,
)


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=[])
    return conn


@pytest.fixture
def persistence(conn):
    persistence = MagicMock()

    @asynccontextmanager
    async def connection():
        yield conn

    persistence.connection = connection
    return persistence


def enrollment(program_plan_id=None, tier=None, default_program_plan_id=None):
    return {
        "program_plan_id": program_plan_id,
        "tier": tier,
        "default_program_plan_id": default_program_plan_id,
    }


class TestEnrollmentHelpers:

    @pytest.mark.parametrize("tier,expected", [
        ("essentials", 0), ("Base", 0), ("premium", 1), ("PROFESSIONAL", 1),
        ("enterprise", 2), ("gold", None), (None, None), ("", None),
    ])
    def test_tier_level(self, tier, expected):
        assert tier_level(tier) == expected

    def test_direct_plan_wins_over_tier(self):
        direct, levels = plan_ids_for_enrollments([enrollment("pp-1", "premium", "pp-default")])
        assert direct == {"pp-1"}
        assert levels == set()

    def test_tier_then_default(self):
        direct, levels = plan_ids_for_enrollments([
            enrollment(tier="enterprise", default_program_plan_id="pp-default"),
            enrollment(tier="unknown", default_program_plan_id="pp-fallback"),
            enrollment(tier="unknown"),
        ])
        assert direct == {"pp-fallback"}
        assert levels == {2}

    def test_pick_highest_tier_plan(self):
        memberships = [
            {"plan_id": "basic", "tier_level": 0},
            {"plan_id": "pro", "tier_level": 2},
            {"plan_id": "pro-2", "tier_level": 2},
            {"plan_id": "untiered", "tier_level": None},
        ]
        assert pick_highest_tier_plan(memberships) == "pro"
        assert pick_highest_tier_plan([]) is None


class TestGrantSources:

    @pytest.mark.asyncio
    async def test_subscription(self, persistence, conn):
        conn.fetch.return_value = [
            {"feature_key": "ai_insights", "limit_value": 10},
            {"feature_key": "community", "limit_value": None},
        ]

        candidates = await SubscriptionGrantSource(persistence).fetch("user-1")

        assert [(c.feature_key, c.limit, c.source) for c in candidates] == [
            ("ai_insights", 10, AccessSource.SUBSCRIPTION),
            ("community", None, AccessSource.SUBSCRIPTION),
        ]
        assert conn.fetch.await_args.args[1] == "user-1"

    @pytest.mark.asyncio
    async def test_program_plan_resolves_tiers(self, persistence, conn):
        conn.fetch.side_effect = [
            [enrollment(tier="premium"), enrollment(program_plan_id="pp-direct")],
            [{"id": "pp-premium"}],
            [{"feature_key": "ai_coach", "limit_value": 3}],
        ]

        candidates = await ProgramPlanGrantSource(persistence).fetch("user-1")

        assert len(candidates) == 1
        assert candidates[0].source == AccessSource.PROGRAM_PLAN
        assert conn.fetch.await_args_list[1].args[1] == [1]
        assert sorted(conn.fetch.await_args_list[2].args[1]) == ["pp-direct", "pp-premium"]

    @pytest.mark.asyncio
    async def test_program_plan_without_enrollments(self, persistence, conn):
        conn.fetch.return_value = []

        assert await ProgramPlanGrantSource(persistence).fetch("user-1") == []
        assert conn.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_add_on_is_unlimited_and_filters_expiry(self, persistence, conn):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        conn.fetch.return_value = [{"feature_key": "community"}]

        candidates = await AddOnGrantSource(persistence, clock=lambda: now).fetch("user-1")

        assert candidates[0].limit is None
        assert candidates[0].source == AccessSource.ADD_ON
        assert conn.fetch.await_args.args[1:] == ("user-1", now)

    @pytest.mark.asyncio
    async def test_track(self, persistence, conn):
        conn.fetch.return_value = [{"feature_key": "ai_voice", "limit_value": 2}]

        candidates = await TrackGrantSource(persistence).fetch("user-1")

        assert candidates[0].source == AccessSource.TRACK
        assert candidates[0].limit == 2

    @pytest.mark.asyncio
    async def test_org_sponsored_restrictive_rows_deny(self, persistence, conn):
        conn.fetch.side_effect = [
            [{"plan_id": "low", "tier_level": 0}, {"plan_id": "high", "tier_level": 1}],
            [
                {"feature_key": "ai_insights", "enabled": True, "limit_value": 50, "is_restrictive": False},
                {"feature_key": "ai_voice", "enabled": True, "limit_value": 5, "is_restrictive": True},
                {"feature_key": "community", "enabled": False, "limit_value": None, "is_restrictive": False},
            ],
        ]

        candidates = await OrgSponsoredGrantSource(persistence).fetch("user-1")

        assert conn.fetch.await_args_list[1].args[1] == "high"
        by_key = {c.feature_key: c for c in candidates}
        assert set(by_key) == {"ai_insights", "ai_voice"}
        assert by_key["ai_insights"].limit == 50
        assert by_key["ai_voice"].is_denied is True
        assert by_key["ai_voice"].limit == 0

    @pytest.mark.asyncio
    async def test_org_sponsored_without_membership(self, persistence, conn):
        conn.fetch.return_value = []

        assert await OrgSponsoredGrantSource(persistence).fetch("user-1") == []
        assert conn.fetch.await_count == 1

    def test_create_postgres_sources_covers_every_source(self, persistence):
        sources = create_postgres_sources(persistence)
        assert {source.source for source in sources} == set(AccessSource)
