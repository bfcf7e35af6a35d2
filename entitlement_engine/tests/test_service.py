"""
Tests for the entitlement service facade.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from shared.config import EngineConfig
from shared.errors import StaleResultDiscarded, ValidationError
from entitlement_engine.cache.redis_store import RedisSnapshotStore
from entitlement_engine.rules.models import AccessSource
from entitlement_engine.service import EntitlementService
from entitlement_engine.tests.fakes import FakeCatalog, FakeUsageCounter, deny, grant
from entitlement_engine.usage.accessor import UsageAccessor
from entitlement_engine.visibility.catalog import CachedFeatureCatalog
from entitlement_engine.visibility.models import CatalogOffer, CatalogSourceType, MonetizedFeature, Visibility
from entitlement_engine.visibility.tiering import VisibilityService


@pytest.fixture
def counter():
    return FakeUsageCounter({("user-1", "ai_insights"): 29})


@pytest.fixture
def service(collector, entitlement_cache, counter, metrics):
    catalog = FakeCatalog({
        "ai_voice": MonetizedFeature(
            "ai_voice", True, CatalogOffer(CatalogSourceType.TRACK, "Leadership")
        ),
    })
    return EntitlementService(
        collector,
        entitlement_cache,
        UsageAccessor(counter, entitlements=entitlement_cache, metrics=metrics),
        VisibilityService(catalog, entitlement_cache, metrics=metrics),
        metrics=metrics,
    )


def fetch_count(adapters):
    return sum(len(adapter.calls) for adapter in adapters.values())


class TestEntitlementService:

    @pytest.mark.asyncio
    async def test_subject_view_reads(self, service):
        subject = service.for_subject("user-1")

        assert await subject.has_feature("ai_insights") is True
        assert await subject.get_limit("ai_insights") == 30
        assert await subject.get_access_source("community") == AccessSource.ADD_ON
        assert await subject.get_features_by_prefix("ai") == frozenset({"ai_insights", "ai_coach"})
        assert "community" in await subject.get_all_enabled_features()
        assert subject.is_loading is False

    @pytest.mark.asyncio
    async def test_refetch_bypasses_cache(self, service, adapters):
        subject = service.for_subject("user-1")
        await subject.load()

        adapters[AccessSource.ADD_ON].candidates["user-1"].append(grant("ai_voice", AccessSource.ADD_ON))
        snapshot = await subject.refetch()

        assert snapshot.has_feature("ai_voice")
        assert fetch_count(adapters) == 10

    @pytest.mark.asyncio
    async def test_check_feature_access_is_uncached(self, service, adapters):
        first = await service.check_feature_access("user-1", "ai_insights")
        second = await service.check_feature_access("user-1", "ai_insights")

        assert first == second
        assert first.to_dict() == {
            "feature_key": "ai_insights",
            "has_access": True,
            "limit": 30,
            "source": "subscription",
        }
        assert fetch_count(adapters) == 10
        assert service.cache.is_fresh("user-1") is False

    @pytest.mark.asyncio
    async def test_check_feature_access_fails_closed(self, service, adapters):
        adapters[AccessSource.TRACK].error = ConnectionError("db down")

        access = await service.check_feature_access("user-1", "ai_insights")

        assert access.has_access is False
        assert access.source is None

    @pytest.mark.asyncio
    async def test_check_feature_access_reports_deny(self, service, adapters):
        adapters[AccessSource.ORG_SPONSORED].candidates["user-1"] = [
            deny("ai_insights", AccessSource.ORG_SPONSORED)
        ]

        access = await service.check_feature_access("user-1", "ai_insights")
        unknown = await service.check_feature_access("user-1", "ai_voice")

        assert access.to_dict() == {
            "feature_key": "ai_insights",
            "has_access": False,
            "limit": 0,
            "source": "org_sponsored",
        }
        assert unknown.limit is None
        assert unknown.source is None

    @pytest.mark.asyncio
    async def test_check_feature_access_requires_key(self, service):
        with pytest.raises(ValidationError):
            await service.check_feature_access("user-1", "")

    @pytest.mark.asyncio
    async def test_usage_and_visibility_through_subject(self, service):
        subject = service.for_subject("user-1")

        usage = await subject.get_feature_usage("ai_insights")
        decision = await subject.get_visibility("ai_voice")
        batch = await subject.get_visibility_batch(["ai_voice", "ai_insights"])

        assert usage.remaining == 1
        assert usage.can_consume is True
        assert decision.visibility == Visibility.LOCKED
        assert decision.source_display_name == "learning track"
        assert batch.get_visibility("ai_insights").visibility == Visibility.ACCESSIBLE
        assert sorted(await subject.get_usage_summary()) == ["ai_coach", "ai_insights"]

    @pytest.mark.asyncio
    async def test_is_loading_covers_usage(self, service, counter):
        gate = asyncio.Event()
        original = counter.get_current_usage

        async def slow_usage(subject_id, feature_key):
            await gate.wait()
            return await original(subject_id, feature_key)

        counter.get_current_usage = slow_usage
        session = service.session("user-1")
        await session.entitlements.load()

        task = asyncio.ensure_future(session.entitlements.get_feature_usage("ai_insights"))
        for _ in range(10):
            await asyncio.sleep(0)
        assert session.entitlements.is_loading is True
        assert service.for_subject("user-1").is_loading is True

        gate.set()
        await task
        assert session.entitlements.is_loading is False
        assert service.is_usage_loading("user-1") is False

    def test_is_loading_before_first_read(self, service):
        assert service.for_subject("user-1").is_loading is True


    @pytest.mark.asyncio
    async def test_export_delegates_to_catalog(self, service):
        export = await service.export_feature_assignments()
        assert export.version == "1.0"


class TestEntitlementSession:

    @pytest.mark.asyncio
    async def test_switch_subject_abandons_pending_load(self, service, adapters):
        gate = asyncio.Event()
        for adapter in adapters.values():
            adapter.gate = gate
        session = service.session("user-1")

        pending = asyncio.ensure_future(session.entitlements.load())
        for _ in range(10):
            await asyncio.sleep(0)

        assert session.switch_subject("user-2") is True
        gate.set()

        with pytest.raises(StaleResultDiscarded):
            await pending
        assert service.cache.is_fresh("user-1") is False
        assert session.subject_id == "user-2"
        assert await session.entitlements.has_feature("ai_insights") is False

    @pytest.mark.asyncio
    async def test_switch_subject_keeps_other_sessions_reading(self, service, adapters):
        gate = asyncio.Event()
        for adapter in adapters.values():
            adapter.gate = gate
        viewer = service.session("user-1")
        switcher = service.session("user-1")

        viewing = asyncio.ensure_future(viewer.entitlements.has_feature("ai_insights"))
        leaving = asyncio.ensure_future(switcher.entitlements.load())
        for _ in range(10):
            await asyncio.sleep(0)

        assert switcher.switch_subject("user-2") is True
        gate.set()

        with pytest.raises(StaleResultDiscarded):
            await leaving
        assert await viewing is True
        assert service.cache.is_fresh("user-1") is False
        assert fetch_count(adapters) == 5

    @pytest.mark.asyncio
    async def test_switch_without_pending_load(self, service):
        session = service.session("user-1")
        await session.entitlements.load()

        assert session.switch_subject("user-2") is False
        assert session.switch_subject("user-2") is False
        assert service.cache.is_fresh("user-1") is True

    def test_no_subject_selected(self, service):
        session = service.session()
        with pytest.raises(ValidationError):
            session.entitlements


class TestServiceFactory:

    def test_create_wires_config(self):
        config = EngineConfig(
            _env_file=None,
            redis_url="redis://localhost:6379/1",
            source_failure_policy="degrade",
            stale_time_seconds=30,
            gc_time_seconds=60,
            admin_roles=["operator"],
            metrics_enabled=False,
            log_level="debug",
        )

        with patch("entitlement_engine.service.configure_logging") as configure:
            service = EntitlementService.create(config)

        configure.assert_called_once_with("entitlements", "debug")

        assert len(service.collector.adapters) == 5
        assert service.collector.failure_policy == "degrade"
        assert service.cache.snapshots.stale_time == 30
        assert isinstance(service.store, RedisSnapshotStore)
        assert service.cache.snapshots.store is service.store
        assert isinstance(service.visibility.catalog, CachedFeatureCatalog)
        assert service.visibility.admin_roles == frozenset({"operator"})
        assert service.metrics.enabled is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        service = EntitlementService.create(EngineConfig(_env_file=None))
        service.persistence.start = AsyncMock()
        service.persistence.stop = AsyncMock()

        await service.start()
        await service.stop()

        service.persistence.start.assert_awaited_once()
        service.persistence.stop.assert_awaited_once()
        assert service.store is None
