"""
Entitlement engine facade.

Wires grant sources, the collector, the entitlement cache, the usage
accessor and visibility tiering into the read API callers use.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Collection, Dict, FrozenSet, Iterable, Iterator, List, Optional

from shared.config import EngineConfig, get_config
from shared.errors import ResolutionFailedError, ValidationError
from shared.logging import configure_logging, get_logger, set_subject_context
from shared.metrics import EngineMetrics
from shared.retry import RetryConfig
from .cache.entitlement_cache import EntitlementCache
from .cache.redis_store import RedisSnapshotStore
from .persistence.postgres import PostgreSQLPersistence
from .rules.models import AccessSource, ResolvedEntitlements
from .sources.collector import GrantCollector
from .sources.postgres import create_postgres_sources
from .usage.accessor import FeatureUsage, UsageAccessor
from .usage.client import HttpUsageCounter
from .visibility.catalog import CachedFeatureCatalog, PostgresFeatureCatalog
from .visibility.models import FeatureAssignmentExport, VisibilityDecision
from .visibility.tiering import VisibilityBatch, VisibilityService


@dataclass(frozen=True)
class FeatureAccess:
    """One-shot access answer for a single feature."""
    feature_key: str
    has_access: bool
    limit: Optional[int]
    source: Optional[AccessSource]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_key": self.feature_key,
            "has_access": self.has_access,
            "limit": self.limit,
            "source": self.source.value if self.source else None,
        }


class EntitlementService:
    """Read API over resolved entitlements, usage and visibility."""

    def __init__(self,
                 collector: GrantCollector,
                 cache: EntitlementCache,
                 usage: UsageAccessor,
                 visibility: VisibilityService,
                 persistence: Optional[PostgreSQLPersistence] = None,
                 store: Optional[RedisSnapshotStore] = None,
                 metrics: Optional[EngineMetrics] = None):
        self.collector = collector
        self.cache = cache
        self.usage = usage
        self.visibility = visibility
        self.persistence = persistence
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("entitlements.service")
        self._usage_inflight: Dict[str, int] = {}

    @classmethod
    def create(cls, config: Optional[EngineConfig] = None,
               metrics: Optional[EngineMetrics] = None) -> "EntitlementService":
        """Build the Postgres-backed engine described by ``config``. Call ``start()`` before use."""
        config = config or get_config()
        configure_logging("entitlements", config.log_level)
        metrics = metrics or EngineMetrics(enabled=config.metrics_enabled)

        persistence = PostgreSQLPersistence(
            config.postgres_dsn,
            min_size=config.postgres_min_pool_size,
            max_size=config.postgres_max_pool_size
        )
        store = RedisSnapshotStore(config.redis_url) if config.redis_url else None

        collector = GrantCollector(
            create_postgres_sources(persistence),
            failure_policy=config.source_failure_policy,
            retry_config=RetryConfig(max_attempts=config.source_retry_attempts),
            prefix_separator=config.prefix_separator,
            metrics=metrics
        )
        cache = EntitlementCache(
            collector,
            stale_time=config.stale_time_seconds,
            gc_time=config.gc_time_seconds,
            metrics=metrics,
            store=store
        )
        usage = UsageAccessor(
            HttpUsageCounter(
                config.usage_service_url,
                api_key=config.usage_service_key,
                timeout=config.usage_timeout_seconds,
                retry_attempts=config.usage_retry_attempts
            ),
            entitlements=cache,
            metrics=metrics
        )
        catalog = CachedFeatureCatalog(
            PostgresFeatureCatalog(persistence),
            stale_time=config.catalog_stale_time_seconds,
            gc_time=config.catalog_gc_time_seconds,
            metrics=metrics
        )
        visibility = VisibilityService(catalog, cache, admin_roles=config.admin_roles, metrics=metrics)

        return cls(collector, cache, usage, visibility, persistence=persistence, store=store, metrics=metrics)

    async def start(self):
        if self.persistence:
            await self.persistence.start()
        if self.store:
            await self.store.start()
        self.logger.info("Entitlement engine started")

    async def stop(self):
        self.cache.clear()
        if self.store:
            await self.store.stop()
        if self.persistence:
            await self.persistence.stop()
        self.logger.info("Entitlement engine stopped")

    async def health_check(self) -> Dict[str, bool]:
        checks = {}
        if self.persistence:
            checks["postgres"] = await self.persistence.health_check()
        if self.store:
            checks["redis"] = await self.store.health_check()
        return checks

    def for_subject(self, subject_id: str, owner: Optional[object] = None) -> "SubjectEntitlements":
        return SubjectEntitlements(self, subject_id, owner=owner)

    def session(self, subject_id: Optional[str] = None) -> "EntitlementSession":
        return EntitlementSession(self, subject_id)

    async def get_entitlements(self, subject_id: str) -> ResolvedEntitlements:
        return await self.cache.get(subject_id)

    def is_usage_loading(self, subject_id: str) -> bool:
        return subject_id in self._usage_inflight

    @contextmanager
    def tracking_usage(self, subject_id: str) -> Iterator[None]:
        """Count a usage read for ``subject_id`` as in flight while the block runs."""
        self._usage_inflight[subject_id] = self._usage_inflight.get(subject_id, 0) + 1
        try:
            yield
        finally:
            remaining = self._usage_inflight[subject_id] - 1
            if remaining:
                self._usage_inflight[subject_id] = remaining
            else:
                del self._usage_inflight[subject_id]

    async def invalidate(self, subject_id: str):
        """Call after any grant change for ``subject_id``; nothing upstream notifies the engine."""
        await self.cache.invalidate(subject_id)

    async def check_feature_access(self, subject_id: str, feature_key: str) -> FeatureAccess:
        """Uncached, one-shot resolution of a single feature."""
        if not feature_key:
            raise ValidationError("feature_key is required")
        set_subject_context(subject_id)

        try:
            snapshot = await self.collector.load(subject_id)
        except ResolutionFailedError as e:
            self.logger.error(
                "Feature access check failed closed",
                subject_id=subject_id,
                feature_key=feature_key,
                failed_sources=e.failed_sources
            )
            return FeatureAccess(feature_key=feature_key, has_access=False, limit=None, source=None)

        # A denied key keeps its deny source and a limit of 0
        return FeatureAccess(
            feature_key=feature_key,
            has_access=snapshot.has_feature(feature_key),
            limit=snapshot.get_limit(feature_key),
            source=snapshot.get_access_source(feature_key),
        )

    async def export_feature_assignments(self) -> FeatureAssignmentExport:
        return await self.visibility.catalog.export_feature_assignments()


class SubjectEntitlements:
    """Entitlement reads bound to one subject.

    Reads made through a view with an ``owner`` can be released as a group
    when that owner stops caring about the subject.
    """

    def __init__(self, service: EntitlementService, subject_id: str, owner: Optional[object] = None):
        self.service = service
        self.subject_id = subject_id
        self.owner = owner

    @property
    def is_loading(self) -> bool:
        """True until both the entitlement and usage facets have settled."""
        cache = self.service.cache
        return (
            cache.is_loading(self.subject_id)
            or not cache.has_snapshot(self.subject_id)
            or self.service.is_usage_loading(self.subject_id)
        )

    async def load(self) -> ResolvedEntitlements:
        return await self.service.cache.get(self.subject_id, owner=self.owner)

    async def has_feature(self, feature_key: str) -> bool:
        return (await self.load()).has_feature(feature_key)

    async def get_limit(self, feature_key: str) -> Optional[int]:
        return (await self.load()).get_limit(feature_key)

    async def get_access_source(self, feature_key: str) -> Optional[AccessSource]:
        return (await self.load()).get_access_source(feature_key)

    async def get_features_by_prefix(self, prefix: str) -> FrozenSet[str]:
        return (await self.load()).get_features_by_prefix(prefix)

    async def get_all_enabled_features(self) -> List[str]:
        return (await self.load()).get_all_enabled_features()

    async def refetch(self) -> ResolvedEntitlements:
        """Drop the cached snapshot and resolve again."""
        await self.service.invalidate(self.subject_id)
        return await self.load()

    async def get_feature_usage(self, feature_key: str) -> FeatureUsage:
        with self.service.tracking_usage(self.subject_id):
            return await self.service.usage.get_feature_usage(self.subject_id, feature_key)

    async def get_usage_summary(self) -> Dict[str, FeatureUsage]:
        with self.service.tracking_usage(self.subject_id):
            return await self.service.usage.get_usage_summary(self.subject_id)

    async def get_visibility(self, feature_key: Optional[str], roles: Collection[str] = ()) -> VisibilityDecision:
        return await self.service.visibility.get_visibility(self.subject_id, roles, feature_key)

    async def get_visibility_batch(self, feature_keys: Iterable[Optional[str]],
                                   roles: Collection[str] = ()) -> VisibilityBatch:
        return await self.service.visibility.get_visibility_batch(self.subject_id, roles, feature_keys)


class EntitlementSession:
    """Tracks the caller's current subject.

    Switching subjects releases this session from the previous subject's
    in-flight load. That load is never committed; other readers of the same
    subject still receive its result.
    """

    def __init__(self, service: EntitlementService, subject_id: Optional[str] = None):
        self.service = service
        self.logger = get_logger("entitlements.session")
        self._subject_id = subject_id

    @property
    def subject_id(self) -> Optional[str]:
        return self._subject_id

    @property
    def entitlements(self) -> SubjectEntitlements:
        if not self._subject_id:
            raise ValidationError("No subject selected for this session")
        return self.service.for_subject(self._subject_id, owner=self)

    def switch_subject(self, subject_id: Optional[str]) -> bool:
        """Select ``subject_id``; returns True if this session left a pending load."""
        previous = self._subject_id
        if previous == subject_id:
            return False

        released = bool(previous) and self.service.cache.release(previous, self)
        if released:
            self.logger.info("Left in-flight load on subject switch", previous_subject=previous)
        self._subject_id = subject_id
        set_subject_context(subject_id)
        return released

    def close(self):
        self.switch_subject(None)
