"""
Feature catalog.

Answers, per feature key, whether the feature is active and which catalog
entity (plan, track, add-on, program plan) sells it. These facts do not
depend on the subject, so lookups are cached separately from resolved
entitlements and on a longer schedule.
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from shared.errors import CatalogLookupError
from shared.logging import get_logger
from shared.metrics import EngineMetrics
from ..cache.ttl_cache import SnapshotCache
from ..persistence.postgres import PostgreSQLPersistence
from .models import (
    CATALOG_SOURCE_PRECEDENCE,
    CatalogOffer,
    CatalogSourceType,
    ExportedAssignment,
    ExportedCatalogEntity,
    ExportedFeature,
    FeatureAssignmentExport,
    MonetizedFeature,
)


class FeatureCatalog(Protocol):
    """Catalog lookups. Implementations raise CatalogLookupError on failure."""

    async def get_feature(self, feature_key: str) -> Optional[MonetizedFeature]:
        ...

    async def get_features(self, feature_keys: Sequence[str]) -> Dict[str, MonetizedFeature]:
        ...

    async def export_feature_assignments(self) -> FeatureAssignmentExport:
        ...


def lowest_tier_offer(offers: Mapping[CatalogSourceType, Sequence[CatalogOffer]]) -> Optional[CatalogOffer]:
    """Offer to show in upsell copy.

    The first entity type with any offer wins (plan, track, add-on, program
    plan). Among plans the lowest ``tier_level`` wins; plans without a tier
    sort last.
    """
    for source_type in CATALOG_SOURCE_PRECEDENCE:
        candidates = offers.get(source_type) or []
        if not candidates:
            continue
        if source_type == CatalogSourceType.PLAN:
            return min(
                candidates,
                key=lambda offer: (offer.tier_level is None, offer.tier_level or 0)
            )
        return candidates[0]
    return None


def unique_keys(feature_keys: Iterable[Optional[str]]) -> List[str]:
    """Distinct non-empty keys, sorted."""
    return sorted({key for key in feature_keys if key})


_MONETIZATION_QUERIES = {
    CatalogSourceType.PLAN: """
        SELECT pf.feature_id, p.name, p.display_name, p.tier_level
        FROM plan_features pf
        JOIN plans p ON p.id = pf.plan_id
        WHERE pf.feature_id = ANY($1) AND pf.enabled = TRUE
        ORDER BY p.tier_level ASC NULLS LAST, p.name
    """,
    CatalogSourceType.TRACK: """
        SELECT tf.feature_id, t.name, t.display_name, NULL::int AS tier_level
        FROM track_features tf
        JOIN tracks t ON t.id = tf.track_id
        WHERE tf.feature_id = ANY($1) AND tf.is_enabled = TRUE
        ORDER BY t.name
    """,
    CatalogSourceType.ADD_ON: """
        SELECT af.feature_id, a.name, a.display_name, NULL::int AS tier_level
        FROM add_on_features af
        JOIN add_ons a ON a.id = af.add_on_id
        WHERE af.feature_id = ANY($1)
        ORDER BY a.name
    """,
    CatalogSourceType.PROGRAM_PLAN: """
        SELECT ppf.feature_id, pp.name, pp.display_name, NULL::int AS tier_level
        FROM program_plan_features ppf
        JOIN program_plans pp ON pp.id = ppf.program_plan_id
        WHERE ppf.feature_id = ANY($1) AND ppf.enabled = TRUE
        ORDER BY pp.name
    """,
}


class PostgresFeatureCatalog:
    """Catalog lookups against the platform schema."""

    def __init__(self, persistence: PostgreSQLPersistence,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.persistence = persistence
        self.logger = get_logger("entitlements.visibility.catalog")
        self._clock = clock

    async def get_feature(self, feature_key: str) -> Optional[MonetizedFeature]:
        if not feature_key:
            return None
        return (await self.get_features([feature_key])).get(feature_key)

    async def get_features(self, feature_keys: Sequence[str]) -> Dict[str, MonetizedFeature]:
        """Bulk lookup: one features query plus one query per entity type."""
        keys = unique_keys(feature_keys)
        if not keys:
            return {}

        try:
            async with self.persistence.connection() as conn:
                features = await conn.fetch(
                    "SELECT id, key, is_active FROM features WHERE key = ANY($1::text[])",
                    keys
                )
                if not features:
                    return {}

                feature_ids = [row["id"] for row in features]
                offers: Dict[Any, Dict[CatalogSourceType, List[CatalogOffer]]] = {}
                for source_type, sql in _MONETIZATION_QUERIES.items():
                    for row in await conn.fetch(sql, feature_ids):
                        offers.setdefault(row["feature_id"], {}).setdefault(source_type, []).append(
                            CatalogOffer(
                                source_type=source_type,
                                name=row["name"],
                                display_name=row["display_name"],
                                tier_level=row["tier_level"],
                            )
                        )

        except Exception as e:
            self.logger.error("Feature catalog lookup failed", feature_keys=keys, error=str(e))
            raise CatalogLookupError(details={"feature_keys": keys, "error": str(e)}) from e

        return {
            row["key"]: MonetizedFeature(
                feature_key=row["key"],
                is_active=bool(row["is_active"]),
                offer=lowest_tier_offer(offers.get(row["id"], {})),
            )
            for row in features
        }

    async def export_feature_assignments(self) -> FeatureAssignmentExport:
        """Every feature, catalog entity and feature assignment."""
        try:
            async with self.persistence.connection() as conn:
                features = await conn.fetch(
                    "SELECT id, key, name, description, is_active FROM features ORDER BY key"
                )
                plans = await conn.fetch(
                    "SELECT id, key, name, display_name, tier_level FROM plans ORDER BY tier_level, name"
                )
                tracks = await conn.fetch(
                    "SELECT id, key, name, display_name FROM tracks ORDER BY name"
                )
                add_ons = await conn.fetch(
                    "SELECT id, key, name, display_name FROM add_ons ORDER BY name"
                )
                program_plans = await conn.fetch(
                    "SELECT id, NULL AS key, name, display_name, tier_level FROM program_plans ORDER BY tier_level, name"
                )
                assignments = await conn.fetch("""
                    SELECT 'plan' AS source_type, pf.plan_id AS entity_id, f.key AS feature_key,
                           pf.enabled, pf.limit_value
                    FROM plan_features pf JOIN features f ON f.id = pf.feature_id
                    UNION ALL
                    SELECT 'track', tf.track_id, f.key, tf.is_enabled, tf.limit_value
                    FROM track_features tf JOIN features f ON f.id = tf.feature_id
                    UNION ALL
                    SELECT 'add_on', af.add_on_id, f.key, TRUE, NULL
                    FROM add_on_features af JOIN features f ON f.id = af.feature_id
                    UNION ALL
                    SELECT 'program_plan', ppf.program_plan_id, f.key, ppf.enabled, ppf.limit_value
                    FROM program_plan_features ppf JOIN features f ON f.id = ppf.feature_id
                    ORDER BY 1, 3
                """)

        except Exception as e:
            self.logger.error("Feature assignment export failed", error=str(e))
            raise CatalogLookupError("Feature assignment export failed", details={"error": str(e)}) from e

        export = FeatureAssignmentExport(
            exported_at=self._clock().isoformat(),
            features=[
                ExportedFeature(
                    id=str(row["id"]),
                    key=row["key"],
                    name=row["name"],
                    description=row["description"],
                    is_active=bool(row["is_active"]),
                )
                for row in features
            ],
            plans=[_entity(row) for row in plans],
            tracks=[_entity(row) for row in tracks],
            add_ons=[_entity(row) for row in add_ons],
            program_plans=[_entity(row) for row in program_plans],
            assignments=[
                ExportedAssignment(
                    source_type=CatalogSourceType(row["source_type"]),
                    entity_id=str(row["entity_id"]),
                    feature_key=row["feature_key"],
                    enabled=bool(row["enabled"]),
                    limit_value=row["limit_value"],
                )
                for row in assignments
            ],
        )
        self.logger.info(
            "Feature assignments exported",
            features=len(export.features),
            assignments=len(export.assignments)
        )
        return export


def _entity(row: Mapping[str, Any]) -> ExportedCatalogEntity:
    return ExportedCatalogEntity(
        id=str(row["id"]),
        key=row["key"],
        name=row["name"],
        display_name=row["display_name"],
        tier_level=row.get("tier_level"),
    )


class CachedFeatureCatalog:
    """Catalog wrapper caching single and bulk lookups.

    Not-found results are cached like any other answer; lookup errors are
    never cached.
    """

    def __init__(self,
                 catalog: FeatureCatalog,
                 stale_time: float = 600.0,
                 gc_time: float = 900.0,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[EngineMetrics] = None):
        self.catalog = catalog
        self.single: SnapshotCache[Optional[MonetizedFeature]] = SnapshotCache(
            "catalog", stale_time=stale_time, gc_time=gc_time, clock=clock, metrics=metrics
        )
        self.batches: SnapshotCache[Dict[str, MonetizedFeature]] = SnapshotCache(
            "catalog_batch", stale_time=stale_time, gc_time=gc_time, clock=clock, metrics=metrics
        )

    async def get_feature(self, feature_key: str) -> Optional[MonetizedFeature]:
        if not feature_key:
            return None
        return await self.single.get(feature_key, lambda: self.catalog.get_feature(feature_key))

    async def get_features(self, feature_keys: Sequence[str]) -> Dict[str, MonetizedFeature]:
        keys = unique_keys(feature_keys)
        if not keys:
            return {}
        return await self.batches.get(json.dumps(keys), lambda: self.catalog.get_features(keys))

    async def export_feature_assignments(self) -> FeatureAssignmentExport:
        return await self.catalog.export_feature_assignments()

    def clear(self):
        self.single.clear()
        self.batches.clear()
