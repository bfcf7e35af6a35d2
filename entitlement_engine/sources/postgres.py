"""
PostgreSQL-backed grant source adapters.

One adapter per grant source. Each runs its own queries against the
platform schema and normalizes rows into FeatureEntitlement candidates.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Set, Tuple

import asyncpg

from shared.logging import get_logger
from ..persistence.postgres import PostgreSQLPersistence
from ..rules.models import AccessSource, FeatureEntitlement
from .base import GrantSourceAdapter


# Enrollment tier names without an explicit program plan map onto program_plans.tier_level
TIER_LEVELS: Mapping[str, int] = {
    "essentials": 0,
    "base": 0,
    "premium": 1,
    "professional": 1,
    "enterprise": 2,
}


def tier_level(tier: Optional[str]) -> Optional[int]:
    if not tier:
        return None
    return TIER_LEVELS.get(tier.lower())


def plan_ids_for_enrollments(enrollments: Iterable[Mapping[str, Any]]) -> Tuple[Set[Any], Set[int]]:
    """Split active enrollments into direct program plan ids and tier levels to look up.

    An explicit ``program_plan_id`` wins; otherwise a recognised tier name is
    matched by level; otherwise the program's default plan applies.
    """
    direct_ids: Set[Any] = set()
    levels: Set[int] = set()

    for enrollment in enrollments:
        if enrollment["program_plan_id"]:
            direct_ids.add(enrollment["program_plan_id"])
            continue

        level = tier_level(enrollment["tier"])
        if level is not None:
            levels.add(level)
        elif enrollment["default_program_plan_id"]:
            direct_ids.add(enrollment["default_program_plan_id"])

    return direct_ids, levels


def pick_highest_tier_plan(memberships: Iterable[Mapping[str, Any]]) -> Optional[Any]:
    """Plan id of the highest tier sponsored plan; the first one wins ties."""
    highest_plan_id = None
    highest_level = -1
    for membership in memberships:
        level = membership["tier_level"]
        if level is not None and level > highest_level:
            highest_level = level
            highest_plan_id = membership["plan_id"]
    return highest_plan_id


class PostgresGrantSource(GrantSourceAdapter):
    """Base for adapters reading from the shared pool."""

    def __init__(self, persistence: PostgreSQLPersistence):
        self.persistence = persistence
        self.logger = get_logger(f"entitlements.sources.{self.source.value}")

    async def fetch(self, subject_id: str) -> List[FeatureEntitlement]:
        async with self.persistence.connection() as conn:
            candidates = await self._fetch(conn, subject_id)

        self.logger.debug("Grant source fetched", subject_id=subject_id, candidates=len(candidates))
        return candidates

    async def _fetch(self, conn: asyncpg.Connection, subject_id: str) -> List[FeatureEntitlement]:
        raise NotImplementedError


class SubscriptionGrantSource(PostgresGrantSource):
    """Features of the subject's personal plan (``profiles.plan_id``)."""

    source = AccessSource.SUBSCRIPTION

    async def _fetch(self, conn, subject_id):
        rows = await conn.fetch("""
            SELECT f.key AS feature_key, pf.limit_value
            FROM profiles p
            JOIN plan_features pf ON pf.plan_id = p.plan_id
            JOIN features f ON f.id = pf.feature_id
            WHERE p.id = $1 AND pf.enabled = TRUE
        """, subject_id)

        return [
            FeatureEntitlement(
                feature_key=row["feature_key"],
                enabled=True,
                limit=row["limit_value"],
                source=self.source,
            )
            for row in rows
        ]


class ProgramPlanGrantSource(PostgresGrantSource):
    """Features of the program plans behind the subject's active enrollments."""

    source = AccessSource.PROGRAM_PLAN

    async def _fetch(self, conn, subject_id):
        enrollments = await conn.fetch("""
            SELECT ce.program_plan_id, ce.tier, pr.default_program_plan_id
            FROM client_enrollments ce
            JOIN programs pr ON pr.id = ce.program_id
            WHERE ce.client_user_id = $1 AND ce.status = 'active'
        """, subject_id)
        if not enrollments:
            return []

        plan_ids, levels = plan_ids_for_enrollments(enrollments)

        if levels:
            tier_plans = await conn.fetch("""
                SELECT id FROM program_plans
                WHERE tier_level = ANY($1::int[]) AND is_active = TRUE
            """, sorted(levels))
            plan_ids.update(row["id"] for row in tier_plans)

        if not plan_ids:
            return []

        rows = await conn.fetch("""
            SELECT f.key AS feature_key, ppf.limit_value
            FROM program_plan_features ppf
            JOIN features f ON f.id = ppf.feature_id
            WHERE ppf.program_plan_id = ANY($1) AND ppf.enabled = TRUE
        """, list(plan_ids))

        return [
            FeatureEntitlement(
                feature_key=row["feature_key"],
                enabled=True,
                limit=row["limit_value"],
                source=self.source,
            )
            for row in rows
        ]


class AddOnGrantSource(PostgresGrantSource):
    """Features of unexpired purchased add-ons. Add-on grants are unlimited."""

    source = AccessSource.ADD_ON

    def __init__(self, persistence: PostgreSQLPersistence,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        super().__init__(persistence)
        self._clock = clock

    async def _fetch(self, conn, subject_id):
        rows = await conn.fetch("""
            SELECT DISTINCT f.key AS feature_key
            FROM user_add_ons ua
            JOIN add_on_features af ON af.add_on_id = ua.add_on_id
            JOIN features f ON f.id = af.feature_id
            WHERE ua.user_id = $1
              AND (ua.expires_at IS NULL OR ua.expires_at > $2)
        """, subject_id, self._clock())

        return [
            FeatureEntitlement(
                feature_key=row["feature_key"],
                enabled=True,
                limit=None,
                source=self.source,
            )
            for row in rows
        ]


class TrackGrantSource(PostgresGrantSource):
    """Features of the subject's active assignments to active tracks."""

    source = AccessSource.TRACK

    async def _fetch(self, conn, subject_id):
        rows = await conn.fetch("""
            SELECT f.key AS feature_key, tf.limit_value
            FROM user_tracks ut
            JOIN tracks t ON t.id = ut.track_id
            JOIN track_features tf ON tf.track_id = ut.track_id
            JOIN features f ON f.id = tf.feature_id
            WHERE ut.user_id = $1
              AND ut.is_active = TRUE
              AND t.is_active = TRUE
              AND tf.is_enabled = TRUE
        """, subject_id)

        return [
            FeatureEntitlement(
                feature_key=row["feature_key"],
                enabled=True,
                limit=row["limit_value"],
                source=self.source,
            )
            for row in rows
        ]


class OrgSponsoredGrantSource(PostgresGrantSource):
    """Features of the highest tier plan sponsored by any of the subject's organizations.

    Restrictive plan rows become explicit denies.
    """

    source = AccessSource.ORG_SPONSORED

    async def _fetch(self, conn, subject_id):
        memberships = await conn.fetch("""
            SELECT p.id AS plan_id, p.tier_level
            FROM organization_members om
            JOIN plans p ON p.id = om.sponsored_plan_id
            WHERE om.user_id = $1
              AND om.is_active = TRUE
              AND om.sponsored_plan_id IS NOT NULL
        """, subject_id)

        plan_id = pick_highest_tier_plan(memberships)
        if plan_id is None:
            return []

        rows = await conn.fetch("""
            SELECT f.key AS feature_key, pf.enabled, pf.limit_value, pf.is_restrictive
            FROM plan_features pf
            JOIN features f ON f.id = pf.feature_id
            WHERE pf.plan_id = $1
        """, plan_id)

        candidates: List[FeatureEntitlement] = []
        for row in rows:
            if row["is_restrictive"]:
                candidates.append(FeatureEntitlement.deny(row["feature_key"], self.source))
            elif row["enabled"]:
                candidates.append(FeatureEntitlement(
                    feature_key=row["feature_key"],
                    enabled=True,
                    limit=row["limit_value"],
                    source=self.source,
                ))
        return candidates


def create_postgres_sources(persistence: PostgreSQLPersistence) -> List[GrantSourceAdapter]:
    """All five grant sources over one pool."""
    return [
        SubscriptionGrantSource(persistence),
        ProgramPlanGrantSource(persistence),
        AddOnGrantSource(persistence),
        TrackGrantSource(persistence),
        OrgSponsoredGrantSource(persistence),
    ]
