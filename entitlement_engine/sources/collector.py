"""
Grant source fan-out and resolution pipeline.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from shared.config import SourceFailurePolicy
from shared.errors import GrantSourceError, ResolutionFailedError
from shared.logging import get_logger
from shared.metrics import EngineMetrics
from shared.retry import RetryConfig, call_with_retry
from ..rules.models import FeatureEntitlement, ResolvedEntitlements
from ..rules.resolver import DEFAULT_PREFIX_SEPARATOR, group_by_feature, resolve
from .base import GrantSourceAdapter


@dataclass
class CollectionResult:
    """Candidates from every source that answered."""
    candidates_by_feature: Dict[str, List[FeatureEntitlement]] = field(default_factory=dict)
    failed_sources: Tuple[str, ...] = ()


class GrantCollector:
    """Runs every grant source concurrently and resolves the merged candidates.

    Under ``fail_closed`` any failing source aborts the resolution with
    ResolutionFailedError. Under ``degrade`` a failing source contributes
    nothing and the snapshot is flagged ``degraded``.
    """

    def __init__(self,
                 adapters: Sequence[GrantSourceAdapter],
                 failure_policy: SourceFailurePolicy = "fail_closed",
                 retry_config: Optional[RetryConfig] = None,
                 prefix_separator: str = DEFAULT_PREFIX_SEPARATOR,
                 metrics: Optional[EngineMetrics] = None):
        if failure_policy not in ("fail_closed", "degrade"):
            raise ValueError(f"unknown source failure policy: {failure_policy}")
        self.adapters = list(adapters)
        self.failure_policy = failure_policy
        self.retry_config = retry_config or RetryConfig(max_attempts=1)
        self.prefix_separator = prefix_separator
        self.metrics = metrics
        self.logger = get_logger("entitlements.sources.collector")

    async def _fetch_one(self, adapter: GrantSourceAdapter, subject_id: str) -> List[FeatureEntitlement]:
        try:
            return await call_with_retry(
                adapter.fetch, subject_id,
                config=self.retry_config,
                operation=f"grant_source.{adapter.name}"
            )
        except Exception as e:
            cause = getattr(e, "last_exception", e)
            self.logger.error(
                "Grant source failed",
                source=adapter.name,
                subject_id=subject_id,
                error=str(cause)
            )
            if self.metrics:
                self.metrics.record_source_failure(adapter.name)
            raise GrantSourceError(adapter.name, str(cause)) from e

    async def collect(self, subject_id: str) -> CollectionResult:
        """Fan out to every source and group the answers by feature key."""
        if not subject_id:
            return CollectionResult()

        outcomes = await asyncio.gather(
            *(self._fetch_one(adapter, subject_id) for adapter in self.adapters),
            return_exceptions=True
        )

        answered: List[List[FeatureEntitlement]] = []
        failed: List[str] = []
        for adapter, outcome in zip(self.adapters, outcomes):
            if isinstance(outcome, GrantSourceError):
                failed.append(adapter.name)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                answered.append(outcome)

        if failed and self.failure_policy == "fail_closed":
            raise ResolutionFailedError(subject_id, failed)

        return CollectionResult(
            candidates_by_feature=group_by_feature(answered),
            failed_sources=tuple(failed)
        )

    async def load(self, subject_id: str) -> ResolvedEntitlements:
        """Collect and resolve. Raises ResolutionFailedError when failing closed."""
        start_time = time.perf_counter()
        result = await self.collect(subject_id)
        resolved = resolve(result.candidates_by_feature, separator=self.prefix_separator)

        if result.failed_sources:
            resolved = ResolvedEntitlements(
                features=resolved.features,
                features_by_prefix=resolved.features_by_prefix,
                degraded=True,
                failed_sources=result.failed_sources
            )
            self.logger.warning(
                "Resolved with degraded grant sources",
                subject_id=subject_id,
                failed_sources=list(result.failed_sources)
            )

        duration = time.perf_counter() - start_time
        if self.metrics:
            self.metrics.observe_resolution(duration)
        self.logger.debug(
            "Entitlements resolved",
            subject_id=subject_id,
            features=len(resolved.features),
            duration_ms=round(duration * 1000, 2)
        )
        return resolved
