"""
Prometheus metrics for the entitlement engine.
"""

from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info


class EngineMetrics:
    """Metrics collector for one engine instance.

    Each instance owns its registry so tests and multiple engines in one
    process never collide on metric names.
    """

    def __init__(self, component: str = "entitlements", registry: Optional[CollectorRegistry] = None,
                 enabled: bool = True):
        self.component = component
        self.enabled = enabled
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        self._metrics["engine_info"] = Info(
            "entitlement_engine",
            "Entitlement engine information",
            registry=self.registry
        )
        self._metrics["engine_info"].info({"component": self.component, "version": "1.0.0"})

        self._metrics["cache_requests_total"] = Counter(
            "entitlement_cache_requests_total",
            "Snapshot cache lookups",
            ["cache", "result"],
            registry=self.registry
        )

        self._metrics["cache_evictions_total"] = Counter(
            "entitlement_cache_evictions_total",
            "Snapshot cache entries evicted past the gc threshold",
            ["cache"],
            registry=self.registry
        )

        self._metrics["resolution_duration_seconds"] = Histogram(
            "entitlement_resolution_duration_seconds",
            "Grant source fan-out plus resolution duration",
            registry=self.registry
        )

        self._metrics["source_failures_total"] = Counter(
            "entitlement_source_failures_total",
            "Grant source query failures",
            ["source"],
            registry=self.registry
        )

        self._metrics["usage_failures_total"] = Counter(
            "entitlement_usage_counter_failures_total",
            "Usage counter lookups that failed",
            registry=self.registry
        )

        self._metrics["visibility_decisions_total"] = Counter(
            "entitlement_visibility_decisions_total",
            "Visibility decisions by tier",
            ["visibility"],
            registry=self.registry
        )

    def record_cache_lookup(self, cache: str, hit: bool):
        if self.enabled:
            self._metrics["cache_requests_total"].labels(cache=cache, result="hit" if hit else "miss").inc()

    def record_cache_eviction(self, cache: str, count: int = 1):
        if self.enabled and count:
            self._metrics["cache_evictions_total"].labels(cache=cache).inc(count)

    def observe_resolution(self, duration: float):
        if self.enabled:
            self._metrics["resolution_duration_seconds"].observe(duration)

    def record_source_failure(self, source: str):
        if self.enabled:
            self._metrics["source_failures_total"].labels(source=source).inc()

    def record_usage_failure(self):
        if self.enabled:
            self._metrics["usage_failures_total"].inc()

    def record_visibility(self, visibility: str):
        if self.enabled:
            self._metrics["visibility_decisions_total"].labels(visibility=visibility).inc()

    def get_sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Read back a sample value, mainly for tests."""
        value = self.registry.get_sample_value(name, labels or {})
        return value or 0.0
