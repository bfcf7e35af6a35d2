"""
Shared utilities for the entitlement engine.

This package aggregates common building blocks consumed by the engine:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with subject/request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for grant source and usage counter calls
- circuit_breaker: Resilient external call protection

Any cross-cutting logic should live here to avoid import cycles. Do not
import from entitlement_engine into shared/.
"""
