"""
Shared error handling for the entitlement engine.

Resolution and visibility deliberately fail in opposite directions:
grant source errors fail closed (no entitlements), catalog errors fail
open (feature treated as unmigrated and accessible). Keep the two paths
separate.
"""

from typing import Dict, Any, Optional, Sequence
from pydantic import BaseModel, Field

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class EntitlementEngineError(Exception):
    """Base exception for the entitlement engine."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(EntitlementEngineError):
    """Invalid caller input."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class GrantSourceError(EntitlementEngineError):
    """A single grant source query failed."""

    def __init__(self, source: str, message: str = "Grant source query failed", details: Optional[Dict[str, Any]] = None):
        self.source = source
        super().__init__("GRANT_SOURCE_ERROR", f"{source}: {message}", details)


class ResolutionFailedError(EntitlementEngineError):
    """Resolution aborted because at least one grant source failed (fail closed)."""

    def __init__(self, subject_id: str, failed_sources: Sequence[str], details: Optional[Dict[str, Any]] = None):
        self.subject_id = subject_id
        self.failed_sources = list(failed_sources)
        merged = {"subject_id": subject_id, "failed_sources": self.failed_sources}
        merged.update(details or {})
        super().__init__(
            "ENTITLEMENTS_UNAVAILABLE_FAIL_CLOSED",
            "Entitlements unavailable. Access denied.",
            merged
        )


class CatalogLookupError(EntitlementEngineError):
    """Feature catalog query failed."""

    def __init__(self, message: str = "Feature catalog lookup failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("CATALOG_LOOKUP_ERROR", message, details)


class UsageCounterError(EntitlementEngineError):
    """Usage counter service failed."""

    def __init__(self, message: str = "Usage counter unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("USAGE_COUNTER_ERROR", message, details)


class StaleResultDiscarded(EntitlementEngineError):
    """An in-flight load was invalidated or cancelled before it could be committed."""

    def __init__(self, key: str, details: Optional[Dict[str, Any]] = None):
        self.key = key
        super().__init__("STALE_RESULT_DISCARDED", f"Result for '{key}' was discarded", details)
