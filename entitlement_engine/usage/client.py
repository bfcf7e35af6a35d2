"""
Usage counter clients.

The counter service owns incrementing usage; the engine only reads the
current period's count through ``get_current_usage(subject_id, feature_key)``.
"""

from typing import Optional, Protocol

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import UsageCounterError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, call_with_retry
from ..persistence.postgres import PostgreSQLPersistence


class UsageCounter(Protocol):
    """Reads the current usage of one feature for one subject."""

    async def get_current_usage(self, subject_id: str, feature_key: str) -> int:
        ...


def _parse_usage(value, feature_key: str) -> int:
    if value is None:
        return 0
    try:
        usage = int(value)
    except (TypeError, ValueError) as e:
        raise UsageCounterError(
            "Usage counter returned a non-integer value",
            details={"feature_key": feature_key, "value": repr(value)}
        ) from e
    return max(0, usage)


class HttpUsageCounter:
    """Calls the ``get_current_usage`` RPC endpoint over HTTP."""

    def __init__(self,
                 base_url: str,
                 api_key: Optional[str] = None,
                 timeout: float = 10.0,
                 retry_attempts: int = 2,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.logger = get_logger("entitlements.usage.http")
        self.retry_config = RetryConfig(max_attempts=retry_attempts, base_delay=0.2, max_delay=2.0)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            name="usage_counter"
        )

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, subject_id: str, feature_key: str) -> int:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/rpc/get_current_usage",
                json={"_user_id": subject_id, "_feature_key": feature_key},
                headers=self._headers()
            )
            response.raise_for_status()
            return _parse_usage(response.json(), feature_key)

    async def get_current_usage(self, subject_id: str, feature_key: str) -> int:
        try:
            return await self.circuit_breaker.call(
                call_with_retry,
                self._post, subject_id, feature_key,
                exceptions=(httpx.HTTPError,),
                config=self.retry_config,
                operation="get_current_usage"
            )

        except CircuitBreakerOpenException as e:
            raise UsageCounterError("Usage counter circuit open", details={"feature_key": feature_key}) from e
        except RetryError as e:
            self.logger.error(
                "Usage counter HTTP error",
                subject_id=subject_id,
                feature_key=feature_key,
                error=str(e.last_exception)
            )
            raise UsageCounterError(
                "Usage counter unavailable",
                details={"feature_key": feature_key, "http_error": str(e.last_exception)}
            ) from e


class PostgresUsageCounter:
    """Calls the ``get_current_usage`` SQL function directly."""

    def __init__(self, persistence: PostgreSQLPersistence):
        self.persistence = persistence
        self.logger = get_logger("entitlements.usage.postgres")

    async def get_current_usage(self, subject_id: str, feature_key: str) -> int:
        try:
            async with self.persistence.connection() as conn:
                value = await conn.fetchval("SELECT get_current_usage($1, $2)", subject_id, feature_key)
        except Exception as e:
            raise UsageCounterError(
                "Usage counter query failed",
                details={"feature_key": feature_key, "error": str(e)}
            ) from e
        return _parse_usage(value, feature_key)
