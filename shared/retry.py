"""
Bounded retry for grant source queries and usage counter calls.
"""

import asyncio
import random
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.2,
                 max_delay: float = 5.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


async def call_with_retry(func: Callable[..., Awaitable[Any]],
                          *args,
                          exceptions: tuple = (Exception,),
                          config: Optional[RetryConfig] = None,
                          operation: Optional[str] = None,
                          **kwargs) -> Any:
    """Await ``func`` until it succeeds or the attempts in ``config`` run out."""
    config = config or RetryConfig()
    operation = operation or getattr(func, "__name__", "operation")
    logger = get_logger(f"entitlements.retry.{operation}")

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func(*args, **kwargs)
            if attempt > 1:
                logger.info("Retry succeeded", attempt=attempt, operation=operation)
            return result

        except exceptions as e:
            if attempt == config.max_attempts:
                if config.max_attempts > 1:
                    logger.error(
                        "All retry attempts exhausted",
                        attempt=attempt,
                        max_attempts=config.max_attempts,
                        operation=operation,
                        error=str(e)
                    )
                raise RetryError(
                    f"{operation} failed after {config.max_attempts} attempts",
                    last_exception=e,
                    attempts=config.max_attempts
                ) from e

            delay = _calculate_delay(attempt, config)
            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=delay,
                operation=operation,
                error=str(e)
            )
            await asyncio.sleep(delay)


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay between retry attempts."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)
