"""
Shared configuration management for the entitlement engine.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


SourceFailurePolicy = Literal["fail_closed", "degrade"]


class EngineConfig(BaseSettings):
    """Engine configuration, read from ENTITLEMENTS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITLEMENTS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage
    postgres_dsn: str = Field(default="postgres://localhost:5432/platform")
    postgres_min_pool_size: int = Field(default=2)
    postgres_max_pool_size: int = Field(default=10)
    redis_url: Optional[str] = Field(default=None)

    # Usage counter service
    usage_service_url: str = Field(default="http://localhost:54321/rest/v1")
    usage_service_key: Optional[str] = Field(default=None)
    usage_timeout_seconds: float = Field(default=10.0)
    usage_retry_attempts: int = Field(default=2)

    # Resolved entitlement snapshots
    stale_time_seconds: float = Field(default=300.0)
    gc_time_seconds: float = Field(default=600.0)
    source_failure_policy: SourceFailurePolicy = Field(default="fail_closed")
    source_retry_attempts: int = Field(default=1)
    prefix_separator: str = Field(default="_")

    # Feature catalog
    catalog_stale_time_seconds: float = Field(default=600.0)
    catalog_gc_time_seconds: float = Field(default=900.0)
    admin_roles: List[str] = Field(default_factory=lambda: ["admin"])

    # Observability
    metrics_enabled: bool = Field(default=True)


@lru_cache(maxsize=1)
def get_config() -> EngineConfig:
    """Get the process-wide engine configuration."""
    return EngineConfig()
