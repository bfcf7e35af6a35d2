"""
PostgreSQL connection pool shared by grant sources, the feature catalog
and the SQL usage counter.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import EntitlementEngineError


class PostgreSQLPersistence:
    """Owns the asyncpg pool. All engine queries are read-only."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10, command_timeout: float = 30):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("entitlements.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            self.logger.info("PostgreSQL pool started", min_size=self.min_size, max_size=self.max_size)

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL pool", error=str(e))
            raise EntitlementEngineError("POSTGRES_START_FAILED", str(e)) from e

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL pool stopped")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection."""
        if self.pool is None:
            raise EntitlementEngineError("POSTGRES_NOT_STARTED", "PostgreSQL pool is not started")
        async with self.pool.acquire() as conn:
            yield conn

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.connection() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
