"""
PostgreSQL connection manager for the technical case base and leads.

The bot runs without a database: when ``DATABASE_URL`` is unset or the
pool cannot be created, ``available`` stays False and every caller takes
its no-database path (empty retrieval, in-memory leads, degraded health).

Usage:
    db = Database()
    await db.connect()
    if db.available:
        rows = await db.fetch("SELECT id, titre FROM bot.case_technique LIMIT 5")
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import asyncpg

from refap.config import settings

logger = logging.getLogger(__name__)


@dataclass
class Database:
    """asyncpg pool wrapper with graceful degradation."""

    url: Optional[str] = field(default_factory=lambda: settings.database.url)
    pool_size: int = field(default_factory=lambda: settings.database.pool_size)

    _pool: Any = field(default=None, repr=False)
    _available: bool = field(default=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def configured(self) -> bool:
        return bool(self.url)

    @property
    def available(self) -> bool:
        return self._available and self._pool is not None

    async def connect(self) -> bool:
        """Create the pool. Returns False (and logs) when the database is unreachable."""
        if not self.configured:
            logger.info("DATABASE_URL not set, running without case base")
            return False

        async with self._lock:
            if self.available:
                return True
            try:
                self._pool = await asyncpg.create_pool(
                    self.url,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=10.0,
                )
                async with self._pool.acquire() as conn:
                    await conn.fetchval("SELECT 1")
            except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
                logger.warning("PostgreSQL connection failed: %s, running without case base", e)
                self._pool = None
                self._available = False
                return False

            self._available = True
            logger.info("PostgreSQL connected: pool_size=%d", self.pool_size)
            return True

    async def close(self) -> None:
        async with self._lock:
            if self._pool is not None:
                try:
                    await self._pool.close()
                except (OSError, asyncpg.PostgresError) as e:
                    logger.warning("Error closing PostgreSQL pool: %s", e)
                finally:
                    self._pool = None
                    self._available = False

    async def ping(self) -> bool:
        """Round-trip ``select 1``; False when unconfigured or failing."""
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval("select 1") == 1
        except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
            logger.warning("PostgreSQL health check failed: %s", e)
            return False

    def _require_pool(self) -> Any:
        if self._pool is None:
            raise RuntimeError("Database not connected")
        return self._pool

    async def fetch(self, query: str, *args) -> list[dict[str, Any]]:
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [dict(row) for row in rows]

    async def fetchval(self, query: str, *args) -> Any:
        async with self._require_pool().acquire() as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, query: str, *args) -> str:
        async with self._require_pool().acquire() as conn:
            return await conn.execute(query, *args)
