"""
PostgreSQL connection pool for the item cache, column settings, watch
state and the pgvector embedding table.

One AsyncConnectionPool per process, opened in the FastAPI lifespan (or by
a worker job) and closed on shutdown.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0
STATEMENT_TIMEOUT = "60s"
# Health turns red above this share of checked-out connections
MAX_HEALTHY_UTILIZATION = 90


class DatabasePoolManager:
    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self.vector_enabled = False
        self._initialized = False
        self._closed = False

    @property
    def ready(self) -> bool:
        return self._initialized and not self._closed and self.pool is not None

    async def initialize(self) -> None:
        """Open the pool, smoke-test it and record whether pgvector is installed."""
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        logger.info("Opening database pool", **pool_config)

        pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )
        try:
            await pool.open()
            await pool.wait()
            self.pool = pool
            self._initialized = True
            self.vector_enabled = await self._probe()
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self.pool = None
            self._initialized = False
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        if not self.vector_enabled:
            logger.warning("pgvector extension missing, semantic search will fail over to fuzzy")
        logger.info("Database pool ready", vector_enabled=self.vector_enabled)

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        # Pooled connections must never be returned mid-transaction
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"mailboard-{settings.environment}")
            )
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(sql.Literal(STATEMENT_TIMEOUT))
        )

    async def _probe(self) -> bool:
        """Round trip plus a pgvector lookup. Returns True when the extension exists."""
        async with self.connection() as conn:
            cur = await conn.execute(
                "SELECT 1 AS ok, EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'vector') AS vector"
            )
            row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database connection test returned an unexpected row")
        return bool(row["vector"])

    async def close(self) -> None:
        if not self._initialized or self._closed:
            return

        logger.info("Closing database pool")
        try:
            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a pooled connection (autocommit, dict rows).

            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if not self.ready:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Connection inside a transaction block: commit on exit, rollback on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        if not self.ready:
            return {"healthy": False, "service": "database_pool", "error": "Pool not initialized"}

        started = time.perf_counter()
        try:
            stats = self.pool.get_stats()
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
        except (psycopg.Error, RuntimeError) as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        pool_size = stats.get("pool_size", 0)
        pool_available = stats.get("pool_available", 0)
        utilization = (pool_size - pool_available) / pool_size * 100 if pool_size else 0

        return {
            "healthy": utilization < MAX_HEALTHY_UTILIZATION,
            "service": "database_pool",
            "vector_enabled": self.vector_enabled,
            "connection_time_ms": round((time.perf_counter() - started) * 1000, 2),
            "pool_stats": {
                "pool_size": pool_size,
                "pool_available": pool_available,
                "pool_utilization_percent": round(utilization, 2),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
