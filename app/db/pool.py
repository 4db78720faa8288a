"""
PostgreSQL connection pool manager using psycopg_pool.
Backs the postgres storage backend of the infrastructure repository.
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


class DatabasePoolManager:
    """
    Owns the single AsyncConnectionPool of the process.

    Only initialized when STORAGE_BACKEND=postgres; the in-memory backend
    never touches it.
    """

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def initialized(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self) -> None:
        """Open the pool on application startup."""
        if self._initialized:
            logger.warning("Database pool already initialized")
            return

        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        if not settings.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required for the postgres storage backend")

        pool_config = self._get_pool_config()

        try:
            logger.info("Initializing database connection pool")

            self.pool = AsyncConnectionPool(
                conninfo=settings.DATABASE_URL,
                open=False,
                **pool_config,
            )
            await self.pool.open()
            await self.pool.wait()

            # must be set before the ping query, connection() checks it
            self._initialized = True
            await self._ping()

            logger.info(
                "Database pool initialized successfully",
                min_size=pool_config["min_size"],
                max_size=pool_config["max_size"],
                timeout=pool_config["timeout"],
            )

        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self._initialized = False
            if self.pool:
                try:
                    await self.pool.close()
                except Exception as close_error:
                    logger.debug("Ignoring pool close error during cleanup", error=str(close_error))
                self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

    def _get_pool_config(self) -> dict[str, Any]:
        config = settings.get_db_pool_config()
        config.update(
            {
                "check": AsyncConnectionPool.check_connection,
                "configure": self._configure_connection,
            }
        )
        return config

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Per-connection session setup: dict rows, autocommit, UTC."""
        try:
            conn.row_factory = dict_row
            await conn.set_autocommit(True)

            app_name = f"infra-healing-engine-{settings.environment}"
            await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
            await conn.execute("SET timezone = 'UTC'")
            await conn.execute("SET statement_timeout = '30s'")
        except Exception:
            logger.exception("Failed to configure database connection")

    async def _ping(self) -> float:
        """Run SELECT 1 and return the round trip in milliseconds."""
        start = time.perf_counter()
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        value = row["ok"] if isinstance(row, dict) else row[0]
        if value != 1:
            raise RuntimeError(f"Database ping returned {value!r}")
        return (time.perf_counter() - start) * 1000

    async def close(self) -> None:
        """Close the pool gracefully (30s budget)."""
        if not self._initialized or self._closed:
            return

        try:
            logger.info("Closing database connection pool")
            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed successfully")
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection from the pool.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        if self._closed:
            raise RuntimeError("Database pool is closed")

        try:
            async with self.pool.connection() as conn:
                yield conn
        except Exception as e:
            logger.error("Database connection error", error=str(e), error_type=type(e).__name__)
            raise

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow a connection wrapped in a transaction (commit on success, rollback on error)."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Pool statistics plus a timed ping query. Never raises."""
        if not self.initialized:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        try:
            latency_ms = await self._ping()
            stats = self.pool.get_stats()
            pool_size = stats.get("pool_size", 0)
            pool_available = stats.get("pool_available", 0)
            utilization = (pool_size - pool_available) / pool_size * 100 if pool_size > 0 else 0

            return {
                "healthy": utilization < 90,
                "service": "database_pool",
                "connection_time_ms": round(latency_ms, 2),
                "pool_stats": {
                    "pool_size": pool_size,
                    "pool_available": pool_available,
                    "pool_utilization_percent": round(utilization, 2),
                    "requests_waiting": stats.get("requests_waiting", 0),
                },
            }
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }


# Global pool instance
db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    """Get database pool health status."""
    return await db_pool.health_check()
