"""
PostgreSQL Connection Pool Manager

Owns a bounded asyncpg pool and exposes single-statement execution,
transactions and health probing.

Usage:
    manager = ConnectionPoolManager(PoolConfig.from_env())
    await manager.initialize()

    rows = await manager.query("SELECT * FROM users WHERE email = $1", email)

    async def create_user(tx):
        user_id = await tx.fetchval("INSERT INTO users (email) VALUES ($1) RETURNING id", email)
        await tx.execute("INSERT INTO user_roles (user_id, role_id) VALUES ($1, 3)", user_id)
        return user_id

    user_id = await manager.transaction(create_user)

    await manager.close()
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import asyncpg

from ..config import PoolConfig
from ..errors import BackendConnectionError, ConfigurationError, TransactionError
from ..models import HealthReport
from ..observability import create_span, record_histogram

logger = logging.getLogger(__name__)

BACKEND_NAME = "postgresql"
LIVENESS_SQL = "SELECT 1"
CLOSE_TIMEOUT = 10.0

T = TypeVar("T")


def _preview(sql: str, limit: int = 80) -> str:
    """Single-line, truncated SQL for log messages."""
    flat = " ".join(sql.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."


class PooledConnection:
    """
    A checked-out connection handed to transaction callbacks and sessions.

    Wraps the raw asyncpg connection so every statement is timed and logged
    the same way as pool-level queries.
    """

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    @property
    def raw(self) -> asyncpg.Connection:
        return self._conn

    async def query(self, sql: str, *args) -> List[Dict[str, Any]]:
        """Run a statement and return its rows as dicts."""
        rows = await _timed(self._conn.fetch, sql, *args)
        return [dict(row) for row in rows]

    async def execute(self, sql: str, *args) -> str:
        """Run a statement and return the server status (e.g. "INSERT 0 1")."""
        return await _timed(self._conn.execute, sql, *args)

    async def fetchval(self, sql: str, *args) -> Any:
        """Return the first column of the first row."""
        return await _timed(self._conn.fetchval, sql, *args)

    async def transaction(self, fn: Callable[["PooledConnection"], Awaitable[T]]) -> T:
        """
        Run fn inside a transaction on this connection.

        Nested calls become savepoints.
        """
        return await _run_in_transaction(self, fn)


async def _timed(method: Callable[..., Awaitable[T]], sql: str, *args) -> T:
    """Execute one statement with timing captured for diagnostics."""
    start = time.perf_counter()
    with create_span("db.query", {"db.system": BACKEND_NAME, "db.statement": _preview(sql, 200)}):
        try:
            result = await method(sql, *args)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "Query failed after %.1fms: %s (%s)",
                duration_ms, _preview(sql), e,
                extra={"duration_ms": round(duration_ms, 2)},
            )
            raise
    duration = time.perf_counter() - start
    record_histogram("db_query_duration_seconds", duration, {"db.system": BACKEND_NAME})
    logger.debug(
        "Query completed in %.1fms: %s", duration * 1000, _preview(sql),
        extra={"duration_ms": round(duration * 1000, 2)},
    )
    return result


async def _run_in_transaction(
    handle: PooledConnection,
    fn: Callable[[PooledConnection], Awaitable[T]],
) -> T:
    """Begin, run fn, commit; roll back and re-raise fn's error unchanged."""
    tx = handle.raw.transaction()
    start = time.perf_counter()
    try:
        await tx.start()
    except Exception as e:
        raise TransactionError(f"Could not begin transaction: {e}") from e

    with create_span("db.transaction", {"db.system": BACKEND_NAME}):
        try:
            result = await fn(handle)
        except BaseException:
            try:
                await tx.rollback()
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            else:
                logger.warning(
                    "Transaction rolled back after %.1fms",
                    (time.perf_counter() - start) * 1000,
                )
            raise

        try:
            await tx.commit()
        except Exception as e:
            raise TransactionError(f"Commit failed: {e}") from e

    record_histogram(
        "db_transaction_duration_seconds",
        time.perf_counter() - start,
        {"db.system": BACKEND_NAME},
    )
    return result


class ConnectionPoolManager:
    """
    Bounded PostgreSQL pool.

    Every checkout goes through _acquire(), which pairs acquire and release
    on all exit paths and keeps the count of callers waiting for a free
    connection.
    """

    def __init__(self, config: Optional[PoolConfig] = None):
        self.config = config or PoolConfig.from_env()
        self._pool: Optional[asyncpg.Pool] = None
        self._waiting = 0

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """
        Create the pool and run one liveness check.

        Raises:
            BackendConnectionError: pool creation or the liveness check failed. The
                partially opened pool is closed before raising.
        """
        if self._pool is not None:
            return

        logger.info(f"Connecting to PostgreSQL: {self.config!r}")

        connect_kwargs: Dict[str, Any] = {
            "min_size": self.config.min_size,
            "max_size": self.config.max_size,
            "max_inactive_connection_lifetime": self.config.idle_timeout,
            "timeout": self.config.connect_timeout,
            "command_timeout": self.config.statement_timeout,
        }
        if self.config.dsn:
            connect_kwargs["dsn"] = self.config.dsn
        else:
            connect_kwargs.update(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password or None,
            )
        ssl_context = self.config.ssl_context()
        if ssl_context is not None:
            connect_kwargs["ssl"] = ssl_context

        try:
            self._pool = await asyncpg.create_pool(**connect_kwargs)
            async with self._acquire() as conn:
                await conn.fetchval(LIVENESS_SQL)
        except Exception as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            await self.close()
            raise BackendConnectionError(BACKEND_NAME, str(e)) from e

        logger.info(
            "Connected to PostgreSQL (pool min=%d max=%d)",
            self.config.min_size, self.config.max_size,
        )

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise ConfigurationError("PostgreSQL pool is not initialized; call initialize() first")
        return self._pool

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        pool = self._require_pool()
        self._waiting += 1
        try:
            conn = await pool.acquire(timeout=self.config.connect_timeout)
        finally:
            self._waiting -= 1
        try:
            yield conn
        finally:
            await pool.release(conn)

    async def query(self, sql: str, *args) -> List[Dict[str, Any]]:
        """
        Execute one statement on a pooled connection.

        Args:
            sql: SQL with $1, $2, ... placeholders
            *args: Query parameters

        Returns:
            Rows as dictionaries (empty for statements without a result set)

        Errors from the driver are logged with timing and re-raised as-is.
        """
        async with self._acquire() as conn:
            return await PooledConnection(conn).query(sql, *args)

    async def execute(self, sql: str, *args) -> str:
        """Execute one statement and return the server status string."""
        async with self._acquire() as conn:
            return await PooledConnection(conn).execute(sql, *args)

    async def fetchval(self, sql: str, *args) -> Any:
        """Return the first column of the first row."""
        async with self._acquire() as conn:
            return await PooledConnection(conn).fetchval(sql, *args)

    async def transaction(self, fn: Callable[[PooledConnection], Awaitable[T]]) -> T:
        """
        Run fn inside one transaction on one connection.

        Commits when fn returns, rolls back and re-raises fn's exception
        otherwise. The connection goes back to the pool on every path.

        Returns:
            Whatever fn returned.
        """
        async with self._acquire() as conn:
            return await _run_in_transaction(PooledConnection(conn), fn)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PooledConnection]:
        """
        Hold one connection for the duration of the block.

        Needed for session-scoped state such as advisory locks.
        """
        async with self._acquire() as conn:
            yield PooledConnection(conn)

    def pool_stats(self) -> Dict[str, int]:
        """Current pool figures."""
        if self._pool is None:
            return {"total": 0, "idle": 0, "waiting": self._waiting,
                    "min": self.config.min_size, "max": self.config.max_size}
        return {
            "total": self._pool.get_size(),
            "idle": self._pool.get_idle_size(),
            "waiting": self._waiting,
            "min": self._pool.get_min_size(),
            "max": self._pool.get_max_size(),
        }

    async def health_check(self) -> HealthReport:
        """Run a trivial query and report pool figures. Never raises."""
        start = time.perf_counter()
        error = None
        try:
            async with self._acquire() as conn:
                await conn.fetchval(LIVENESS_SQL)
        except Exception as e:
            error = str(e)
            logger.warning(f"PostgreSQL health check failed: {e}")

        return HealthReport(
            healthy=error is None,
            response_time_ms=round((time.perf_counter() - start) * 1000, 2),
            detail={"pool": self.pool_stats()},
            error=error,
        )

    async def close(self) -> None:
        """Drain and close the pool. Safe to call more than once."""
        pool, self._pool = self._pool, None
        if pool is None:
            return
        try:
            await asyncio.wait_for(pool.close(), timeout=CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("PostgreSQL pool did not drain in time, terminating connections")
            pool.terminate()
        logger.info("Disconnected from PostgreSQL")
