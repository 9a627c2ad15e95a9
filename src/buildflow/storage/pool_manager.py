"""Process-wide connection pool manager.

Owns one :class:`DatabasePool` per physical database: the main database
plus one per agency. Pools are created lazily on first use and shared by
every concurrent request that needs that database.

Invariants:
    - At most one live pool per database name. Concurrent first access
      to the same name shares a single in-flight creation task.
    - The number of agency pools is bounded; the least recently used one
      is disposed when the bound is exceeded.
    - Creating a pool never connects. Connection failures surface on the
      first query, classified by :mod:`buildflow.storage.database`.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from buildflow.config import Settings
from buildflow.errors import (
    DataAccessError,
    DatabaseErrorKind,
    PoolManagerClosedError,
)
from buildflow.storage.database import DatabasePool
from buildflow.storage.identifiers import validate_database_name
from buildflow.storage.url import DatabaseUrl

logger = structlog.get_logger()

# Failures after which an agency pool is dropped so the next request
# builds a fresh one.
DISCARD_ON: frozenset[DatabaseErrorKind] = frozenset(
    {DatabaseErrorKind.TENANT_NOT_FOUND, DatabaseErrorKind.TRANSIENT_FAILURE}
)


@dataclass(frozen=True)
class PoolSettings:
    """Sizing and timeout policy shared by every pool the manager builds."""

    main_max_connections: int = 20
    agency_max_connections: int = 5
    max_agency_pools: int = 50
    acquire_timeout: float = 10.0
    statement_timeout: float = 30.0
    connection_idle_seconds: float = 30.0
    recycle_seconds: int = 1800
    idle_eviction_seconds: float = 1800.0
    application_name: str = "buildflow-api"
    drivername: str = "postgresql+psycopg"

    @classmethod
    def from_settings(cls, settings: Settings) -> PoolSettings:
        return cls(
            main_max_connections=settings.pool_main_max_connections,
            agency_max_connections=settings.pool_agency_max_connections,
            max_agency_pools=settings.pool_max_agency_pools,
            acquire_timeout=settings.pool_acquire_timeout_seconds,
            statement_timeout=settings.pool_statement_timeout_seconds,
            connection_idle_seconds=settings.pool_connection_idle_seconds,
            recycle_seconds=settings.pool_recycle_seconds,
            idle_eviction_seconds=settings.pool_idle_eviction_seconds,
            application_name=settings.db_application_name,
        )


EngineFactory = Callable[[DatabaseUrl, int, PoolSettings], AsyncEngine]


def create_pool_engine(
    url: DatabaseUrl, max_connections: int, options: PoolSettings
) -> AsyncEngine:
    """Build a lazily-connecting engine with a bounded queue pool.

    ``pool_timeout`` bounds how long a request waits for a free
    connection; ``statement_timeout`` is enforced by the server per
    statement. The two are independent.
    """
    statement_timeout_ms = int(options.statement_timeout * 1000)
    return create_async_engine(
        url.to_sqlalchemy(options.drivername),
        pool_size=max_connections,
        max_overflow=0,
        pool_timeout=options.acquire_timeout,
        pool_recycle=options.recycle_seconds,
        pool_pre_ping=True,
        connect_args={
            "application_name": options.application_name,
            "connect_timeout": max(1, int(options.acquire_timeout)),
            "options": f"-c statement_timeout={statement_timeout_ms}",
        },
    )


class PoolManager:
    """Single authority for database pools within one process.

    Constructed once by the application's composition root and shared by
    reference. Not safe to share across processes; each worker process
    builds its own.
    """

    def __init__(
        self,
        base_url: DatabaseUrl,
        options: PoolSettings | None = None,
        *,
        engine_factory: EngineFactory = create_pool_engine,
    ) -> None:
        self._base_url = base_url
        self._options = options or PoolSettings()
        self._engine_factory = engine_factory
        self._main: DatabasePool | None = None
        self._agency_pools: OrderedDict[str, DatabasePool] = OrderedDict()
        self._inflight: dict[str, asyncio.Task[DatabasePool]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        engine_factory: EngineFactory = create_pool_engine,
    ) -> PoolManager:
        return cls(
            settings.main_database(),
            PoolSettings.from_settings(settings),
            engine_factory=engine_factory,
        )

    @property
    def options(self) -> PoolSettings:
        return self._options

    @property
    def main_database_name(self) -> str:
        return self._base_url.database or "postgres"

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._agency_pools)

    def __contains__(self, database_name: object) -> bool:
        return database_name in self._agency_pools

    def _ensure_open(self) -> None:
        if self._closed:
            raise PoolManagerClosedError("Pool manager is shut down")

    # ── Lookup ────────────────────────────────────────────────────

    def get_main_pool(self) -> DatabasePool:
        """Return the pool bound to the main database, creating it once."""
        self._ensure_open()
        if self._main is None:
            engine = self._engine_factory(
                self._base_url,
                self._options.main_max_connections,
                self._options,
            )
            self._main = DatabasePool(self.main_database_name, engine, is_main=True)
            logger.info(
                "main_pool_created",
                database=self.main_database_name,
                max_connections=self._options.main_max_connections,
            )
        return self._main

    async def get_agency_pool(self, database_name: str) -> DatabasePool:
        """Return the pool bound to ``database_name``, creating it once.

        Uses the main database's host and credentials. Repeated and
        concurrent calls with the same name return the same object.

        Raises:
            InvalidDatabaseNameError: if the name is not a safe identifier.
            PoolManagerClosedError: after shutdown has begun.
        """
        self._ensure_open()
        name = validate_database_name(database_name)
        if name == self.main_database_name:
            return self.get_main_pool()

        pool = self._agency_pools.get(name)
        if pool is not None:
            self._agency_pools.move_to_end(name)
            return pool

        task = self._inflight.get(name)
        if task is None:
            task = asyncio.create_task(
                self._create_agency_pool(name), name=f"create-pool:{name}"
            )
            self._inflight[name] = task
            task.add_done_callback(self._creation_finished(name))
        # A cancelled caller must not cancel creation for everyone else.
        return await asyncio.shield(task)

    def _creation_finished(
        self, name: str
    ) -> Callable[[asyncio.Task[DatabasePool]], None]:
        def _done(task: asyncio.Task[DatabasePool]) -> None:
            if self._inflight.get(name) is task:
                del self._inflight[name]
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "agency_pool_create_failed",
                    database=name,
                    error=type(task.exception()).__name__,
                )

        return _done

    async def _create_agency_pool(self, name: str) -> DatabasePool:
        url = self._base_url.with_database(name)
        # Engine construction imports and initializes the dialect on first
        # use; keep that off the event loop.
        engine = await asyncio.to_thread(
            self._engine_factory,
            url,
            self._options.agency_max_connections,
            self._options,
        )
        if self._closed:
            await engine.dispose()
            raise PoolManagerClosedError("Pool manager is shut down")

        pool = DatabasePool(name, engine, on_failure=self._on_pool_failure)
        self._agency_pools[name] = pool
        logger.info(
            "agency_pool_created",
            database=name,
            max_connections=self._options.agency_max_connections,
            pools=len(self._agency_pools),
            max_pools=self._options.max_agency_pools,
        )
        self._enforce_capacity()
        return pool

    # ── Eviction ──────────────────────────────────────────────────

    def _enforce_capacity(self) -> None:
        while len(self._agency_pools) > self._options.max_agency_pools:
            name, pool = self._agency_pools.popitem(last=False)
            logger.info(
                "agency_pool_evicted",
                database=name,
                reason="capacity",
                idle_seconds=round(pool.idle_seconds(), 1),
                use_count=pool.use_count,
            )
            self._dispose_in_background(pool)

    def _dispose_in_background(self, pool: DatabasePool) -> None:
        task = asyncio.create_task(self._dispose_quietly(pool))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _dispose_quietly(self, pool: DatabasePool) -> None:
        try:
            await pool.dispose()
        except Exception as exc:
            logger.warning(
                "pool_dispose_failed", database=pool.name, error=str(exc)
            )

    async def _on_pool_failure(self, pool: DatabasePool, error: DataAccessError) -> None:
        if error.kind not in DISCARD_ON:
            return
        if self._agency_pools.get(pool.name) is not pool:
            return
        del self._agency_pools[pool.name]
        logger.warning(
            "agency_pool_discarded", database=pool.name, reason=str(error.kind)
        )
        self._dispose_in_background(pool)

    async def release_pool(self, database_name: str) -> bool:
        """Dispose the pool for one agency, e.g. when the agency is deleted.

        Returns:
            True if a pool existed and was disposed.
        """
        name = validate_database_name(database_name)
        pool = self._agency_pools.pop(name, None)
        if pool is None:
            return False
        await pool.dispose()
        logger.info("agency_pool_released", database=name)
        return True

    async def evict_idle_pools(self, now: float | None = None) -> int:
        """Dispose agency pools idle past the eviction window.

        Pools that are still in use but quiet past the connection idle
        window get their pooled connections closed.

        Returns:
            Number of agency pools removed.
        """
        now = now if now is not None else time.monotonic()
        evicted = 0
        for name, pool in list(self._agency_pools.items()):
            idle = pool.idle_seconds(now)
            if idle > self._options.idle_eviction_seconds and not pool.checked_out():
                del self._agency_pools[name]
                await self._dispose_quietly(pool)
                evicted += 1
                logger.info(
                    "agency_pool_evicted",
                    database=name,
                    reason="idle",
                    idle_seconds=round(idle, 1),
                    use_count=pool.use_count,
                )
            elif idle > self._options.connection_idle_seconds:
                await pool.release_idle_connections()

        if self._main is not None and (
            self._main.idle_seconds(now) > self._options.connection_idle_seconds
        ):
            await self._main.release_idle_connections()

        if evicted:
            logger.info(
                "agency_pools_cleaned",
                evicted=evicted,
                pools=len(self._agency_pools),
                max_pools=self._options.max_agency_pools,
            )
        return evicted

    # ── Introspection ─────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        details = [pool.stats() for pool in self._agency_pools.values()]
        count = len(self._agency_pools)
        max_pools = self._options.max_agency_pools
        return {
            "main_pool": self._main.stats() if self._main is not None else None,
            "agency_pools": {
                "count": count,
                "max_pools": max_pools,
                "max_connections_per_pool": self._options.agency_max_connections,
                "utilization": round(count / max_pools * 100) if max_pools else 0,
            },
            "total_agency_connections": sum(d["checked_out"] + d["checked_in"] for d in details),
            "pool_details": details,
        }

    # ── Shutdown ──────────────────────────────────────────────────

    async def close_all(self, timeout: float = 10.0) -> None:
        """Drain and close every pool in parallel.

        Refuses new pool requests immediately. Gives up waiting after
        ``timeout`` seconds so shutdown cannot hang.
        """
        self._closed = True
        pools = list(self._agency_pools.values())
        if self._main is not None:
            pools.append(self._main)
        self._agency_pools.clear()
        self._main = None

        logger.info("pools_closing", pools=len(pools))
        pending: list[Any] = [self._dispose_quietly(pool) for pool in pools]
        pending.extend(self._background)
        pending.extend(self._inflight.values())
        try:
            async with asyncio.timeout(timeout):
                await asyncio.gather(*pending, return_exceptions=True)
        except TimeoutError:
            logger.warning("pools_close_timeout", timeout_seconds=timeout)
            return
        logger.info("pools_closed", pools=len(pools))
