"""Database pool handle and the data-access error boundary.

Every SQLAlchemy or driver failure raised while a :class:`DatabasePool`
session is open is classified exactly once, here, into a
:class:`~buildflow.errors.DataAccessError`. Callers switch on
``error.kind`` instead of re-reading driver messages.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from buildflow.errors import DataAccessError, DatabaseErrorKind

logger = structlog.get_logger()

TENANT_NOT_FOUND_SQLSTATE = "3D000"
STATEMENT_TIMEOUT_SQLSTATE = "57014"
SCHEMA_SQLSTATES: frozenset[str] = frozenset(
    {
        "42P01",  # undefined_table
        "42703",  # undefined_column
        "42704",  # undefined_object
        "42883",  # undefined_function
    }
)
TRANSIENT_SQLSTATES: frozenset[str] = frozenset(
    {
        "53300",  # too_many_connections
        "57P01",  # admin_shutdown
        "57P02",  # crash_shutdown
        "57P03",  # cannot_connect_now
    }
)

FailureHook = Callable[["DatabasePool", DataAccessError], Awaitable[None]]


def _sqlstate(exc: BaseException) -> str | None:
    for candidate in (getattr(exc, "orig", None), exc):
        code = getattr(candidate, "sqlstate", None)
        if isinstance(code, str) and code:
            return code
    return None


def _is_missing_database(exc: BaseException) -> bool:
    # libpq reports a missing database while connecting, before any
    # SQLSTATE is available.
    message = str(getattr(exc, "orig", None) or exc).lower()
    return "database" in message and "does not exist" in message


def classify_database_error(
    exc: BaseException, *, database: str | None = None
) -> DataAccessError:
    """Map a SQLAlchemy / psycopg / socket failure onto a DataAccessError."""
    if isinstance(exc, DataAccessError):
        return exc

    sqlstate = _sqlstate(exc)

    def _error(kind: DatabaseErrorKind, message: str) -> DataAccessError:
        return DataAccessError(kind, message, database=database, sqlstate=sqlstate)

    if isinstance(exc, sa_exc.TimeoutError):
        return _error(
            DatabaseErrorKind.POOL_EXHAUSTED,
            "Timed out waiting for a free database connection",
        )
    if sqlstate == TENANT_NOT_FOUND_SQLSTATE:
        return _error(DatabaseErrorKind.TENANT_NOT_FOUND, "Database does not exist")
    if sqlstate in SCHEMA_SQLSTATES:
        return _error(
            DatabaseErrorKind.SCHEMA_MISMATCH,
            "Database schema does not match the application",
        )
    if sqlstate == STATEMENT_TIMEOUT_SQLSTATE:
        return _error(DatabaseErrorKind.STATEMENT_TIMEOUT, "Statement timed out")
    if sqlstate is not None and (
        sqlstate.startswith("08") or sqlstate in TRANSIENT_SQLSTATES
    ):
        return _error(DatabaseErrorKind.TRANSIENT_FAILURE, "Database unavailable")

    if isinstance(exc, sa_exc.OperationalError) and _is_missing_database(exc):
        return _error(DatabaseErrorKind.TENANT_NOT_FOUND, "Database does not exist")
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return _error(DatabaseErrorKind.TRANSIENT_FAILURE, "Connection was lost")
    if isinstance(
        exc,
        sa_exc.OperationalError
        | sa_exc.InterfaceError
        | sa_exc.DisconnectionError
        | OSError,
    ):
        return _error(DatabaseErrorKind.TRANSIENT_FAILURE, "Database unavailable")

    return _error(DatabaseErrorKind.UNKNOWN, "Database error")


class DatabasePool:
    """One connection pool bound to one physical database.

    Wraps an :class:`AsyncEngine` (which owns the bounded queue pool) with
    usage bookkeeping and a session context manager that classifies
    failures. The same instance is handed to every request that needs
    this database.
    """

    def __init__(
        self,
        name: str,
        engine: AsyncEngine,
        *,
        is_main: bool = False,
        on_failure: FailureHook | None = None,
    ) -> None:
        self.name = name
        self.engine = engine
        self.is_main = is_main
        self.created_at = time.monotonic()
        self.last_used_at = self.created_at
        self.use_count = 0
        self._on_failure = on_failure
        self._disposed = False
        self._sessionmaker = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def __repr__(self) -> str:
        return f"<DatabasePool {self.name!r} main={self.is_main}>"

    @property
    def disposed(self) -> bool:
        return self._disposed

    def touch(self) -> None:
        self.last_used_at = time.monotonic()
        self.use_count += 1

    def idle_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_used_at

    def checked_out(self) -> int:
        return int(self.engine.pool.checkedout())

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Open a session on this pool.

        The connection goes back to the pool when the block exits, on
        success, on error and on cancellation alike.

        Raises:
            DataAccessError: for any database failure inside the block.
        """
        self.touch()
        try:
            async with self._sessionmaker() as session:
                yield session
        except (sa_exc.SQLAlchemyError, OSError) as exc:
            error = classify_database_error(exc, database=self.name)
            logger.warning(
                "database_error",
                database=self.name,
                kind=str(error.kind),
                sqlstate=error.sqlstate,
                error=type(exc).__name__,
            )
            if self._on_failure is not None:
                await self._on_failure(self, error)
            raise error from exc

    async def ping(self) -> None:
        async with self.session() as session:
            await session.execute(text("SELECT 1"))

    async def release_idle_connections(self) -> bool:
        """Close pooled connections when nothing is checked out."""
        if self._disposed or self.checked_out():
            return False
        await self.engine.dispose()
        return True

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        await self.engine.dispose()

    def stats(self) -> dict[str, Any]:
        pool = self.engine.pool
        return {
            "database": self.name,
            "size": int(pool.size()),
            "checked_out": int(pool.checkedout()),
            "checked_in": int(pool.checkedin()),
            "overflow": int(pool.overflow()),
            "use_count": self.use_count,
            "idle_seconds": round(self.idle_seconds(), 1),
        }
