"""Tests for data-access error classification and the pool session boundary."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import exc as sa_exc

from buildflow.errors import DataAccessError, DatabaseErrorKind
from buildflow.storage.database import DatabasePool, classify_database_error


class FakeDriverError(Exception):
    """Driver exception carrying a SQLSTATE, like psycopg.Error."""

    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def _wrapped(
    cls: type[sa_exc.DBAPIError], sqlstate: str | None, message: str = "boom"
) -> sa_exc.DBAPIError:
    return cls("SELECT 1", {}, FakeDriverError(message, sqlstate))


class TestClassifyDatabaseError:
    @pytest.mark.parametrize(
        ("sqlstate", "kind"),
        [
            ("3D000", DatabaseErrorKind.TENANT_NOT_FOUND),
            ("42P01", DatabaseErrorKind.SCHEMA_MISMATCH),
            ("42703", DatabaseErrorKind.SCHEMA_MISMATCH),
            ("42883", DatabaseErrorKind.SCHEMA_MISMATCH),
            ("57014", DatabaseErrorKind.STATEMENT_TIMEOUT),
            ("08006", DatabaseErrorKind.TRANSIENT_FAILURE),
            ("57P01", DatabaseErrorKind.TRANSIENT_FAILURE),
            ("53300", DatabaseErrorKind.TRANSIENT_FAILURE),
        ],
    )
    def test_sqlstate_mapping(self, sqlstate: str, kind: DatabaseErrorKind) -> None:
        error = classify_database_error(
            _wrapped(sa_exc.ProgrammingError, sqlstate), database="agency_acme"
        )
        assert error.kind == kind
        assert error.sqlstate == sqlstate
        assert error.database == "agency_acme"

    def test_pool_timeout_is_exhaustion(self) -> None:
        error = classify_database_error(sa_exc.TimeoutError("QueuePool limit"))
        assert error.kind == DatabaseErrorKind.POOL_EXHAUSTED
        assert error.is_retryable

    def test_missing_database_message_without_sqlstate(self) -> None:
        exc = _wrapped(
            sa_exc.OperationalError,
            None,
            'connection failed: FATAL:  database "agency_gone" does not exist',
        )
        assert classify_database_error(exc).kind == DatabaseErrorKind.TENANT_NOT_FOUND

    def test_connection_refused_is_transient(self) -> None:
        exc = _wrapped(sa_exc.OperationalError, None, "connection refused")
        assert classify_database_error(exc).kind == DatabaseErrorKind.TRANSIENT_FAILURE

    def test_os_error_is_transient(self) -> None:
        error = classify_database_error(ConnectionResetError("reset by peer"))
        assert error.kind == DatabaseErrorKind.TRANSIENT_FAILURE

    def test_integrity_error_is_unknown(self) -> None:
        error = classify_database_error(_wrapped(sa_exc.IntegrityError, "23505"))
        assert error.kind == DatabaseErrorKind.UNKNOWN
        assert not error.is_retryable

    def test_already_classified_passes_through(self) -> None:
        original = DataAccessError(DatabaseErrorKind.SCHEMA_MISMATCH, "x")
        assert classify_database_error(original) is original


def _fake_engine() -> MagicMock:
    engine = MagicMock()
    engine.dispose = AsyncMock()
    engine.pool.checkedout.return_value = 0
    return engine


def _stub_sessions(pool: DatabasePool) -> MagicMock:
    session = MagicMock()

    @asynccontextmanager
    async def _open():
        yield session

    pool._sessionmaker = _open  # type: ignore[assignment]
    return session


class TestDatabasePoolSession:
    @pytest.mark.asyncio
    async def test_failure_is_classified_and_reported(self) -> None:
        reported: list[DataAccessError] = []

        async def on_failure(pool: DatabasePool, error: DataAccessError) -> None:
            reported.append(error)

        pool = DatabasePool("agency_acme", _fake_engine(), on_failure=on_failure)
        _stub_sessions(pool)

        with pytest.raises(DataAccessError) as exc_info:
            async with pool.session():
                raise _wrapped(sa_exc.ProgrammingError, "42P01")

        assert exc_info.value.kind == DatabaseErrorKind.SCHEMA_MISMATCH
        assert exc_info.value.database == "agency_acme"
        assert isinstance(exc_info.value.__cause__, sa_exc.ProgrammingError)
        assert reported == [exc_info.value]

    @pytest.mark.asyncio
    async def test_application_errors_pass_through(self) -> None:
        pool = DatabasePool("agency_acme", _fake_engine())
        _stub_sessions(pool)

        with pytest.raises(KeyError):
            async with pool.session():
                raise KeyError("not a database error")

    @pytest.mark.asyncio
    async def test_session_marks_pool_used(self) -> None:
        pool = DatabasePool("agency_acme", _fake_engine())
        session = _stub_sessions(pool)
        before = pool.use_count

        async with pool.session() as opened:
            assert opened is session

        assert pool.use_count == before + 1

    @pytest.mark.asyncio
    async def test_dispose_is_idempotent(self) -> None:
        pool = DatabasePool("agency_acme", _fake_engine())
        await pool.dispose()
        await pool.dispose()
        assert pool.disposed
        pool.engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_idle_connections_kept_while_checked_out(self) -> None:
        pool = DatabasePool("agency_acme", _fake_engine())
        pool.engine.pool.checkedout.return_value = 2
        assert await pool.release_idle_connections() is False
        pool.engine.dispose.assert_not_awaited()

        pool.engine.pool.checkedout.return_value = 0
        assert await pool.release_idle_connections() is True
        pool.engine.dispose.assert_awaited_once()
