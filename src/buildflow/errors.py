"""Domain-specific exceptions for buildflow."""

from __future__ import annotations

from enum import StrEnum


class ConfigurationError(Exception):
    """Required configuration is missing or unsafe. Fatal at startup."""


class InvalidDatabaseNameError(ValueError):
    """A database name failed identifier validation."""

    def __init__(self, message: str, *, name: object = None) -> None:
        self.name = name
        super().__init__(message)


class PoolManagerClosedError(RuntimeError):
    """A pool was requested after the manager started shutting down."""


class DatabaseErrorKind(StrEnum):
    """Closed set of data-access failure kinds that upper layers switch on."""

    TENANT_NOT_FOUND = "tenant_not_found"
    SCHEMA_MISMATCH = "schema_mismatch"
    POOL_EXHAUSTED = "pool_exhausted"
    STATEMENT_TIMEOUT = "statement_timeout"
    TRANSIENT_FAILURE = "transient_failure"
    UNKNOWN = "unknown"


class DataAccessError(Exception):
    """A database failure, classified once where it crossed the storage layer.

    Attributes:
        kind: What went wrong, independent of driver error text.
        database: Logical database the failing pool is bound to.
        sqlstate: PostgreSQL SQLSTATE code when the server reported one.
    """

    def __init__(
        self,
        kind: DatabaseErrorKind,
        message: str,
        *,
        database: str | None = None,
        sqlstate: str | None = None,
    ) -> None:
        self.kind = kind
        self.database = database
        self.sqlstate = sqlstate
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.kind in {
            DatabaseErrorKind.POOL_EXHAUSTED,
            DatabaseErrorKind.STATEMENT_TIMEOUT,
            DatabaseErrorKind.TRANSIENT_FAILURE,
        }
