"""API error envelope and exception handlers.

Every error response has the shape::

    {"success": false,
     "error": {"code": "...", "message": "...", "details": ...},
     "message": "..."}

``details`` is omitted in production.
"""

from __future__ import annotations

from typing import Any, cast

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from buildflow.config import settings
from buildflow.errors import (
    DataAccessError,
    DatabaseErrorKind,
    InvalidDatabaseNameError,
    PoolManagerClosedError,
)

logger = structlog.get_logger()

DB_RETRY_AFTER_SECONDS = 5


class ApiError(Exception):
    """Error rendered into the standard envelope.

    Attributes:
        status_code: HTTP status.
        code: Stable machine-readable code, e.g. ``RBAC_FORBIDDEN``.
        summary: Short top-level ``message`` of the envelope.
        details: Extra context, shown outside production only.
    """

    status_code = 400
    summary = "Request failed"

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int | None = None,
        summary: str | None = None,
        details: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if summary is not None:
            self.summary = summary
        self.details = details
        self.headers = headers


class AuthenticationError(ApiError):
    status_code = 401
    summary = "Authentication failed"


class AuthorizationError(ApiError):
    status_code = 403
    summary = "Access denied"


def error_body(
    code: str,
    message: str,
    summary: str,
    details: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None and not settings.is_prod:
        error["details"] = details
    return {"success": False, "error": error, "message": summary}


def error_response(
    status_code: int,
    code: str,
    message: str,
    summary: str,
    *,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(code, message, summary, details),
        headers=headers,
    )


# kind -> (status, code, message)
_DATA_ACCESS_RESPONSES: dict[DatabaseErrorKind, tuple[int, str, str]] = {
    DatabaseErrorKind.POOL_EXHAUSTED: (
        503,
        "DB_POOL_EXHAUSTED",
        "Database is busy, please retry shortly",
    ),
    DatabaseErrorKind.TRANSIENT_FAILURE: (
        503,
        "DB_UNAVAILABLE",
        "Database is temporarily unavailable",
    ),
    DatabaseErrorKind.STATEMENT_TIMEOUT: (
        503,
        "DB_STATEMENT_TIMEOUT",
        "Database query timed out",
    ),
    DatabaseErrorKind.TENANT_NOT_FOUND: (
        404,
        "AGENCY_DB_NOT_FOUND",
        "Agency database not found. Please log out and log in again.",
    ),
    DatabaseErrorKind.SCHEMA_MISMATCH: (
        500,
        "DB_SCHEMA_MISMATCH",
        "Database schema is out of date",
    ),
    DatabaseErrorKind.UNKNOWN: (500, "DB_ERROR", "Database error"),
}


async def api_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = cast(ApiError, exc)
    return error_response(
        error.status_code,
        error.code,
        error.message,
        error.summary,
        details=error.details,
        headers=error.headers,
    )


async def data_access_error_handler(
    request: Request, exc: DataAccessError
) -> JSONResponse:
    status_code, code, message = _DATA_ACCESS_RESPONSES[exc.kind]
    logger.warning(
        "data_access_failed",
        kind=str(exc.kind),
        database=exc.database,
        sqlstate=exc.sqlstate,
        path=request.url.path,
    )
    headers = {"Retry-After": str(DB_RETRY_AFTER_SECONDS)} if exc.is_retryable else None
    return error_response(
        status_code,
        code,
        message,
        "Database error",
        details={"kind": str(exc.kind), "sqlstate": exc.sqlstate},
        headers=headers,
    )


async def invalid_database_name_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    return error_response(
        400,
        "INVALID_DATABASE_NAME",
        "Invalid agency database name",
        "Request failed",
        details=str(exc),
    )


async def pool_manager_closed_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    return error_response(
        503,
        "SERVICE_UNAVAILABLE",
        "Server is shutting down",
        "Service unavailable",
        headers={"Retry-After": str(DB_RETRY_AFTER_SECONDS)},
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return error_response(
        exc.status_code,
        f"HTTP_{exc.status_code}",
        str(exc.detail),
        "Request failed",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return error_response(
        422,
        "VALIDATION_ERROR",
        "Request validation failed",
        "Request failed",
        details=jsonable_encoder(exc.errors()),
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Catch-all handler for unhandled exceptions."""
    logger.error("unhandled_exception", exc_info=exc, path=request.url.path)
    return error_response(
        500,
        "INTERNAL_ERROR",
        "Internal server error",
        "Internal server error",
        details=str(exc),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(DataAccessError, data_access_error_handler)
    app.add_exception_handler(InvalidDatabaseNameError, invalid_database_name_handler)
    app.add_exception_handler(PoolManagerClosedError, pool_manager_closed_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
