"""Role lookups for the RBAC authorizer.

Two stores hold roles: the main database (system-level roles such as
super_admin) and each agency database (tenant-scoped roles). Both expose
the same ``user_roles`` shape, so the repositories differ only in which
pool they read and how they degrade on older schemas.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Protocol

import structlog
from sqlalchemy import text

from buildflow.errors import DataAccessError, DatabaseErrorKind
from buildflow.storage.database import DatabasePool

logger = structlog.get_logger()

_ROLES_SQL = text("SELECT role FROM public.user_roles WHERE user_id = :user_id")
_LEGACY_ROLE_SQL = text("SELECT role FROM public.users WHERE id = :user_id")


class RoleScope(StrEnum):
    MAIN = "main"
    AGENCY = "agency"


class RoleRepository(Protocol):
    scope: RoleScope

    async def get_roles_for_user(self, user_id: str) -> list[str]: ...


async def _fetch_roles(pool: DatabasePool, statement: object, user_id: str) -> list[str]:
    async with pool.session() as session:
        result = await session.execute(statement, {"user_id": user_id})  # type: ignore[call-overload]
        return [row[0] for row in result.all() if row[0]]


class MainRoleRepository:
    """System-level roles from the main database.

    Databases provisioned before ``user_roles`` existed keep a single role
    on ``users.role``; that column is read when the table is missing.
    """

    scope = RoleScope.MAIN

    def __init__(self, pool: DatabasePool) -> None:
        self._pool = pool

    async def get_roles_for_user(self, user_id: str) -> list[str]:
        try:
            return await _fetch_roles(self._pool, _ROLES_SQL, user_id)
        except DataAccessError as exc:
            if exc.kind != DatabaseErrorKind.SCHEMA_MISMATCH:
                raise
            logger.info("user_roles_table_missing", database=self._pool.name)
        return await _fetch_roles(self._pool, _LEGACY_ROLE_SQL, user_id)


class AgencyRoleRepository:
    """Tenant-scoped roles from one agency database."""

    scope = RoleScope.AGENCY

    def __init__(self, pool: DatabasePool) -> None:
        self._pool = pool

    async def get_roles_for_user(self, user_id: str) -> list[str]:
        try:
            return await _fetch_roles(self._pool, _ROLES_SQL, user_id)
        except DataAccessError as exc:
            # An agency database without the roles table grants nothing.
            if exc.kind != DatabaseErrorKind.SCHEMA_MISMATCH:
                raise
            logger.warning("agency_roles_table_missing", database=self._pool.name)
            return []


def role_repository_for(scope: RoleScope, pool: DatabasePool) -> RoleRepository:
    """Pick the repository implementation for a role scope."""
    if scope == RoleScope.MAIN:
        return MainRoleRepository(pool)
    if scope == RoleScope.AGENCY:
        return AgencyRoleRepository(pool)
    raise ValueError(f"Unknown role scope: {scope!r}")
