"""Role-based access control.

Decision procedure for a route that requires one of ``required`` roles:

1. A check naming a system role (super_admin, admin, ceo) reads roles
   from the main database first and falls back to the agency database
   only when the main one has none.
2. Any other check needs a resolved agency database and reads roles
   from it. No agency context is a distinct denial.
3. The effective role is the highest-authority role found.
4. Access is granted when the effective role is required outright, or,
   with ``allow_higher_roles``, when it outranks any required role.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from buildflow.api.errors import AuthorizationError
from buildflow.auth.context import AuthenticatedUser, AuthorizedUser
from buildflow.auth.roles import Role, effective_role, is_system_check, rank
from buildflow.storage.pool_manager import PoolManager
from buildflow.storage.role_repository import RoleScope, role_repository_for

logger = structlog.get_logger()

AGENCY_HEADER = "X-Agency-Database"


def check_agency_context(
    user: AuthenticatedUser, header_value: str | None
) -> str:
    """Agency database bound to the session, cross-checked against the header.

    Raises:
        AuthorizationError: RBAC_NO_AGENCY_CONTEXT when the session has no
            agency database, RBAC_AGENCY_MISMATCH when the header names a
            different one.
    """
    if not user.agency_database:
        logger.warning("agency_context_missing", user_id=user.user_id)
        raise AuthorizationError(
            "RBAC_NO_AGENCY_CONTEXT", "Agency context is required"
        )
    if header_value and header_value != user.agency_database:
        logger.warning(
            "agency_context_mismatch",
            user_id=user.user_id,
            token_agency=user.agency_database,
            header_agency=header_value,
        )
        raise AuthorizationError("RBAC_AGENCY_MISMATCH", "Agency context mismatch")
    return user.agency_database


class RoleAuthorizer:
    """Resolves a caller's roles from the right database and enforces rank."""

    def __init__(self, pools: PoolManager) -> None:
        self._pools = pools

    async def roles_for(self, user: AuthenticatedUser, scope: RoleScope) -> list[str]:
        """All roles the user holds in ``scope``."""
        if scope == RoleScope.MAIN:
            pool = self._pools.get_main_pool()
        else:
            if not user.agency_database:
                return []
            pool = await self._pools.get_agency_pool(user.agency_database)
        return await role_repository_for(scope, pool).get_roles_for_user(user.user_id)

    async def _system_roles(self, user: AuthenticatedUser) -> list[str]:
        roles = await self.roles_for(user, RoleScope.MAIN)
        if not roles and user.agency_database:
            roles = await self.roles_for(user, RoleScope.AGENCY)
        return roles

    async def authorize(
        self,
        user: AuthenticatedUser,
        required: Sequence[str],
        *,
        allow_higher_roles: bool = True,
        path: str | None = None,
        method: str | None = None,
        client_ip: str | None = None,
    ) -> AuthorizedUser:
        """Grant or deny access to a route requiring one of ``required``.

        Raises:
            AuthorizationError: RBAC_NO_AGENCY_CONTEXT, RBAC_NO_ROLES or
                RBAC_FORBIDDEN.
        """
        if is_system_check(required):
            roles = await self._system_roles(user)
        else:
            if not user.agency_database:
                logger.warning(
                    "agency_context_missing", user_id=user.user_id, path=path
                )
                raise AuthorizationError(
                    "RBAC_NO_AGENCY_CONTEXT",
                    "Agency context is required for this operation",
                )
            roles = await self.roles_for(user, RoleScope.AGENCY)

        best = effective_role(roles)
        if best is None:
            raise AuthorizationError("RBAC_NO_ROLES", "User has no assigned roles")

        granted = best in required or (
            allow_higher_roles and any(rank(best) <= rank(r) for r in required)
        )
        if not granted:
            logger.warning(
                "rbac_access_denied",
                user_id=user.user_id,
                user_role=best,
                required_roles=list(required),
                path=path,
                method=method,
                ip=client_ip,
            )
            raise AuthorizationError(
                "RBAC_FORBIDDEN",
                f"Access denied. Required role(s): {', '.join(required)}",
                details={"user_role": best},
            )
        return AuthorizedUser(user=user, roles=tuple(roles), effective_role=best)

    async def require_super_admin(self, user: AuthenticatedUser) -> AuthorizedUser:
        """Exact super_admin membership; rank comparison does not apply.

        Raises:
            AuthorizationError: RBAC_INSUFFICIENT_ROLE.
        """
        roles = await self._system_roles(user)
        if Role.SUPER_ADMIN not in roles:
            logger.warning(
                "rbac_super_admin_denied", user_id=user.user_id, roles=roles
            )
            raise AuthorizationError(
                "RBAC_INSUFFICIENT_ROLE",
                "Super admin role required",
                summary="Access denied: Super admin role required",
            )
        return AuthorizedUser(
            user=user, roles=tuple(roles), effective_role=Role.SUPER_ADMIN.value
        )
