"""FastAPI dependency injection and the per-request auth chain.

Protected routes compose, in order: bearer token verification, agency
resolution, agency-context check, role check. Collaborators are built
once in the application lifespan and read here from ``app.state``.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Annotated, Any, cast

import structlog
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from buildflow.api.errors import ApiError, AuthenticationError
from buildflow.api.middleware import client_ip
from buildflow.auth.context import AuthenticatedUser, AuthorizedUser
from buildflow.auth.rate_limiter import InMemoryRateLimiter
from buildflow.auth.rbac import AGENCY_HEADER, RoleAuthorizer, check_agency_context
from buildflow.auth.resolver import AgencyResolver
from buildflow.auth.roles import Role
from buildflow.auth.tokens import MAX_TOKEN_LENGTH, MIN_TOKEN_LENGTH, TokenCodec
from buildflow.storage.database import DatabasePool
from buildflow.storage.pool_manager import PoolManager

__all__ = [
    "get_agency_pool",
    "get_current_user",
    "get_main_pool",
    "get_pool_manager",
    "require_agency_context",
    "require_role",
    "require_role_or_higher",
    "require_super_admin",
]

logger = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=False)


async def get_pool_manager(request: Request) -> PoolManager:
    """Retrieve PoolManager from app state.

    Initialized during lifespan startup.
    """
    return cast(PoolManager, request.app.state.pool_manager)


async def get_token_codec(request: Request) -> TokenCodec:
    return cast(TokenCodec, request.app.state.token_codec)


async def get_resolver(request: Request) -> AgencyResolver:
    return cast(AgencyResolver, request.app.state.agency_resolver)


async def get_authorizer(request: Request) -> RoleAuthorizer:
    return cast(RoleAuthorizer, request.app.state.role_authorizer)


async def get_auth_limiter(request: Request) -> InMemoryRateLimiter:
    return cast(InMemoryRateLimiter, request.app.state.auth_rate_limiter)


async def get_main_pool(
    pools: Annotated[PoolManager, Depends(get_pool_manager)],
) -> DatabasePool:
    return pools.get_main_pool()


def _too_many_attempts(limiter: InMemoryRateLimiter, ip: str) -> ApiError:
    decision = limiter.peek(ip)
    logger.warning("auth_attempts_exceeded", client_ip=ip)
    return ApiError(
        "RATE_LIMITED",
        "Too many failed authentication attempts, please try again later",
        status_code=429,
        summary="Too many requests",
        headers=decision.headers(),
    )


async def get_current_user(
    request: Request,
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Security(bearer_scheme)
    ],
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
    resolver: Annotated[AgencyResolver, Depends(get_resolver)],
    limiter: Annotated[InMemoryRateLimiter, Depends(get_auth_limiter)],
) -> AuthenticatedUser:
    """Authenticate the request via its bearer token.

    Failed verifications count against a strict per-IP limit; once it is
    exhausted the caller gets 429 until the window frees up.

    Raises:
        AuthenticationError: AUTH_MISSING_TOKEN, AUTH_EMPTY_TOKEN or
            AUTH_INVALID_TOKEN.
        ApiError: 429 RATE_LIMITED after too many failures.
    """
    if credentials is None:
        raise AuthenticationError(
            "AUTH_MISSING_TOKEN",
            "Authentication token is required",
            summary="Authentication required",
        )
    token = credentials.credentials.strip()
    if len(token) < MIN_TOKEN_LENGTH:
        raise AuthenticationError(
            "AUTH_EMPTY_TOKEN",
            "Authentication token is missing or empty",
            summary="Authentication required",
        )
    if len(token) > MAX_TOKEN_LENGTH:
        raise AuthenticationError(
            "AUTH_INVALID_TOKEN", "Invalid authentication token format"
        )

    ip = client_ip(request)
    if not limiter.peek(ip).allowed:
        raise _too_many_attempts(limiter, ip)

    claims = codec.verify(token)
    if claims is None:
        if not limiter.check(ip).allowed:
            raise _too_many_attempts(limiter, ip)
        raise AuthenticationError(
            "AUTH_INVALID_TOKEN", "Invalid or expired authentication token"
        )

    agency_database = await resolver.resolve(claims)
    user = AuthenticatedUser.from_claims(claims, agency_database)
    structlog.contextvars.bind_contextvars(user_id=user.user_id)
    return user


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def require_agency_context(request: Request, user: CurrentUser) -> AuthenticatedUser:
    """Require an agency-bound session whose agency matches ``X-Agency-Database``.

    Raises:
        AuthorizationError: RBAC_NO_AGENCY_CONTEXT or RBAC_AGENCY_MISMATCH.
    """
    check_agency_context(user, request.headers.get(AGENCY_HEADER))
    return user


AgencyUser = Annotated[AuthenticatedUser, Depends(require_agency_context)]


async def get_agency_pool(
    user: AgencyUser,
    pools: Annotated[PoolManager, Depends(get_pool_manager)],
) -> DatabasePool:
    """Pool bound to the caller's agency database."""
    return await pools.get_agency_pool(cast(str, user.agency_database))


def require_role(
    *roles: str,
    allow_higher_roles: bool = True,
) -> Callable[..., Coroutine[Any, Any, AuthorizedUser]]:
    """Dependency factory: require one of ``roles`` (or higher).

    Usage as parameter dependency (returns AuthorizedUser)::

        async def endpoint(
            caller: AuthorizedUser = Depends(require_role("admin")),
        ): ...

    Raises:
        AuthorizationError 403: RBAC_NO_AGENCY_CONTEXT, RBAC_NO_ROLES,
            RBAC_FORBIDDEN.
    """
    if not roles:
        raise ValueError("require_role needs at least one role")

    async def _check_role(
        request: Request,
        user: CurrentUser,
        authorizer: Annotated[RoleAuthorizer, Depends(get_authorizer)],
    ) -> AuthorizedUser:
        authorized = await authorizer.authorize(
            user,
            roles,
            allow_higher_roles=allow_higher_roles,
            path=request.url.path,
            method=request.method,
            client_ip=client_ip(request),
        )
        structlog.contextvars.bind_contextvars(role=authorized.effective_role)
        return authorized

    return _check_role


def require_role_or_higher(
    minimum: str,
) -> Callable[..., Coroutine[Any, Any, AuthorizedUser]]:
    return require_role(minimum, allow_higher_roles=True)


async def require_super_admin(
    user: CurrentUser,
    authorizer: Annotated[RoleAuthorizer, Depends(get_authorizer)],
) -> AuthorizedUser:
    """Require the exact super_admin role.

    Raises:
        AuthorizationError 403: RBAC_INSUFFICIENT_ROLE.
    """
    return await authorizer.require_super_admin(user)


SuperAdmin = Annotated[AuthorizedUser, Depends(require_super_admin)]
AdminOrHigher = Annotated[AuthorizedUser, Depends(require_role_or_higher(Role.ADMIN))]
