"""Authenticated request context."""

from __future__ import annotations

from dataclasses import dataclass

from buildflow.auth.tokens import SessionClaims


@dataclass(frozen=True)
class AuthenticatedUser:
    """Verified caller, injected into every protected request.

    Built from the session token. ``agency_database`` is the token's claim,
    or the registry's answer when the token carries only an agency id.
    """

    user_id: str
    email: str
    agency_id: str | None
    agency_database: str | None
    is_super_admin: bool
    expires_at: int

    @classmethod
    def from_claims(
        cls, claims: SessionClaims, agency_database: str | None = None
    ) -> AuthenticatedUser:
        return cls(
            user_id=claims.user_id,
            email=claims.email,
            agency_id=claims.agency_id,
            agency_database=agency_database or claims.agency_database,
            is_super_admin=claims.is_super_admin,
            expires_at=claims.expires_at,
        )


@dataclass(frozen=True)
class AuthorizedUser:
    """Caller that passed a role check.

    Attributes:
        roles: Every role found in the scope that was consulted.
        effective_role: Highest-authority role among ``roles``.
    """

    user: AuthenticatedUser
    roles: tuple[str, ...]
    effective_role: str
