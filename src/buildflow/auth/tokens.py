"""Signed session tokens.

A session token binds a user to one agency database for its whole
lifetime. The payload uses the camelCase claim names the web client
already reads: ``userId``, ``email``, ``agencyId``, ``agencyDatabase``
and ``isSuperAdmin``, plus the registered ``iss``, ``aud``, ``iat`` and
``exp`` claims.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import jwt
import structlog

from buildflow.config import Settings
from buildflow.errors import ConfigurationError

logger = structlog.get_logger()

MIN_SECRET_BYTES = 32
MIN_TOKEN_LENGTH = 10
MAX_TOKEN_LENGTH = 10_000
SUPPORTED_ALGORITHMS: frozenset[str] = frozenset({"HS256", "HS384", "HS512"})
FAILURE_LOG_INTERVAL_SECONDS = 5.0

_REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud"]


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session token."""

    user_id: str
    email: str
    agency_id: str | None
    agency_database: str | None
    issued_at: int
    expires_at: int
    is_super_admin: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SessionClaims:
        return cls(
            user_id=str(payload["userId"]),
            email=str(payload["email"]),
            agency_id=_optional_str(payload.get("agencyId")),
            agency_database=_optional_str(payload.get("agencyDatabase")),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            is_super_admin=bool(payload.get("isSuperAdmin", False)),
        )


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


class TokenCodec:
    """Issue and verify HMAC-signed session tokens.

    Refuses to construct without a strong secret, so a misconfigured
    process fails at startup instead of accepting forged tokens.
    """

    def __init__(
        self,
        secret: str | None,
        *,
        issuer: str = "buildflow",
        audience: str = "buildflow-api",
        algorithm: str = "HS256",
        expires_in: int = 24 * 60 * 60,
    ) -> None:
        if not secret:
            raise ConfigurationError("JWT_SECRET is not configured")
        if len(secret.encode()) < MIN_SECRET_BYTES:
            raise ConfigurationError(
                f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes"
            )
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(f"Unsupported JWT algorithm: {algorithm}")
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._algorithm = algorithm
        self._expires_in = expires_in
        self._last_failure_log: dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenCodec:
        secret = settings.jwt_secret.get_secret_value() if settings.jwt_secret else None
        return cls(
            secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            algorithm=settings.jwt_algorithm,
            expires_in=settings.jwt_expires_seconds,
        )

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def issue(
        self,
        *,
        user_id: str,
        email: str,
        agency_id: str | None = None,
        agency_database: str | None = None,
        now: int | None = None,
    ) -> str:
        """Sign a session token.

        A token with no agency database marks a system-level session
        (``isSuperAdmin``).
        """
        issued_at = int(now if now is not None else time.time())
        payload: dict[str, Any] = {
            "userId": user_id,
            "email": email,
            "agencyId": agency_id,
            "agencyDatabase": agency_database,
            "isSuperAdmin": not agency_database,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": issued_at,
            "exp": issued_at + self._expires_in,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: object) -> SessionClaims | None:
        """Validate signature, algorithm, issuer, audience and expiry.

        Returns:
            The claims, or None for any invalid input. Never raises for a
            bad token.
        """
        if not isinstance(token, str) or not (
            MIN_TOKEN_LENGTH <= len(token) <= MAX_TOKEN_LENGTH
        ):
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.InvalidTokenError as exc:
            self._log_failure(exc)
            return None

        if not payload.get("userId") or not payload.get("email"):
            self._log_failure_reason("missing_identity_claims")
            return None
        try:
            return SessionClaims.from_payload(payload)
        except (TypeError, ValueError) as exc:
            self._log_failure(exc)
            return None

    def _log_failure(self, exc: Exception) -> None:
        self._log_failure_reason(type(exc).__name__)

    def _log_failure_reason(self, reason: str) -> None:
        # One line per failure type per interval; expired tokens arrive in bursts.
        now = time.monotonic()
        last = self._last_failure_log.get(reason)
        if last is not None and now - last < FAILURE_LOG_INTERVAL_SECONDS:
            return
        self._last_failure_log[reason] = now
        logger.warning("token_verification_failed", reason=reason)
