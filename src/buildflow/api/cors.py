"""Origin matching for CORS.

Configured origins are compared loosely enough that a deployment listing
``https://example.com`` also serves ``https://www.example.com`` and
``https://example.com:443``.
"""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import urlsplit

import structlog
from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from buildflow.api.errors import error_response

logger = structlog.get_logger()

DEFAULT_PORTS = {"http": 80, "https": 443}
LOCAL_HOSTS: frozenset[str] = frozenset({"localhost", "127.0.0.1", "[::1]", "::1"})


def normalize_origin(origin: str) -> str:
    return origin.strip().lower().rstrip("/")


def _host_port(origin: str) -> tuple[str, int | None] | None:
    try:
        parts = urlsplit(normalize_origin(origin))
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    return parts.hostname, port if port is not None else DEFAULT_PORTS.get(parts.scheme)


def _strip_www(host: str) -> str:
    return host.removeprefix("www.")


class CorsOriginPolicy:
    """Decides whether a browser origin may call the API.

    Rules, first match wins:
        - exact match after normalization (lowercase, no trailing slash);
        - same host and port, default ports filled in from the scheme;
        - same hostname ignoring a leading ``www.``;
        - localhost origins, when ``allow_localhost`` is set.
    """

    def __init__(self, allowed: Iterable[str], *, allow_localhost: bool = False) -> None:
        self._exact = {normalize_origin(o) for o in allowed if o.strip()}
        self._host_ports = {hp for o in self._exact if (hp := _host_port(o)) is not None}
        self._hosts = {_strip_www(host) for host, _ in self._host_ports}
        self._allow_localhost = allow_localhost

    def is_allowed(self, origin: str | None) -> bool:
        if not origin:
            # Same-origin and non-browser callers send no Origin.
            return True
        normalized = normalize_origin(origin)
        if normalized in self._exact:
            return True
        host_port = _host_port(normalized)
        if host_port is None:
            return False
        if host_port in self._host_ports:
            return True
        host = host_port[0]
        if _strip_www(host) in self._hosts:
            return True
        return self._allow_localhost and host in LOCAL_HOSTS


class AgencyCORSMiddleware(CORSMiddleware):
    """Starlette CORS handling with :class:`CorsOriginPolicy` origin checks."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        policy: CorsOriginPolicy,
        allow_methods: Iterable[str] = ("GET",),
        allow_headers: Iterable[str] = (),
        allow_credentials: bool = False,
        expose_headers: Iterable[str] = (),
        max_age: int = 600,
    ) -> None:
        super().__init__(
            app,
            allow_origins=(),
            allow_methods=allow_methods,
            allow_headers=allow_headers,
            allow_credentials=allow_credentials,
            expose_headers=expose_headers,
            max_age=max_age,
        )
        self.policy = policy

    def is_allowed_origin(self, origin: str) -> bool:
        return self.policy.is_allowed(origin)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Answer 403 to non-preflight requests from a disallowed origin.

        The app behind this middleware never sees them.
        """
        if scope["type"] == "http" and scope["method"] != "OPTIONS":
            origin = Headers(scope=scope).get("origin")
            if origin and not self.policy.is_allowed(origin):
                logger.warning(
                    "cors_origin_denied", origin=origin, path=scope.get("path")
                )
                response = error_response(
                    403,
                    "CORS_ORIGIN_DENIED",
                    "Origin is not allowed",
                    "Access denied",
                )
                await response(scope, receive, send)
                return
        await super().__call__(scope, receive, send)
