"""HTTP middleware: preflight guard, request logging, body limit, rate limiting."""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from buildflow.api.errors import error_response
from buildflow.auth.rate_limiter import InMemoryRateLimiter

logger = structlog.get_logger()

UNMETERED_PATHS: frozenset[str] = frozenset({"/health", "/api/health"})


def client_ip(request: Request) -> str:
    """First ``X-Forwarded-For`` hop, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


class PreflightGuardMiddleware(BaseHTTPMiddleware):
    """Answer every OPTIONS request, even when something inside fails.

    Browsers abort the real request when a preflight errors, which turns a
    server-side hiccup into an opaque CORS failure on the client.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.method != "OPTIONS":
            return await call_next(request)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("preflight_failed", path=request.url.path)
            return Response(status_code=204)
        if response.status_code == 405:
            # No route declares OPTIONS.
            cors_headers = {
                k: v
                for k, v in response.headers.items()
                if k.startswith("access-control-") or k == "vary"
            }
            return Response(status_code=204, headers=cors_headers)
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log HTTP requests with method, path, status code, and latency."""

    SKIP_PATHS: frozenset[str] = frozenset(
        {"/health", "/docs", "/openapi.json", "/redoc"}
    )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request and log timing information."""
        structlog.contextvars.clear_contextvars()
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = int((time.perf_counter() - start) * 1000)

        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=latency_ms,
            client_ip=client_ip(request),
        )
        return response


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared body exceeds ``max_bytes`` with 413."""

    def __init__(self, app: ASGIApp, max_bytes: int) -> None:
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        declared = request.headers.get("content-length")
        if declared is not None:
            try:
                length = int(declared)
            except ValueError:
                return error_response(
                    400,
                    "INVALID_CONTENT_LENGTH",
                    "Content-Length header is not a number",
                    "Request failed",
                )
            if length > self.max_bytes:
                logger.warning(
                    "request_body_too_large",
                    path=request.url.path,
                    content_length=length,
                    max_bytes=self.max_bytes,
                )
                return error_response(
                    413,
                    "PAYLOAD_TOO_LARGE",
                    f"Request body exceeds {self.max_bytes} bytes",
                    "Request failed",
                )
        return await call_next(request)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding window limit for API traffic.

    OPTIONS requests and health probes are never counted.
    """

    def __init__(
        self,
        app: ASGIApp,
        limiter: InMemoryRateLimiter,
        path_prefix: str = "/api",
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.path_prefix = path_prefix

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if (
            request.method == "OPTIONS"
            or path in UNMETERED_PATHS
            or not path.startswith(self.path_prefix)
        ):
            return await call_next(request)

        ip = client_ip(request)
        decision = self.limiter.check(ip)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                client_ip=ip,
                policy=self.limiter.policy.name,
                path=path,
            )
            return error_response(
                429,
                "RATE_LIMITED",
                "Too many requests from this IP, please try again later",
                "Too many requests",
                headers=decision.headers(),
            )

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response
