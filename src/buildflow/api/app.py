"""FastAPI application with lifespan management."""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from buildflow.api.cors import AgencyCORSMiddleware, CorsOriginPolicy
from buildflow.api.errors import register_exception_handlers
from buildflow.api.middleware import (
    BodySizeLimitMiddleware,
    PreflightGuardMiddleware,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
)
from buildflow.api.routes.agencies import router as agencies_router
from buildflow.api.routes.auth import router as auth_router
from buildflow.api.routes.system import router as system_router
from buildflow.auth.rate_limiter import InMemoryRateLimiter, RateLimitPolicy
from buildflow.auth.rbac import RoleAuthorizer
from buildflow.auth.resolver import AgencyResolver
from buildflow.auth.tokens import TokenCodec
from buildflow.config import Settings, settings
from buildflow.errors import DataAccessError
from buildflow.logging_config import configure_logging
from buildflow.storage.pool_manager import PoolManager

logger = structlog.get_logger()

RATE_LIMIT_CLEANUP_INTERVAL_SECONDS = 300
HEALTH_CHECK_TIMEOUT = 5.0

# Built at import so middleware can hold them; counts live only in memory.
api_rate_limiter = InMemoryRateLimiter(
    RateLimitPolicy(
        name="api",
        limit=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
)
auth_rate_limiter = InMemoryRateLimiter(
    RateLimitPolicy(
        name="auth",
        limit=settings.rate_limit_auth_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
)


async def _periodic(
    name: str, interval: float, job: Callable[[], Awaitable[int]]
) -> None:
    """Run ``job`` every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await job()
            if removed:
                logger.debug(f"{name}_cleanup", removed=removed)
        except Exception:
            logger.exception(f"{name}_cleanup_error")


async def _cleanup_rate_limiters() -> int:
    removed = 0
    for limiter in (api_rate_limiter, auth_rate_limiter):
        removed += await asyncio.to_thread(limiter.cleanup)
    return removed


def build_state(app: FastAPI, config: Settings) -> PoolManager:
    """Construct the shared collaborators and attach them to ``app.state``.

    Raises:
        ConfigurationError: signing secret missing or too weak.
    """
    codec = TokenCodec.from_settings(config)
    pools = PoolManager.from_settings(config)
    app.state.pool_manager = pools
    app.state.token_codec = codec
    app.state.agency_resolver = AgencyResolver(pools, ttl=config.agency_cache_ttl_seconds)
    app.state.role_authorizer = RoleAuthorizer(pools)
    app.state.api_rate_limiter = api_rate_limiter
    app.state.auth_rate_limiter = auth_rate_limiter
    return pools


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application startup and shutdown.

    Startup:
        - Build the pool manager, token codec, resolver and authorizer.
          Refuses to start without a usable signing secret.
        - Start pool eviction and rate limiter cleanup tasks.
    Shutdown:
        - Cancel cleanup tasks.
        - Drain and close every pool within the shutdown timeout.
    """
    configure_logging(
        environment=str(settings.environment),
        log_level=settings.log_level,
    )
    pools = build_state(app, settings)

    tasks = [
        asyncio.create_task(
            _periodic(
                "pool",
                settings.pool_cleanup_interval_seconds,
                pools.evict_idle_pools,
            )
        ),
        asyncio.create_task(
            _periodic(
                "rate_limiter",
                RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
                _cleanup_rate_limiters,
            )
        ),
    ]

    logger.info(
        "app_started",
        environment=str(settings.environment),
        main_database=pools.main_database_name,
    )
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await pools.close_all(timeout=settings.pool_shutdown_timeout_seconds)
        logger.info("app_stopped")


app = FastAPI(
    title="BuildFlow",
    description="Multi-tenant agency routing, authentication and access control",
    version="0.1.0",
    lifespan=lifespan,
    debug=settings.is_dev,
)

# Outermost last: PreflightGuard -> RequestLogging -> CORS -> BodySizeLimit
# -> RateLimit -> routes.
app.add_middleware(RateLimitMiddleware, limiter=api_rate_limiter)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)
app.add_middleware(
    AgencyCORSMiddleware,
    policy=CorsOriginPolicy(
        settings.cors_allowed_origins,
        allow_localhost=settings.is_dev,
    ),
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
    expose_headers=["RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset"],
    max_age=settings.cors_max_age,
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(PreflightGuardMiddleware)

register_exception_handlers(app)


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """Deep health check: verifies main database connectivity."""
    checks: dict[str, str] = {}
    overall = "ok"

    pools: PoolManager = request.app.state.pool_manager
    try:
        await asyncio.wait_for(
            pools.get_main_pool().ping(),
            timeout=HEALTH_CHECK_TIMEOUT,
        )
        checks["db"] = "ok"
    except (TimeoutError, DataAccessError) as e:
        logger.warning("health_check_db_error", error=type(e).__name__)
        checks["db"] = f"error: {type(e).__name__}"
        overall = "degraded"

    status_code = 200 if overall == "ok" else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": overall,
            "checks": checks,
            "pools": len(pools),
            "timestamp": datetime.now(UTC).isoformat(timespec="seconds"),
        },
    )


app.include_router(auth_router, prefix="/api")
app.include_router(agencies_router, prefix="/api")
app.include_router(system_router, prefix="/api")
