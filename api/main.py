"""
api/main.py -- FastAPI application entry point for Cosmos.

Exposes the permission engine and the vortex moderation workflow over HTTP.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the stores, the cache client and the role services on
startup and tears them down symmetrically on shutdown. Role registry
initialization is started in the background and never awaited here: the
first permission check awaits it instead.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import SimpleNamespace

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.invitations import router as invitations_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.settings import router as settings_router
from api.routes.v1.vortex import router as vortex_router
from auth.access import AccessControl
from auth.dependencies import get_current_user
from auth.models import User
from auth.permissions import PermissionChecker
from auth.refresh import RoleRefresher
from auth.registry import RoleRegistry
from auth.store import UserStore
from cache.store import CacheStore
from core.config import Settings, get_settings
from instance.service import InstanceSettings
from instance.store import SettingStore
from moderation.store import ModerationStore

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def configure_logging(settings: Settings) -> None:
    """Apply LOG_LEVEL globally, then switch DEBUG_NAMESPACES loggers to DEBUG."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for namespace in settings.debug_namespace_list():
        name = "cosmos" if namespace == "*" else namespace
        logging.getLogger(name).setLevel(logging.DEBUG)


configure_logging(get_settings())
logger = logging.getLogger("cosmos.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(
    state,
    settings: Settings,
    user_store: UserStore,
    moderation: ModerationStore,
    setting_store: SettingStore,
    cache: CacheStore,
) -> None:
    """Attach every shared service to app.state (or any attribute bag).

    Shared by the lifespan, the CLI and the test fixtures so all three wire
    the registry, checker and refresher identically.
    """
    state.user_store = user_store
    state.moderation = moderation
    state.setting_store = setting_store
    state.cache = cache
    state.instance_settings = InstanceSettings(
        setting_store,
        cache,
        ttl=settings.settings_cache_ttl,
        negative_ttl=settings.settings_negative_ttl,
    )
    state.registry = RoleRegistry(
        user_store,
        cache,
        access=AccessControl(),
        cache_ttl=settings.role_cache_ttl,
    )
    state.checker = PermissionChecker(
        state.registry,
        user_store,
        probing_enabled=settings.permission_probing_enabled,
    )
    state.refresher = RoleRefresher(
        state.registry,
        cache,
        lock_ttl_ms=settings.role_lock_ttl_ms,
        lock_retry_ms=settings.role_lock_retry_ms,
        lock_max_wait_ms=settings.role_lock_max_wait_ms,
    )


def services_from_settings(settings: Settings) -> SimpleNamespace:
    """Build a standalone service bag from configuration (CLI entry point)."""
    services = SimpleNamespace()
    build_services(
        services,
        settings,
        UserStore(settings.database_url),
        ModerationStore(settings.database_url),
        SettingStore(settings.database_url),
        CacheStore.from_url(settings.redis_url, prefix=settings.cache_prefix, socket_timeout=settings.redis_socket_timeout),
    )
    return services


async def shutdown_services(state) -> None:
    await state.registry.flush_backfills()
    await state.cache.close()
    state.moderation.close()
    state.setting_store.close()
    state.user_store.close()


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("Cosmos API starting up")
    build_services(
        app.state,
        settings,
        UserStore(settings.database_url),
        ModerationStore(settings.database_url),
        SettingStore(settings.database_url),
        CacheStore.from_url(settings.redis_url, prefix=settings.cache_prefix, socket_timeout=settings.redis_socket_timeout),
    )
    logger.info("Stores initialized (cache %s)", "enabled" if app.state.cache.enabled else "disabled")
    if not app.state.user_store.has_users():
        logger.warning("No users exist yet -- create one with: python main.py create-user <name> --role admin")
    app.state.registry.start_background_init()

    yield

    await shutdown_services(app.state)
    logger.info("Cosmos API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Cosmos API",
    description="Role-based permissions and the vortex moderation workflow.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(vortex_router, prefix="/api/v1", tags=["Vortex"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(invitations_router, prefix="/api/v1", tags=["Invitations"])
app.include_router(settings_router, prefix="/api/v1", tags=["Settings"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Cosmos API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Cosmos API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Invalid request parameters",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {code, message} dict detail
    (see api/errors.py). A dict detail is used directly as the error field;
    anything else is wrapped.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged server-side only; the client receives a
    generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database/cache component status."""
    components: dict[str, str] = {"app": "ok"}
    try:
        request.app.state.user_store.ping()
        request.app.state.moderation.ping()
        request.app.state.setting_store.ping()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"

    cache: CacheStore = request.app.state.cache
    if not cache.enabled:
        components["cache"] = "disabled"
    else:
        components["cache"] = "ok" if await cache.ping() else "error"

    components["roles"] = "ready" if request.app.state.registry.initialized else "initializing"
    status = "healthy" if components["database"] == "ok" and components["cache"] != "error" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
