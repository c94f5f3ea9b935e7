"""
Trading212 Dashboard FastAPI Backend
Main application entry point.

Production features:
- Real health check with subsystem status
- Request correlation IDs for log tracing
- Structured JSON logging plus rotating log files
- Rate limiting per endpoint
- Graceful shutdown with in-flight request draining
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
import uvicorn

from api.routes import (
    router as api_router,
    start_background_sync,
    stop_background_sync,
    start_trail_stop_monitor,
    stop_trail_stop_monitor,
)
from api.middleware import (
    api_key_auth_middleware,
    begin_shutdown,
    clear_shutdown,
    correlation_id_middleware,
    configure_structured_logging,
    limiter,
    rate_limit_exceeded_handler,
    shutdown_rejection_middleware,
    write_logging_middleware,
)
from api.health import SERVICE_NAME, APP_VERSION, build_health_response, mark_startup
from config.settings import get_settings
from services.logging_service import cleanup_old_files, configure_file_logging
from storage.database import init_db

logger = logging.getLogger(__name__)


def _parse_bool_like(value: str | None) -> bool | None:
    raw = str(value or "").strip().lower()
    if not raw:
        return None
    if raw in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if raw in {"0", "false", "f", "no", "n", "off"}:
        return False
    return None


def _resolve_backend_reload_enabled() -> bool:
    """Auto-reload is opt-in through T212_BACKEND_RELOAD."""
    return bool(_parse_bool_like(os.getenv("T212_BACKEND_RELOAD")))


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    """Manage background service lifecycle with graceful shutdown."""
    settings = get_settings()
    configure_structured_logging(settings.log_level)
    try:
        log_dir = configure_file_logging(settings.log_directory)
        removed = cleanup_old_files(str(log_dir), settings.log_retention_days)
        if removed:
            logger.info("Removed %d expired log files", removed)
    except OSError:
        logger.warning("File logging unavailable, continuing with console logging", exc_info=True)
    clear_shutdown()
    mark_startup()
    logger.info("Trading212 dashboard backend starting up (env=%s)", settings.environment)

    # ── Database init ────────────────────────────────────────────────────
    try:
        init_db()
        logger.info("Database initialized successfully")
    except (RuntimeError, ValueError, TypeError):
        logger.exception("Failed to initialize database schema")
        raise

    # ── Startup validation ───────────────────────────────────────────────
    if settings.environment == "production" and not settings.api_auth_key:
        logger.warning(
            "Production environment detected but T212_API_KEY is not set. "
            "API authentication is disabled."
        )

    # ── Start background services ────────────────────────────────────────
    try:
        if start_background_sync():
            logger.info("Background cache sync started")
    except (RuntimeError, ValueError, TypeError):
        logger.exception("Failed to start background cache sync")
    try:
        if start_trail_stop_monitor():
            logger.info("Trail stop monitor started")
    except (RuntimeError, ValueError, TypeError):
        logger.exception("Failed to start trail stop monitor")

    try:
        yield
    finally:
        # ── Graceful shutdown sequence ───────────────────────────────────
        logger.info("Initiating graceful shutdown...")
        begin_shutdown()

        try:
            if await stop_trail_stop_monitor():
                logger.info("Trail stop monitor stopped")
        except (RuntimeError, ValueError, TypeError):
            logger.exception("Failed to stop trail stop monitor")

        try:
            if await stop_background_sync():
                logger.info("Background cache sync stopped")
        except (RuntimeError, ValueError, TypeError):
            logger.exception("Failed to stop background cache sync")

        # Allow in-flight requests to drain
        await asyncio.sleep(0.5)
        logger.info("Graceful shutdown complete")


app = FastAPI(
    title=SERVICE_NAME,
    description="Aggregation backend for Trading212 portfolio dashboards",
    version=APP_VERSION,
    lifespan=_lifespan,
    openapi_tags=[
        {"name": "Accounts", "description": "Linked Trading212 accounts"},
        {"name": "Dashboard", "description": "Cached, batched and rate-limited account data"},
        {"name": "Trail Stops", "description": "Trail stop orders and monitoring"},
        {"name": "Notifications", "description": "In-app notifications"},
        {"name": "Daily P/L", "description": "Daily P/L snapshots"},
    ],
)

# ── Rate Limiter ─────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Compress responses >= 500 bytes
app.add_middleware(GZipMiddleware, minimum_size=500)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "capacitor://localhost"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Registered innermost first; the correlation ID middleware ends up outermost.
@app.middleware("http")
async def _shutdown_rejection(request: Request, call_next):
    return await shutdown_rejection_middleware(request, call_next)


@app.middleware("http")
async def _write_logging(request: Request, call_next):
    return await write_logging_middleware(request, call_next)


@app.middleware("http")
async def _api_key_auth(request: Request, call_next):
    return await api_key_auth_middleware(request, call_next)


@app.middleware("http")
async def _correlation_id(request: Request, call_next):
    return await correlation_id_middleware(request, call_next)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": SERVICE_NAME}


@app.get("/status")
async def status():
    """
    Production health check endpoint.
    Reports real subsystem status: database, background sync, trail stop monitor, cache.
    """
    return build_health_response()


# Include API routes
app.include_router(api_router)


if __name__ == "__main__":
    reload_enabled = _resolve_backend_reload_enabled()
    logger.info("Backend bootstrap: uvicorn reload=%s", reload_enabled)
    uvicorn.run(
        "app:app",
        host="127.0.0.1",
        port=8000,
        reload=reload_enabled,
    )
