"""
HTTP middleware for the Trading212 dashboard API.

Provides:
- Request correlation IDs and timing logs
- Structured JSON log formatting
- Inbound rate limiting (slowapi)
- Optional API-key authentication
- Redacted write-request logging
- Write rejection during graceful shutdown
"""
import json
import logging
import secrets
import threading
import time
import uuid
from contextvars import ContextVar
from typing import Any, Awaitable, Callable

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config.settings import get_settings

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
SENSITIVE_KEYS = {"api_key", "apikey", "password", "token", "authorization", "x-api-key"}
AUTH_SKIP_PATHS = {"/", "/status", "/openapi.json", "/docs", "/docs/oauth2-redirect", "/redoc"}

# ── Correlation ID context ───────────────────────────────────────────────────
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Get the current request correlation ID."""
    return request_id_ctx.get("")


# ── Inbound rate limiter ─────────────────────────────────────────────────────
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["120/minute"],
    storage_uri="memory://",
)


def rate_limit_exceeded_handler(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": f"Rate limit exceeded: {exc.detail}",
            "retry_after": str(getattr(exc, "retry_after", 60)),
        },
    )


# ── Shutdown state ───────────────────────────────────────────────────────────
_shutdown_event = threading.Event()


def begin_shutdown() -> None:
    _shutdown_event.set()


def clear_shutdown() -> None:
    _shutdown_event.clear()


def is_shutting_down() -> bool:
    return _shutdown_event.is_set()


# ── Correlation ID + timing ──────────────────────────────────────────────────
async def correlation_id_middleware(request: Request, call_next: CallNext) -> Response:
    """
    Attach a correlation ID to every request.
    - Reuses an inbound X-Request-ID or generates one
    - Echoes it as the X-Request-ID response header
    - Logs request timing
    """
    rid = request.headers.get("x-request-id", "").strip()
    if not rid:
        rid = uuid.uuid4().hex[:16]
    token = request_id_ctx.set(rid)
    start = time.monotonic()
    try:
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = rid
        log_level = logging.DEBUG if request.method == "GET" else logging.INFO
        logger.log(
            log_level,
            "req=%s method=%s path=%s status=%d duration_ms=%.1f",
            rid,
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response
    except Exception:
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.exception(
            "req=%s method=%s path=%s duration_ms=%.1f unhandled_exception",
            rid,
            request.method,
            request.url.path,
            elapsed_ms,
        )
        raise
    finally:
        request_id_ctx.reset(token)


# ── API-key auth ─────────────────────────────────────────────────────────────
def auth_required() -> bool:
    """Auth is enforced when enabled explicitly or when a key is configured."""
    settings = get_settings()
    if settings.api_auth_enabled:
        return True
    return bool(settings.api_auth_key and settings.api_auth_key.strip())


def extract_api_key(request: Request) -> str:
    """Read the key from X-API-Key or a Bearer token."""
    direct_key = request.headers.get("x-api-key", "").strip()
    if direct_key:
        return direct_key
    auth_header = request.headers.get("authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return ""


def should_skip_auth(path: str) -> bool:
    if path in AUTH_SKIP_PATHS:
        return True
    return path.startswith(("/docs", "/redoc", "/openapi"))


async def api_key_auth_middleware(request: Request, call_next: CallNext) -> Response:
    if request.method == "OPTIONS" or should_skip_auth(request.url.path) or not auth_required():
        return await call_next(request)

    expected_key = (get_settings().api_auth_key or "").strip()
    if not expected_key:
        return JSONResponse(
            status_code=503,
            content={"detail": "API auth is enabled but T212_API_KEY is not configured"},
        )

    provided_key = extract_api_key(request)
    if not provided_key or not secrets.compare_digest(provided_key, expected_key):
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
    return await call_next(request)


# ── Write logging ────────────────────────────────────────────────────────────
def redact_payload(value: Any) -> Any:
    """Mask sensitive keys at any depth."""
    if isinstance(value, dict):
        return {
            key: "***REDACTED***" if str(key).lower() in SENSITIVE_KEYS else redact_payload(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_payload(item) for item in value]
    return value


async def write_logging_middleware(request: Request, call_next: CallNext) -> Response:
    if request.method in WRITE_METHODS:
        query_payload = dict(request.query_params.items())
        logger.info("HTTP %s %s query=%s", request.method, request.url.path, redact_payload(query_payload))
    return await call_next(request)


# ── Shutdown rejection ───────────────────────────────────────────────────────
async def shutdown_rejection_middleware(request: Request, call_next: CallNext) -> Response:
    """Reject new writes while the app is shutting down."""
    if is_shutting_down() and request.method in WRITE_METHODS and request.url.path not in {"/", "/status"}:
        return JSONResponse(
            status_code=503,
            content={"detail": "Server is shutting down. Please retry shortly."},
        )
    return await call_next(request)


# ── Structured JSON formatter ────────────────────────────────────────────────
class StructuredFormatter(logging.Formatter):
    """JSON log lines carrying the request correlation ID when present."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get("")
        if rid:
            payload["request_id"] = rid
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Switch every root handler to JSON formatting, adding a console handler
    when none exists.
    """
    root = logging.getLogger()
    level = getattr(logging, log_level.upper(), logging.INFO)
    root.setLevel(level)

    formatter = StructuredFormatter()
    for handler in root.handlers:
        handler.setFormatter(formatter)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in root.handlers):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        root.addHandler(console)
