"""
Health reporting for the dashboard backend.

`/status` reports real subsystem state:
- Database connectivity
- Background cache sync loop
- Trail stop monitor loop
- Response cache and request batcher
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from services.background_sync import get_background_sync_service
from services.trading212_service import get_trading212_service
from services.trail_stop_monitor import get_trail_stop_monitor
from storage.database import SessionLocal

logger = logging.getLogger(__name__)

SERVICE_NAME = "Trading212 Dashboard API"
APP_VERSION = "0.1.0"

_startup_time: float = time.monotonic()
_startup_utc: str = datetime.now(timezone.utc).isoformat()


def mark_startup() -> None:
    """Call once at startup to record the process start time."""
    global _startup_time, _startup_utc
    _startup_time = time.monotonic()
    _startup_utc = datetime.now(timezone.utc).isoformat()


def build_health_response() -> Dict[str, Any]:
    """
    Build the `/status` payload.

    Returns a dict with:
      status: "healthy" | "degraded" | "unhealthy"
      checks: per-subsystem status
      uptime_seconds: process uptime
    """
    checks: Dict[str, Dict[str, Any]] = {}
    degraded = False

    db_error = ""
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except SQLAlchemyError as exc:
        db_error = str(exc)[:200]
    checks["database"] = {
        "status": "down" if db_error else "up",
        "error": db_error or None,
    }

    sync = get_background_sync_service()
    sync_running = sync.is_running()
    checks["background_sync"] = {
        "status": "running" if sync_running else "stopped",
        "enabled": sync.enabled,
        "last_sync": sync.last_sync.isoformat() if sync.last_sync else None,
    }
    if sync.enabled and not sync_running and sync.last_sync is not None:
        degraded = True

    monitor = get_trail_stop_monitor()
    checks["trail_stop_monitor"] = {
        "status": "running" if monitor.is_running() else "stopped",
        "enabled": monitor.enabled,
    }

    service_health = get_trading212_service().health_check()
    checks["cache"] = {"status": "up", **service_health["cache"]}
    checks["batcher"] = {"status": "up", **service_health["batches"]}
    open_circuits = service_health["circuit_breakers"]["open"]
    checks["circuit_breakers"] = {
        "status": "degraded" if open_circuits else "up",
        "open": open_circuits,
    }
    if open_circuits:
        degraded = True

    if db_error:
        status = "unhealthy"
    elif degraded:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "service": SERVICE_NAME,
        "version": APP_VERSION,
        "uptime_seconds": round(time.monotonic() - _startup_time, 1),
        "started_at": _startup_utc,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
