"""
API Routes.
Defines the REST endpoints of the Trading212 dashboard backend.
"""
from datetime import date, datetime, timedelta, timezone
import asyncio
import logging
import math
import time
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from typing import Any, Dict, List, Optional, Tuple
import httpx
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from config.settings import get_settings
from integrations.trading212_client import Trading212Client, Trading212Error, default_client_factory
from services.api_batcher import AccountRef
from services.api_cache import CACHE_TTL_SECONDS
from services.background_sync import get_background_sync_service
from services.portfolio_stats import aggregate_account_stats
from services.trading212_service import CircuitOpenError, get_trading212_service
from services.trail_stop_monitor import get_trail_stop_monitor
from storage.database import get_db
from storage.models import DailyPnL, Notification, Trading212Account, TrailStopOrder, User
from storage.service import StorageService

from .middleware import limiter
from .models import (
    MessageResponse,
    # Accounts
    AccountCreateRequest,
    AccountUpdateRequest,
    AccountResponse,
    AccountsResponse,
    AccountMutationResponse,
    # Trail stops
    TrailStopOrderCreateRequest,
    TrailStopOrderUpdateRequest,
    TrailStopOrderResponse,
    TrailStopOrdersResponse,
    TrailStopOrderMutationResponse,
    TrailStopOrderDetailResponse,
    MonitorRunResponse,
    # Notifications
    NotificationCreateRequest,
    NotificationUpdateRequest,
    NotificationResponse,
    NotificationsResponse,
    NotificationMutationResponse,
    # Daily P/L
    DailyPnLCaptureRequest,
    DailyPnLRecord,
    DailyPnLResponse,
    DailyPnLSummary,
    DayPnL,
    # User
    ConnectionAccount,
    ConnectionStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_API_KEY_LENGTH = 30
UPSTREAM_HEALTH_TIMEOUT_SECONDS = 5.0
UPSTREAM_ERRORS = (Trading212Error, httpx.HTTPError)


# ============================================================================
# Dependencies and helpers
# ============================================================================

def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the acting user from the X-User-Id header."""
    raw = (x_user_id or "").strip()
    try:
        user_id = int(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = StorageService(db).get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _new_client(api_key: str, is_practice: bool) -> Trading212Client:
    return default_client_factory(api_key, is_practice)


def _api_key_preview(api_key: Optional[str]) -> Optional[str]:
    if not api_key:
        return None
    return f"{api_key[:8]}...{api_key[-4:]}"


def _account_to_response(account: Trading212Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        name=account.name,
        is_practice=account.is_practice,
        is_active=account.is_active,
        is_default=account.is_default,
        currency=account.currency,
        cash=account.cash,
        last_connected=account.last_connected,
        last_error=account.last_error,
        api_key_preview=_api_key_preview(account.api_key),
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _order_to_response(order: TrailStopOrder) -> TrailStopOrderResponse:
    return TrailStopOrderResponse(
        id=order.id,
        account_id=order.account_id,
        symbol=order.symbol,
        quantity=order.quantity,
        trail_amount=order.trail_amount,
        trail_percent=order.trail_percent,
        stop_price=order.stop_price,
        is_active=order.is_active,
        is_practice=order.is_practice,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _notification_to_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        type=notification.type,
        title=notification.title,
        message=notification.message,
        data=notification.data,
        is_read=notification.is_read,
        created_at=notification.created_at,
    )


def _daily_pnl_to_record(row: DailyPnL) -> DailyPnLRecord:
    return DailyPnLRecord(
        id=row.id,
        account_id=row.account_id,
        date=row.date,
        total_pnl=row.total_pnl,
        today_pnl=row.today_pnl,
        total_value=row.total_value,
        cash=row.cash,
        currency=row.currency,
        positions=row.positions,
    )


def _account_ref(account: Trading212Account) -> AccountRef:
    return AccountRef(id=account.id, api_key=account.api_key, is_practice=account.is_practice, name=account.name)


def _account_info(account: Trading212Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "name": account.name,
        "is_practice": account.is_practice,
        "is_default": account.is_default,
    }


def _rate_limited_response(user_id: int, account_id: int) -> JSONResponse:
    wait_seconds = get_trading212_service().get_time_until_reset(user_id, account_id)
    return JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded", "retry_after": math.ceil(wait_seconds), "connected": True},
    )


def _resolve_data_account(storage: StorageService, user_id: int,
                          account_id: Optional[int]) -> Optional[Trading212Account]:
    """Explicit account (404 if not the user's), else default active, else any active."""
    if account_id is not None:
        account = storage.get_account(user_id, account_id)
        if account is None:
            raise HTTPException(status_code=404, detail="Account not found")
        return account
    return storage.resolve_target_account(user_id)


async def _probe_api_key(api_key: str, is_practice: bool) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Validate a key and read its account summary.

    Returns:
        (account summary or None, connection error or None)
    """
    client = _new_client(api_key, is_practice)
    try:
        is_valid = await client.validate_connection()
    except UPSTREAM_ERRORS as exc:
        logger.error("Connection test failed: %s", exc)
        return None, str(exc) or "Connection failed"
    if not is_valid:
        return None, "Invalid API key or connection failed"
    try:
        return await client.get_account(), None
    except (Trading212Error, httpx.HTTPError, ValueError) as exc:
        logger.warning("Key is valid but account summary could not be fetched: %s", exc)
        return None, None


def _summary_metadata(summary: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(summary, dict):
        return {}
    upstream_id = summary.get("id")
    return {
        "currency": summary.get("currencyCode"),
        "cash": summary.get("cash") if isinstance(summary.get("cash"), (int, float)) else None,
        "account_id": str(upstream_id) if upstream_id is not None else None,
    }


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Background jobs
# ============================================================================

def start_background_sync() -> bool:
    """Start the periodic cache sync (idempotent)."""
    return get_background_sync_service().start()


async def stop_background_sync() -> bool:
    """Stop the periodic cache sync (idempotent)."""
    return await get_background_sync_service().stop()


def start_trail_stop_monitor() -> bool:
    """Start the periodic trail stop monitor (idempotent)."""
    return get_trail_stop_monitor().start()


async def stop_trail_stop_monitor() -> bool:
    """Stop the periodic trail stop monitor (idempotent)."""
    return await get_trail_stop_monitor().stop()


# ============================================================================
# Trading212 Accounts
# ============================================================================

@router.get("/trading212/accounts", response_model=AccountsResponse)
async def list_accounts(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """List linked accounts, default first then oldest first. API keys are masked."""
    storage = StorageService(db)
    return AccountsResponse(accounts=[_account_to_response(acc) for acc in storage.list_accounts(user.id)])


@router.post("/trading212/accounts", response_model=AccountMutationResponse)
async def create_account(
    request: AccountCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Link a Trading212 account.

    The key is validated upstream; a failed validation still stores the
    account with its error recorded.
    """
    name = (request.name or "").strip()
    api_key = (request.api_key or "").strip()
    if not name or not api_key:
        raise HTTPException(status_code=400, detail="Account name and API key are required")
    if len(api_key) < MIN_API_KEY_LENGTH:
        raise HTTPException(status_code=400, detail="API key appears to be too short. Please check your key.")

    storage = StorageService(db)
    if storage.accounts.get_by_name(user.id, name):
        raise HTTPException(status_code=400, detail="Account name already exists. Please choose a different name.")

    logger.info("Testing API key for new account: %s", name)
    summary, connection_error = await _probe_api_key(api_key, request.is_practice)

    account = storage.create_account(
        user_id=user.id,
        name=name,
        api_key=api_key,
        is_practice=request.is_practice,
        make_default=request.is_default,
        last_connected=None if connection_error else _utcnow_naive(),
        last_error=connection_error,
        **_summary_metadata(summary),
    )
    message = (
        f"Account added but connection failed: {connection_error}"
        if connection_error else "Account added successfully"
    )
    return AccountMutationResponse(account=_account_to_response(account), message=message)


@router.get("/trading212/accounts/{account_id}")
async def get_account(account_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    account = StorageService(db).get_account(user.id, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return {"account": _account_to_response(account)}


@router.put("/trading212/accounts/{account_id}", response_model=AccountMutationResponse)
async def update_account(
    account_id: int,
    request: AccountUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Partially update an account; a changed API key is re-validated."""
    storage = StorageService(db)
    account = storage.get_account(user.id, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")

    changes: Dict[str, Any] = {}
    name = (request.name or "").strip()
    if name and name != account.name:
        existing = storage.accounts.get_by_name(user.id, name)
        if existing is not None and existing.id != account.id:
            raise HTTPException(
                status_code=400, detail="Account name already exists. Please choose a different name."
            )
        changes["name"] = name

    connection_error: Optional[str] = None
    api_key = (request.api_key or "").strip()
    key_changed = bool(api_key) and api_key != account.api_key
    if key_changed:
        if len(api_key) < MIN_API_KEY_LENGTH:
            raise HTTPException(status_code=400, detail="API key appears to be too short. Please check your key.")
        is_practice = request.is_practice if request.is_practice is not None else account.is_practice
        logger.info("Testing updated API key for account: %s", account.name)
        summary, connection_error = await _probe_api_key(api_key, is_practice)
        changes["api_key"] = api_key
        changes["last_error"] = connection_error
        if connection_error is None:
            changes["last_connected"] = _utcnow_naive()
        changes.update(_summary_metadata(summary))

    if request.is_practice is not None:
        changes["is_practice"] = request.is_practice
    if request.is_active is not None:
        changes["is_active"] = request.is_active
    if request.is_default is not None:
        changes["is_default"] = request.is_default

    account = storage.update_account(account, **changes)
    if key_changed or "is_practice" in changes:
        get_trading212_service().invalidate_cache(user.id, account.id)

    message = (
        f"Account updated but connection failed: {connection_error}"
        if connection_error else "Account updated successfully"
    )
    return AccountMutationResponse(account=_account_to_response(account), message=message)


@router.delete("/trading212/accounts/{account_id}", response_model=MessageResponse)
async def delete_account(account_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Hard delete an account; the first remaining account inherits the default flag."""
    storage = StorageService(db)
    account = storage.get_account(user.id, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    deleted_id = account.id
    storage.delete_account(account)
    get_trading212_service().invalidate_cache(user.id, deleted_id)
    return MessageResponse(message="Account deleted successfully")


@router.post("/trading212/accounts/{account_id}/set-default", response_model=AccountMutationResponse)
async def set_default_account(account_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = StorageService(db)
    account = storage.get_account(user.id, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    if not account.is_active:
        raise HTTPException(status_code=400, detail="Cannot set inactive account as default")
    account = storage.set_default_account(account)
    return AccountMutationResponse(
        account=_account_to_response(account), message="Default account updated successfully"
    )


@router.post("/trading212/connect")
async def connect_deprecated():
    return JSONResponse(
        status_code=410,
        content={
            "error": "This endpoint is deprecated. Please use POST /trading212/accounts instead.",
            "migration": {
                "old_endpoint": "/trading212/connect",
                "new_endpoint": "/trading212/accounts",
                "required_fields": ["name", "api_key"],
                "optional_fields": ["is_practice", "is_default"],
            },
        },
    )


@router.delete("/trading212/connect")
async def disconnect_deprecated():
    return JSONResponse(
        status_code=410,
        content={
            "error": "This endpoint is deprecated. Please use DELETE /trading212/accounts/{account_id} instead.",
            "migration": {
                "old_endpoint": "DELETE /trading212/connect",
                "new_endpoint": "DELETE /trading212/accounts/{account_id}",
                "note": "Use the specific account ID to delete individual accounts",
            },
        },
    )


# ============================================================================
# Optimized Trading212 Data
# ============================================================================

@router.get("/trading212/optimized/account")
async def get_optimized_account(
    account_id: Optional[int] = Query(default=None),
    include_orders: bool = Query(default=False),
    force_refresh: bool = Query(default=False),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Dashboard data for one account, served cache-first."""
    storage = StorageService(db)
    account = _resolve_data_account(storage, user.id, account_id)
    if account is None:
        return JSONResponse(
            status_code=400,
            content={"error": "No Trading212 accounts configured", "connected": False},
        )

    service = get_trading212_service()
    if not service.can_make_request(user.id, account.id):
        return _rate_limited_response(user.id, account.id)

    try:
        if force_refresh:
            data = await service.force_refresh_account_data(
                user.id, account.id, account.api_key, account.is_practice, include_orders
            )
        else:
            data = await service.get_account_data(
                user.id, account.id, account.api_key, account.is_practice, include_orders
            )
    except CircuitOpenError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except UPSTREAM_ERRORS as exc:
        logger.error("Optimized account data error for account %s: %s", account.id, exc)
        raise HTTPException(status_code=500, detail="Failed to fetch account data")

    return {
        **data,
        "account_info": _account_info(account),
        "connected": True,
        "cache_stats": {"cache_hit": data.get("cache_hit", False), "last_updated": data.get("last_updated")},
    }


@router.get("/trading212/optimized/portfolio")
async def get_optimized_portfolio(
    account_id: Optional[int] = Query(default=None),
    force_refresh: bool = Query(default=False),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Positions with portfolio totals for one account."""
    storage = StorageService(db)
    account = _resolve_data_account(storage, user.id, account_id)
    if account is None:
        return JSONResponse(
            status_code=400,
            content={"error": "No Trading212 accounts configured", "connected": False},
        )

    service = get_trading212_service()
    if not service.can_make_request(user.id, account.id):
        return _rate_limited_response(user.id, account.id)

    if force_refresh:
        service.invalidate_cache(user.id, account.id, "portfolio")
    try:
        data = await service.get_portfolio_data(user.id, account.id, account.api_key, account.is_practice)
    except CircuitOpenError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except UPSTREAM_ERRORS as exc:
        logger.error("Optimized portfolio error for account %s: %s", account.id, exc)
        raise HTTPException(status_code=500, detail="Failed to fetch portfolio data")

    return {
        "positions": data["positions"],
        "total_value": data["total_value"],
        "total_pnl": data["total_pnl"],
        "total_pnl_percent": data["total_pnl_percent"],
        "currency": data["currency"],
        "account_info": _account_info(account),
        "connected": True,
        "cache_stats": {"cache_hit": data.get("cache_hit", False), "last_updated": data.get("last_updated")},
    }


@router.get("/trading212/optimized/multi-account")
async def get_optimized_multi_account(
    include_orders: bool = Query(default=False),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Per-account data for every active account plus aggregated totals."""
    storage = StorageService(db)
    accounts = storage.list_accounts(user.id, active_only=True)
    trail_stop_count = storage.trail_stop_orders.count_active_for_user(user.id)

    if not accounts:
        totals = aggregate_account_stats([])
        totals["trail_stop_orders"] = trail_stop_count
        return {
            "accounts": [],
            "aggregated_stats": totals,
            "connected": False,
            "error": "No Trading212 accounts configured",
        }

    try:
        results = await get_trading212_service().get_multi_account_data(
            user.id, [_account_ref(acc) for acc in accounts], include_orders
        )
    except UPSTREAM_ERRORS as exc:
        logger.error("Optimized multi-account error for user %s: %s", user.id, exc)
        raise HTTPException(status_code=500, detail="Failed to fetch multi-account data")

    names = {acc.id: acc.name for acc in accounts}
    totals = aggregate_account_stats(results)
    totals["trail_stop_orders"] = trail_stop_count
    return {
        "accounts": [
            {
                "id": result["account_id"],
                "name": names.get(result["account_id"], "Unknown"),
                "data": result["data"],
                "error": result["error"],
                "cache_hit": result["cache_hit"],
            }
            for result in results
        ],
        "aggregated_stats": totals,
        "connected": any(result["data"] and not result["error"] for result in results),
        "cache_stats": {
            "total_cache_hits": sum(1 for result in results if result["cache_hit"]),
            "total_accounts": len(results),
        },
    }


@router.get("/trading212/optimized/accounts")
async def get_optimized_accounts(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    accounts = StorageService(db).list_accounts(user.id, active_only=True)
    return {
        "accounts": [_account_to_response(acc) for acc in accounts],
        "total": len(accounts),
        "has_active_accounts": bool(accounts),
    }


async def _warm_account(user_id: int, account: AccountRef) -> None:
    try:
        await get_trading212_service().get_account_data(user_id, account.id, account.api_key, account.is_practice)
        logger.info("Cache warmed for account %s", account.id)
    except UPSTREAM_ERRORS as exc:
        logger.warning("Cache warming failed for account %s: %s", account.id, exc)


@router.post("/trading212/warm-cache")
@limiter.limit("10/minute")
async def warm_cache(
    request: Request,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Schedule background fetches that prime the cache for every active account."""
    accounts = StorageService(db).list_accounts(user.id, active_only=True)
    if not accounts:
        raise HTTPException(status_code=404, detail="No Trading212 accounts found")

    results = []
    for account in accounts:
        logger.info("Warming cache for account %s (%s)", account.id, account.name)
        background_tasks.add_task(_warm_account, user.id, _account_ref(account))
        results.append({"account_id": account.id, "name": account.name, "status": "warming_started"})
    return {
        "message": "Cache warming initiated",
        "accounts": results,
        "total": len(results),
        "initiated": sum(1 for result in results if result["status"] == "warming_started"),
    }


@router.get("/trading212/warm-cache")
async def warm_cache_info(user: User = Depends(get_current_user)):
    return {
        "status": "ready",
        "message": "Cache warming endpoint is available",
        "usage": "POST to this endpoint to warm caches for all accounts",
    }


@router.get("/trading212/health")
async def trading212_health(user: User = Depends(get_current_user)):
    """Probe the demo API with the configured test key."""
    settings = get_settings()
    client = _new_client(settings.trading212_test_api_key, True)
    started = time.monotonic()
    error: Optional[str] = None
    try:
        is_valid = await asyncio.wait_for(client.validate_connection(), timeout=UPSTREAM_HEALTH_TIMEOUT_SECONDS)
        status = "healthy" if is_valid else "degraded"
    except asyncio.TimeoutError:
        status = "unhealthy"
        error = "Health check timeout"
    except UPSTREAM_ERRORS as exc:
        status = "unhealthy"
        error = str(exc) or "Unknown error"
    response_time_ms = round((time.monotonic() - started) * 1000, 1)

    recommendations = {
        "healthy": "API is responding normally",
        "degraded": "API is slow but functional - expect delays",
        "unhealthy": "API is experiencing issues - serving cached data when possible",
    }
    payload: Dict[str, Any] = {
        "status": status,
        "response_time_ms": response_time_ms,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "recommendation": recommendations[status],
    }
    if error:
        payload["error"] = error
    return JSONResponse(status_code=503 if status == "unhealthy" else 200, content=payload)


def _optimization_recommendations(cache_stats: Dict[str, int], batch_stats: Dict[str, int],
                                  open_circuits: int) -> List[str]:
    recommendations: List[str] = []
    if cache_stats["total_entries"] < 50:
        recommendations.append("Consider increasing cache size for better performance")
    if cache_stats["memory_usage"] > 50 * 1024 * 1024:
        recommendations.append("Cache memory usage is high, consider cleanup")
    if batch_stats["pending_batches"] > 10:
        recommendations.append("High number of pending batches, check for bottlenecks")
    if batch_stats["total_pending_requests"] > 100:
        recommendations.append("Many pending requests, consider increasing batch size")
    if open_circuits:
        recommendations.append("Upstream circuit breakers are open, cached data is being served")
    return recommendations


@router.get("/health/optimization")
async def optimization_health(
    detailed: bool = Query(default=False),
    user: User = Depends(get_current_user),
):
    """Aggregation layer status: cache, batcher, background sync and breakers."""
    service = get_trading212_service()
    optimization = service.health_check()
    payload: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "status": "healthy",
        "services": {
            "api_cache": optimization["cache"],
            "api_batcher": optimization["batches"],
            "background_sync": get_background_sync_service().health_check(),
        },
        "optimization": optimization,
    }
    if detailed:
        settings = get_settings()
        payload["configuration"] = {
            "cache_ttl_seconds": dict(CACHE_TTL_SECONDS),
            "cache_stale_seconds": settings.cache_stale_seconds,
            "batch_delay_ms": settings.batch_delay_ms,
            "max_batch_size": settings.batch_max_size,
            "batch_call_timeout_seconds": settings.batch_call_timeout_seconds,
            "rate_limit": {
                "window_seconds": settings.rate_limit_window_seconds,
                "max_requests": settings.rate_limit_max_requests,
            },
        }
        payload["recommendations"] = _optimization_recommendations(
            optimization["cache"], optimization["batches"], optimization["circuit_breakers"]["open"]
        )
    return payload


# ============================================================================
# Trail Stop Orders
# ============================================================================

@router.get("/trail-stop/orders", response_model=TrailStopOrdersResponse)
async def list_trail_stop_orders(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    orders = StorageService(db).list_trail_stop_orders(user.id)
    return TrailStopOrdersResponse(orders=[_order_to_response(order) for order in orders])


@router.post("/trail-stop/orders", response_model=TrailStopOrderMutationResponse)
async def create_trail_stop_order(
    request: TrailStopOrderCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a trail stop order tracked by the monitor."""
    symbol = (request.symbol or "").strip()
    if not symbol or not request.quantity:
        raise HTTPException(status_code=400, detail="Symbol and quantity are required")
    if not request.trail_amount and not request.trail_percent:
        raise HTTPException(status_code=400, detail="Either trail amount or trail percentage is required")
    if request.quantity <= 0:
        raise HTTPException(status_code=400, detail="Quantity must be greater than 0")
    if request.trail_amount and request.trail_amount <= 0:
        raise HTTPException(status_code=400, detail="Trail amount must be greater than 0")
    if request.trail_percent and (request.trail_percent <= 0 or request.trail_percent >= 100):
        raise HTTPException(status_code=400, detail="Trail percentage must be between 0 and 100")

    storage = StorageService(db)
    if request.account_id is not None and storage.get_account(user.id, request.account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")

    order = storage.trail_stop_orders.create(
        user_id=user.id,
        symbol=symbol.upper(),
        quantity=float(request.quantity),
        trail_amount=float(request.trail_amount or 0.0),
        trail_percent=float(request.trail_percent) if request.trail_percent else None,
        is_practice=request.is_practice,
        account_id=request.account_id,
    )
    logger.info(
        "Trail stop order created: %s (%s shares) - %s mode",
        order.symbol, order.quantity, "Practice" if order.is_practice else "Production",
    )
    return TrailStopOrderMutationResponse(
        order=_order_to_response(order), message="Trail stop order created successfully"
    )


@router.get("/trail-stop/orders/{order_id}", response_model=TrailStopOrderDetailResponse)
async def get_trail_stop_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    order = StorageService(db).get_trail_stop_order(user.id, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return TrailStopOrderDetailResponse(order=_order_to_response(order))


@router.put("/trail-stop/orders/{order_id}", response_model=TrailStopOrderMutationResponse)
async def update_trail_stop_order(
    order_id: int,
    request: TrailStopOrderUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Partially update an order. Explicit nulls clear trail_percent and stop_price."""
    storage = StorageService(db)
    order = storage.get_trail_stop_order(user.id, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    provided = request.model_fields_set
    if "quantity" in provided and (request.quantity is None or request.quantity <= 0):
        raise HTTPException(status_code=400, detail="Quantity must be greater than 0")
    if "trail_amount" in provided and (request.trail_amount is None or request.trail_amount <= 0):
        raise HTTPException(status_code=400, detail="Trail amount must be greater than 0")
    if "trail_percent" in provided and request.trail_percent is not None and (
        request.trail_percent <= 0 or request.trail_percent >= 100
    ):
        raise HTTPException(status_code=400, detail="Trail percentage must be between 0 and 100")

    changes: Dict[str, Any] = {
        field: getattr(request, field)
        for field in ("quantity", "trail_amount", "trail_percent", "stop_price")
        if field in provided
    }
    if "is_active" in provided and request.is_active is not None:
        changes["is_active"] = request.is_active

    order = storage.trail_stop_orders.update(order, **changes)
    logger.info("Trail stop order updated: %s - active=%s", order.symbol, order.is_active)
    return TrailStopOrderMutationResponse(
        order=_order_to_response(order), message="Trail stop order updated successfully"
    )


@router.delete("/trail-stop/orders/{order_id}", response_model=MessageResponse)
async def delete_trail_stop_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = StorageService(db)
    order = storage.get_trail_stop_order(user.id, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    symbol = order.symbol
    storage.trail_stop_orders.delete(order)
    logger.info("Trail stop order deleted: %s", symbol)
    return MessageResponse(message="Trail stop order deleted successfully")


@router.post("/trail-stop/monitor", response_model=MonitorRunResponse)
@limiter.limit("30/minute")
async def run_trail_stop_monitor(request: Request, db: Session = Depends(get_db)):
    """Run one monitor pass over every user's active orders."""
    try:
        result = await get_trail_stop_monitor().run_once(db=db)
    except SQLAlchemyError:
        logger.exception("Trail stop monitoring failed")
        raise HTTPException(status_code=500, detail="Failed to monitor trail stop orders")
    return MonitorRunResponse(**result)


# ============================================================================
# Notifications
# ============================================================================

@router.get("/notifications", response_model=NotificationsResponse)
async def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows = StorageService(db).notifications.list_for_user(user.id, unread_only=unread_only, limit=limit)
    return NotificationsResponse(notifications=[_notification_to_response(row) for row in rows])


@router.post("/notifications", response_model=NotificationMutationResponse)
async def create_notification(
    request: NotificationCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not request.type or not request.title or not request.message:
        raise HTTPException(status_code=400, detail="Type, title, and message are required")
    notification = StorageService(db).create_notification(
        user_id=user.id,
        type=request.type,
        title=request.title,
        message=request.message,
        data=request.data,
    )
    return NotificationMutationResponse(
        notification=_notification_to_response(notification),
        message="Notification created successfully",
    )


@router.put("/notifications/{notification_id}", response_model=NotificationMutationResponse)
async def update_notification(
    notification_id: int,
    request: NotificationUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = StorageService(db)
    notification = storage.notifications.get_for_user(user.id, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    notification = storage.notifications.mark_read(notification, is_read=request.is_read)
    return NotificationMutationResponse(
        notification=_notification_to_response(notification),
        message="Notification updated successfully",
    )


@router.delete("/notifications/{notification_id}", response_model=MessageResponse)
async def delete_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = StorageService(db)
    notification = storage.notifications.get_for_user(user.id, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    storage.notifications.delete(notification)
    return MessageResponse(message="Notification deleted successfully")


# ============================================================================
# Daily P/L
# ============================================================================

def _summarize_daily_pnl(records: List[DailyPnLRecord]) -> DailyPnLSummary:
    """Summary over records ordered newest first."""
    total_days = len(records)
    if total_days == 0:
        return DailyPnLSummary(
            total_days=0, total_pnl_change=0.0, best_day=None, worst_day=None, average_daily_pnl=0.0
        )
    total_change = records[0].total_pnl - records[-1].total_pnl if total_days > 1 else 0.0
    best = max(records, key=lambda record: record.today_pnl)
    worst = min(records, key=lambda record: record.today_pnl)
    return DailyPnLSummary(
        total_days=total_days,
        total_pnl_change=total_change,
        best_day=DayPnL(date=best.date, today_pnl=best.today_pnl),
        worst_day=DayPnL(date=worst.date, today_pnl=worst.today_pnl),
        average_daily_pnl=sum(record.today_pnl for record in records) / total_days,
    )


@router.get("/daily-pnl", response_model=DailyPnLResponse)
async def get_daily_pnl(
    account_id: Optional[int] = Query(default=None),
    days: int = Query(default=30, ge=1, le=3650),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Daily snapshots in a date range (default: the last `days` days), newest first."""
    start = start_date
    end = end_date
    if start is None and end is None:
        start = datetime.now(timezone.utc).date() - timedelta(days=days)
    rows = StorageService(db).get_daily_pnl(user.id, start=start, end=end, account_id=account_id)
    records = [_daily_pnl_to_record(row) for row in rows]
    return DailyPnLResponse(daily_pnl=records, summary=_summarize_daily_pnl(records))


@router.post("/daily-pnl")
async def capture_daily_pnl(
    request: DailyPnLCaptureRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Snapshot today's P/L for one account or every active account."""
    storage = StorageService(db)
    if request.account_id is not None:
        account = storage.get_account(user.id, request.account_id)
        accounts = [account] if account is not None else []
    else:
        accounts = storage.list_accounts(user.id, active_only=True)
    if not accounts:
        raise HTTPException(status_code=400, detail="No active Trading212 accounts found")

    service = get_trading212_service()
    today = datetime.now(timezone.utc).date()
    results: List[Dict[str, Any]] = []
    for account in accounts:
        if not service.can_make_request(user.id, account.id):
            logger.info("Rate limited for account %s, skipping daily P/L capture", account.id)
            continue
        try:
            if request.force_refresh:
                data = await service.force_refresh_account_data(
                    user.id, account.id, account.api_key, account.is_practice
                )
            else:
                data = await service.get_account_data(user.id, account.id, account.api_key, account.is_practice)
        except UPSTREAM_ERRORS as exc:
            logger.error("Error capturing daily P/L for account %s: %s", account.id, exc)
            results.append({"account_id": account.id, "action": "error", "error": str(exc) or "Unknown error"})
            continue

        summary = data.get("account")
        if not summary:
            logger.info("Account %s not connected, skipping daily P/L capture", account.id)
            continue

        stats = data.get("stats") or {}
        cash = summary.get("cash")
        try:
            row = storage.record_daily_pnl(
                user_id=user.id,
                account_id=account.id,
                day=today,
                total_pnl=float(stats.get("total_pnl") or 0.0),
                today_pnl=float(stats.get("today_pnl") or 0.0),
                total_value=float(stats.get("total_value") or 0.0),
                cash=float(cash) if isinstance(cash, (int, float)) else None,
                currency=summary.get("currencyCode") or "USD",
                positions=int(stats.get("active_positions") or 0),
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to upsert daily P/L record for account %s: %s", account.id, exc)
            results.append({"account_id": account.id, "action": "error", "error": str(exc)})
            continue
        logger.info(
            "Daily P/L captured for account %s: total=%.2f today=%.2f",
            account.name, row.total_pnl, row.today_pnl,
        )
        results.append({"account_id": account.id, "action": "upserted", "data": _daily_pnl_to_record(row)})

    return {
        "message": "Daily P/L snapshots captured",
        "results": results,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ============================================================================
# User
# ============================================================================

@router.get("/user/connection-status", response_model=ConnectionStatusResponse)
async def connection_status(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    accounts = StorageService(db).list_accounts(user.id, active_only=True)
    return ConnectionStatusResponse(
        has_api_key=bool(accounts),
        accounts=[
            ConnectionAccount(id=acc.id, name=acc.name, is_practice=acc.is_practice, is_default=acc.is_default)
            for acc in accounts
        ],
    )
