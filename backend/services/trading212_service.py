"""
Optimized Trading212 data service.

Sits in front of the batcher and cache: serves fresh or stale cache first,
guards each account with a circuit breaker, and deduplicates concurrent
fetches for the same account.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from config.settings import get_settings
from integrations.trading212_client import Trading212Error
from services.api_batcher import AccountRef, APIBatcher, get_api_batcher
from services.api_cache import APICache, CACHE_TTL_SECONDS, get_api_cache
from services.portfolio_stats import (
    aggregate_account_stats,
    apply_today_pnl,
    calculate_stats,
    empty_stats,
)
from services.rate_limiter import RateLimiter, get_trading212_rate_limiter

logger = logging.getLogger(__name__)

DASHBOARD_PARAMS = {"view": "dashboard"}
DASHBOARD_ORDERS_PARAMS = {"view": "dashboard", "orders": True}
SUMMARY_PARAMS = {"view": "summary"}


class CircuitOpenError(Trading212Error):
    """Breaker is open for an account and no stale data is available."""
    pass


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def dashboard_params(include_orders: bool) -> Dict[str, Any]:
    """Dashboard entries with and without orders are cached separately."""
    return DASHBOARD_ORDERS_PARAMS if include_orders else DASHBOARD_PARAMS


class OptimizedTrading212Service:
    """
    Cache-first access to Trading212 account data.

    Features:
    - Fresh cache, then stale cache, before any upstream call
    - Per-account circuit breaker keyed `user:account`
    - In-flight deduplication of concurrent account fetches
    - Stale-piece composition when a fetch fails outright
    """

    def __init__(
        self,
        cache: APICache,
        batcher: APIBatcher,
        rate_limiter: RateLimiter,
        clock: Callable[[], float] = time.monotonic,
        failure_threshold: int = 1,
        open_seconds: float = 15.0,
    ):
        self.cache = cache
        self.batcher = batcher
        self.rate_limiter = rate_limiter
        self._clock = clock
        self.failure_threshold = max(1, int(failure_threshold))
        self.open_seconds = float(open_seconds)
        self._breakers: Dict[str, Dict[str, float]] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def _breaker_open(self, key: str) -> bool:
        state = self._breakers.get(key)
        return bool(state and state["open_until"] > self._clock())

    def _record_failure(self, key: str) -> int:
        state = self._breakers.setdefault(key, {"failures": 0, "open_until": 0.0})
        state["failures"] += 1
        if state["failures"] >= self.failure_threshold:
            state["open_until"] = self._clock() + self.open_seconds
        return int(state["failures"])

    def _record_success(self, key: str) -> None:
        self._breakers.pop(key, None)

    def open_circuit_count(self) -> int:
        now = self._clock()
        return sum(1 for state in self._breakers.values() if state["open_until"] > now)

    # ------------------------------------------------------------------
    # Account data
    # ------------------------------------------------------------------

    async def get_account_data(
        self,
        user_id: Any,
        account_id: Any,
        api_key: str,
        is_practice: bool,
        include_orders: bool = False,
    ) -> Dict[str, Any]:
        """
        Get dashboard data for one account.

        Raises:
            CircuitOpenError: Breaker open and nothing stale to serve
            Trading212Error: Upstream failure with nothing stale to serve
        """
        logger.info("Optimized fetch for account %s", account_id)

        params = dashboard_params(include_orders)
        cached = self.cache.get(user_id, account_id, "account", params)
        if cached is not None:
            logger.info("Cache hit for account %s", account_id)
            return dict(cached, cache_hit=True)

        stale = self.cache.get_stale(user_id, account_id, "account", params)
        if stale is not None:
            logger.info("Serving stale cache for account %s", account_id)
            return dict(
                stale,
                cache_hit=True,
                stale=True,
                warning="Serving cached data for faster response",
            )

        breaker_key = f"{user_id}:{account_id}"
        if self._breaker_open(breaker_key):
            raise CircuitOpenError("Upstream temporarily unavailable (circuit open)")

        fetch_key = f"{user_id}:{account_id}:account:{int(include_orders)}"
        pending = self._inflight.get(fetch_key)
        if pending is not None:
            logger.info("Waiting for pending fetch for account %s", account_id)
            return await asyncio.shield(pending)

        task = asyncio.get_running_loop().create_task(
            self._guarded_fetch(breaker_key, user_id, account_id, api_key, is_practice, include_orders)
        )
        self._inflight[fetch_key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight.get(fetch_key) is task:
                del self._inflight[fetch_key]

    async def _guarded_fetch(
        self,
        breaker_key: str,
        user_id: Any,
        account_id: Any,
        api_key: str,
        is_practice: bool,
        include_orders: bool,
    ) -> Dict[str, Any]:
        try:
            result = await self._perform_account_fetch(
                user_id, account_id, api_key, is_practice, include_orders
            )
        except Exception:
            failures = self._record_failure(breaker_key)
            stale = self.cache.get_stale(user_id, account_id, "account", dashboard_params(include_orders))
            if stale is not None:
                logger.info(
                    "Serving stale data after error for account %s (failures=%d)",
                    account_id, failures,
                )
                return dict(stale, cache_hit=True)
            raise
        self._record_success(breaker_key)
        return result

    async def _perform_account_fetch(
        self,
        user_id: Any,
        account_id: Any,
        api_key: str,
        is_practice: bool,
        include_orders: bool,
    ) -> Dict[str, Any]:
        try:
            batched = await self.batcher.fetch_account_data(
                user_id, account_id, api_key, is_practice, include_orders
            )
        except Exception as exc:
            batched = self._compose_from_stale(user_id, account_id, include_orders)
            if batched is None:
                raise
            logger.warning("Composed stale data for account %s after error: %s", account_id, exc)

        account = batched.get("account")
        stats = empty_stats()
        stats.update(batched.get("stats") or {})
        apply_today_pnl(stats, account)

        currency = "USD"
        if isinstance(account, dict) and account.get("currencyCode"):
            currency = account["currencyCode"]

        data = {
            "account": account,
            "portfolio": list(batched.get("portfolio") or []),
            "orders": list(batched.get("orders") or []),
            "stats": stats,
            "currency": currency,
            "last_updated": _utc_iso(),
            "cache_hit": False,
        }
        self.cache.set(user_id, account_id, "account", data, dashboard_params(include_orders))
        return data

    def _compose_from_stale(
        self, user_id: Any, account_id: Any, include_orders: bool
    ) -> Optional[Dict[str, Any]]:
        stale_account = self.cache.get_stale(user_id, account_id, "account")
        stale_positions = self.cache.get_stale(user_id, account_id, "portfolio")
        stale_orders = self.cache.get_stale(user_id, account_id, "orders") if include_orders else None
        if stale_account is None and stale_positions is None and stale_orders is None:
            return None
        positions = stale_positions if isinstance(stale_positions, list) else []
        return {
            "account": stale_account,
            "portfolio": positions,
            "orders": stale_orders or [],
            "stats": calculate_stats(positions),
        }

    async def force_refresh_account_data(
        self,
        user_id: Any,
        account_id: Any,
        api_key: str,
        is_practice: bool,
        include_orders: bool = False,
    ) -> Dict[str, Any]:
        self.invalidate_cache(user_id, account_id, "account")
        return await self.get_account_data(user_id, account_id, api_key, is_practice, include_orders)

    # ------------------------------------------------------------------
    # Portfolio summary
    # ------------------------------------------------------------------

    async def get_portfolio_data(
        self,
        user_id: Any,
        account_id: Any,
        api_key: str,
        is_practice: bool,
    ) -> Dict[str, Any]:
        """Positions with value and P/L totals."""
        cached = self.cache.get(user_id, account_id, "portfolio", SUMMARY_PARAMS)
        if cached is not None:
            logger.info("Portfolio cache hit for account %s", account_id)
            return dict(cached, cache_hit=True)

        positions = await self.batcher.request(user_id, account_id, "portfolio", api_key, is_practice)
        positions = list(positions or [])
        stats = calculate_stats(positions)
        data = {
            "positions": positions,
            "total_value": stats["total_value"],
            "total_pnl": stats["total_pnl"],
            "total_pnl_percent": stats["total_pnl_percent"],
            "currency": "USD",
            "last_updated": _utc_iso(),
            "cache_hit": False,
        }
        self.cache.set(user_id, account_id, "portfolio", data, SUMMARY_PARAMS)
        return data

    # ------------------------------------------------------------------
    # Multi-account
    # ------------------------------------------------------------------

    async def get_multi_account_data(
        self,
        user_id: Any,
        accounts: Sequence[AccountRef],
        include_orders: bool = False,
    ) -> List[Dict[str, Any]]:
        logger.info("Multi-account optimized fetch for %d accounts", len(accounts))
        results = await self.batcher.fetch_multi_account_data(user_id, accounts, include_orders)
        shaped: List[Dict[str, Any]] = []
        for result in results:
            data = result.get("data")
            if data is not None:
                account = data.get("account")
                stats = empty_stats()
                stats.update(data.get("stats") or {})
                apply_today_pnl(stats, account)
                currency = "USD"
                if isinstance(account, dict) and account.get("currencyCode"):
                    currency = account["currencyCode"]
                data = dict(
                    data,
                    orders=list(data.get("orders") or []),
                    stats=stats,
                    currency=currency,
                    last_updated=_utc_iso(),
                    cache_hit=False,
                )
            shaped.append({
                "account_id": result.get("account_id"),
                "data": data,
                "error": result.get("error"),
                "cache_hit": False,
            })
        return shaped

    async def get_aggregated_account_data(
        self, user_id: Any, accounts: Sequence[AccountRef]
    ) -> Dict[str, Any]:
        account_results = await self.get_multi_account_data(user_id, accounts)
        cache_hits = sum(
            1 for result in account_results
            if result.get("data") and not result.get("error") and result.get("cache_hit")
        )
        return {
            "total_stats": aggregate_account_stats(account_results),
            "account_results": account_results,
            "cache_hits": cache_hits,
        }

    # ------------------------------------------------------------------
    # Cache, limits, background sync
    # ------------------------------------------------------------------

    def invalidate_cache(self, user_id: Any, account_id: Any = None, data_type: Optional[str] = None) -> int:
        removed = self.cache.invalidate(user_id, account_id, data_type)
        logger.info(
            "Cache invalidated for user %s, account %s, type %s", user_id, account_id, data_type
        )
        return removed

    def can_make_request(self, user_id: Any, account_id: Any) -> bool:
        return self.rate_limiter.can_make_request(f"trading212-{user_id}-{account_id}")

    def get_time_until_reset(self, user_id: Any, account_id: Any) -> float:
        return self.rate_limiter.get_time_until_reset(f"trading212-{user_id}-{account_id}")

    async def background_sync(self, user_id: Any, accounts: Sequence[AccountRef]) -> int:
        """
        Refresh cached data for the accounts the limiter allows.

        Returns:
            Number of accounts synced (0 when all were rate limited)
        """
        logger.info("Background sync for user %s", user_id)
        to_sync = [account for account in accounts if self.can_make_request(user_id, account.id)]
        if not to_sync:
            logger.info("All accounts are rate limited, skipping background sync")
            return 0
        try:
            results = await self.get_multi_account_data(user_id, to_sync)
        except Exception as exc:
            logger.error("Background sync failed for user %s: %s", user_id, exc)
            return 0
        # Rebuild the dashboard entries so readers stop getting the stale copy
        for result in results:
            if result["data"] is None or result["error"]:
                continue
            self.cache.set(user_id, result["account_id"], "account", result["data"], DASHBOARD_PARAMS)
            self._record_success(f"{user_id}:{result['account_id']}")
        logger.info("Background sync completed for %d accounts", len(to_sync))
        return len(to_sync)

    def get_cache_stats(self) -> Dict[str, int]:
        return self.cache.get_stats()

    def get_batch_stats(self) -> Dict[str, int]:
        return self.batcher.get_stats()

    def health_check(self) -> Dict[str, Any]:
        return {
            "cache": self.get_cache_stats(),
            "batches": self.get_batch_stats(),
            "rate_limiter": {
                "can_make_request": True,
                "window_seconds": self.rate_limiter.window_seconds,
                "max_requests": self.rate_limiter.max_requests,
            },
            "circuit_breakers": {"open": self.open_circuit_count()},
        }

    @staticmethod
    def cache_ttls() -> Dict[str, float]:
        return dict(CACHE_TTL_SECONDS)


_service: Optional[OptimizedTrading212Service] = None
_service_lock = threading.Lock()


def get_trading212_service() -> OptimizedTrading212Service:
    """Get the process-wide optimized service."""
    global _service
    with _service_lock:
        if _service is None:
            settings = get_settings()
            _service = OptimizedTrading212Service(
                cache=get_api_cache(),
                batcher=get_api_batcher(),
                rate_limiter=get_trading212_rate_limiter(),
                failure_threshold=settings.circuit_breaker_failure_threshold,
                open_seconds=settings.circuit_breaker_open_seconds,
            )
        return _service


def set_trading212_service(service: Optional[OptimizedTrading212Service]) -> None:
    """Replace the process-wide service (None resets to lazy default)."""
    global _service
    with _service_lock:
        _service = service
