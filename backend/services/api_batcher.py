"""
Request batching for Trading212 data.

Concurrent requests for the same user and data type are coalesced for a
short window, grouped by account, and served by one upstream call per
distinct data type. Partial failures stay scoped to the requests that
needed the failed call.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from config.settings import get_settings
from integrations.trading212_client import (
    ClientFactory,
    Trading212Client,
    Trading212Error,
    default_client_factory,
)
from services.api_cache import APICache, CACHE_TTL_SECONDS, get_api_cache
from services.portfolio_stats import calculate_stats

logger = logging.getLogger(__name__)


@dataclass
class AccountRef:
    """Credentials and identity of one linked account."""

    id: int
    api_key: str
    is_practice: bool
    name: str = ""


@dataclass
class _PendingRequest:
    user_id: Any
    account_id: Any
    request_type: str
    api_key: str
    is_practice: bool
    future: asyncio.Future


class APIBatcher:
    """
    Coalesces Trading212 reads per `user:type` batch key.

    Each batch key has its own timer started by the first queued request;
    a batch that reaches `max_batch_size` is flushed immediately.
    """

    def __init__(
        self,
        cache: APICache,
        client_factory: ClientFactory = default_client_factory,
        batch_delay_ms: int = 50,
        max_batch_size: int = 20,
        call_timeout: float = 20.0,
    ):
        self.cache = cache
        self.client_factory = client_factory
        self.batch_delay = max(0, int(batch_delay_ms)) / 1000.0
        self.max_batch_size = max(1, int(max_batch_size))
        self.call_timeout = float(call_timeout)
        self._batches: Dict[str, List[_PendingRequest]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: set = set()

    @staticmethod
    def _batch_key(user_id: Any, request_type: str) -> str:
        return f"{user_id}:{request_type}"

    async def request(
        self,
        user_id: Any,
        account_id: Any,
        request_type: str,
        api_key: str,
        is_practice: bool,
    ) -> Any:
        """Return cached data or queue the read into the next batch for its key."""
        if request_type not in CACHE_TTL_SECONDS:
            raise ValueError(f"Unknown request type: {request_type}")
        cached = self.cache.get(user_id, account_id, request_type)
        if cached is not None:
            return cached

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        key = self._batch_key(user_id, request_type)
        batch = self._batches.setdefault(key, [])
        batch.append(_PendingRequest(
            user_id=user_id,
            account_id=account_id,
            request_type=request_type,
            api_key=api_key,
            is_practice=is_practice,
            future=future,
        ))
        if len(batch) >= self.max_batch_size:
            self._flush(key)
        elif key not in self._timers:
            self._timers[key] = loop.call_later(self.batch_delay, self._flush, key)
        return await future

    def _flush(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        requests = self._batches.pop(key, None)
        if not requests:
            return
        task = asyncio.get_running_loop().create_task(self._execute_batch(requests))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute_batch(self, requests: List[_PendingRequest]) -> None:
        groups: Dict[Any, List[_PendingRequest]] = {}
        for req in requests:
            groups.setdefault(req.account_id, []).append(req)
        await asyncio.gather(
            *(self._execute_account_batch(account_id, reqs) for account_id, reqs in groups.items()),
            return_exceptions=True,
        )

    async def _fetch_type(self, client: Trading212Client, request_type: str) -> Any:
        if request_type in ("portfolio", "positions"):
            call = client.get_positions()
        elif request_type == "account":
            call = client.get_account()
        elif request_type == "orders":
            call = client.get_orders()
        else:
            raise ValueError(f"Unknown request type: {request_type}")
        try:
            return await asyncio.wait_for(call, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise Trading212Error(f"Timeout fetching {request_type}") from None

    async def _execute_account_batch(self, account_id: Any, requests: List[_PendingRequest]) -> None:
        first = requests[0]
        request_types = list(dict.fromkeys(req.request_type for req in requests))
        logger.info("Executing batch for account %s: %s", account_id, ", ".join(request_types))
        try:
            client = self.client_factory(first.api_key, first.is_practice)
            outcomes = await asyncio.gather(
                *(self._fetch_type(client, request_type) for request_type in request_types),
                return_exceptions=True,
            )
        except Exception as exc:
            logger.error("Batch execution failed for account %s: %s", account_id, exc)
            for req in requests:
                if not req.future.done():
                    req.future.set_exception(exc)
            return

        results = dict(zip(request_types, outcomes))
        for request_type, outcome in results.items():
            if not isinstance(outcome, BaseException):
                self.cache.set(first.user_id, account_id, request_type, outcome)
            else:
                logger.warning("Fetching %s for account %s failed: %s", request_type, account_id, outcome)

        for req in requests:
            if req.future.done():
                continue
            outcome = results[req.request_type]
            if isinstance(outcome, BaseException):
                req.future.set_exception(outcome)
            else:
                req.future.set_result(outcome)

    async def fetch_account_data(
        self,
        user_id: Any,
        account_id: Any,
        api_key: str,
        is_practice: bool,
        include_orders: bool = False,
    ) -> Dict[str, Any]:
        """
        Fetch account summary, positions and optionally orders together.

        Each piece settles independently: a failed account becomes None and a
        failed list becomes []. Raises only when every requested piece failed.
        """
        logger.info("Smart fetch for account %s", account_id)
        calls = [
            self.request(user_id, account_id, "account", api_key, is_practice),
            self.request(user_id, account_id, "portfolio", api_key, is_practice),
        ]
        if include_orders:
            calls.append(self.request(user_id, account_id, "orders", api_key, is_practice))
        outcomes = await asyncio.gather(*calls, return_exceptions=True)

        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if len(failures) == len(outcomes):
            raise outcomes[0]

        account = None if isinstance(outcomes[0], BaseException) else outcomes[0]
        portfolio = [] if isinstance(outcomes[1], BaseException) else list(outcomes[1] or [])
        data: Dict[str, Any] = {
            "account": account,
            "portfolio": portfolio,
            "stats": calculate_stats(portfolio),
        }
        if include_orders:
            data["orders"] = [] if isinstance(outcomes[2], BaseException) else list(outcomes[2] or [])
        return data

    async def fetch_multi_account_data(
        self,
        user_id: Any,
        accounts: Sequence[AccountRef],
        include_orders: bool = False,
    ) -> List[Dict[str, Any]]:
        """Fetch every account concurrently; one entry per account with data or error."""
        logger.info("Multi-account fetch for %d accounts", len(accounts))

        async def _one(account: AccountRef) -> Dict[str, Any]:
            try:
                data = await self.fetch_account_data(
                    user_id, account.id, account.api_key, account.is_practice, include_orders
                )
                return {"account_id": account.id, "data": data, "error": None}
            except Exception as exc:
                logger.error("Failed to fetch data for account %s: %s", account.id, exc)
                return {"account_id": account.id, "data": None, "error": str(exc) or "Unknown error"}

        return list(await asyncio.gather(*(_one(account) for account in accounts)))

    def get_stats(self) -> Dict[str, int]:
        return {
            "pending_batches": len(self._batches),
            "total_pending_requests": sum(len(batch) for batch in self._batches.values()),
        }


_api_batcher: Optional[APIBatcher] = None
_api_batcher_lock = threading.Lock()


def get_api_batcher() -> APIBatcher:
    """Get the process-wide batcher bound to the shared cache."""
    global _api_batcher
    with _api_batcher_lock:
        if _api_batcher is None:
            settings = get_settings()
            _api_batcher = APIBatcher(
                cache=get_api_cache(),
                batch_delay_ms=settings.batch_delay_ms,
                max_batch_size=settings.batch_max_size,
                call_timeout=settings.batch_call_timeout_seconds,
            )
        return _api_batcher
