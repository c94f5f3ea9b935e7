"""
Trading212 REST API client.

Wraps the equity endpoints of the Trading212 public API for both practice
(demo) and live accounts. Every call waits on the shared rate limiter and
retries upstream 429 responses with backoff.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging

import httpx

from config.settings import get_settings
from services.rate_limiter import RateLimiter, get_trading212_rate_limiter

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


class Trading212Error(Exception):
    """Base exception for Trading212 client failures."""
    pass


class Trading212APIError(Trading212Error):
    """Upstream returned a non-success HTTP status."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        message = f"Trading212 API error ({status_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class Trading212Client:
    """
    Async client for one Trading212 API key.

    Configuration:
        - api_key: Trading212 API key (sent verbatim in the Authorization header)
        - is_practice: Use the demo endpoint (default: False)
    """

    def __init__(
        self,
        api_key: str,
        is_practice: bool = False,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.api_key = api_key
        self.is_practice = is_practice
        if base_url is None:
            base_url = settings.trading212_demo_api_url if is_practice else settings.trading212_live_api_url
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout if timeout is not None else settings.trading212_timeout_seconds)
        self._rate_limiter = rate_limiter or get_trading212_rate_limiter()
        self._transport = transport
        self._sleep = sleep

    @property
    def mode(self) -> str:
        return "practice" if self.is_practice else "live"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": self.api_key,
            "Content-Type": "application/json",
        }

    async def _wait_for_rate_limit(self) -> None:
        key = f"trading212_{self.api_key}"
        while not self._rate_limiter.can_make_request(key):
            wait_seconds = self._rate_limiter.get_time_until_reset(key)
            logger.info("Trading212 rate limit reached, waiting %.1fs", wait_seconds + 1)
            await self._sleep(wait_seconds + 1.0)

    @staticmethod
    def _retry_after_seconds(response: httpx.Response, attempt: int) -> float:
        raw = response.headers.get("retry-after", "").strip()
        if raw:
            try:
                return float(int(raw))
            except ValueError:
                pass
        return float(2 ** attempt)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        last_error: Optional[Trading212Error] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            await self._wait_for_rate_limit()
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, params=params, json=json_body)

            if response.status_code == 429:
                wait_seconds = self._retry_after_seconds(response, attempt)
                last_error = Trading212APIError(429, "Too many requests")
                logger.warning(
                    "Trading212 429 on attempt %d/%d for %s %s, retrying in %.0fs",
                    attempt, MAX_ATTEMPTS, method, path, wait_seconds,
                )
                if attempt < MAX_ATTEMPTS:
                    await self._sleep(wait_seconds)
                continue

            if response.status_code < 200 or response.status_code >= 300:
                detail = response.text.strip()
                if len(detail) > 280:
                    detail = detail[:280]
                raise Trading212APIError(response.status_code, detail)

            if not response.content:
                return None
            return response.json()

        raise last_error or Trading212Error("Unknown error")

    async def get_account(self) -> Dict[str, Any]:
        """Account cash summary (currencyCode, cash, ppl, result, ...)."""
        return await self._request("GET", "/equity/account/cash")

    async def get_positions(self) -> List[Dict[str, Any]]:
        """Open positions (ticker, quantity, averagePrice, currentPrice, ppl, ...)."""
        data = await self._request("GET", "/equity/portfolio")
        return data if isinstance(data, list) else []

    async def get_orders(self) -> List[Dict[str, Any]]:
        """Working orders."""
        data = await self._request("GET", "/equity/orders")
        return data if isinstance(data, list) else []

    async def create_trailing_stop_order(
        self,
        ticker: str,
        quantity: float,
        trail_amount: float,
        trail_percent: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Place a trailing stop order upstream.

        Raises:
            Trading212Error: When called for a live account
        """
        if not self.is_practice:
            raise Trading212Error(
                "Trail stop orders are only available in practice mode due to API limitations"
            )
        payload: Dict[str, Any] = {
            "ticker": ticker,
            "quantity": quantity,
            "orderType": "STOP",
            "timeValidity": "GTC",
            "trailAmount": trail_amount,
        }
        if trail_percent:
            payload["trailPercent"] = trail_percent
        return await self._request("POST", "/equity/orders", json_body=payload)

    async def cancel_order(self, order_id: int) -> None:
        await self._request("DELETE", f"/equity/orders/{order_id}")

    async def get_historical_data(self, ticker: str, period: str = "1DAY") -> List[Any]:
        data = await self._request("GET", f"/equity/historical/{ticker}", params={"period": period})
        return data if isinstance(data, list) else []

    async def get_instrument_details(self, ticker: str) -> Any:
        return await self._request("GET", "/equity/metadata/instruments", params={"ticker": ticker})

    async def validate_connection(self) -> bool:
        """
        Probe the account endpoint.

        Returns:
            True if the key is accepted; failures are logged, never raised
        """
        logger.info("Testing Trading212 connection to %s (%s)", self.base_url, self.mode)
        try:
            await self.get_account()
        except Trading212APIError as exc:
            if exc.status_code == 401:
                logger.error("Trading212 authentication failed: check API key validity")
            elif exc.status_code == 403:
                logger.error("Trading212 access forbidden: check API key permissions")
            elif exc.status_code == 404:
                logger.error("Trading212 endpoint not found: check API URL and version")
            else:
                logger.error("Trading212 validation failed: %s", exc)
            return False
        except httpx.HTTPError as exc:
            logger.error("Trading212 network error against %s: %s", self.base_url, exc)
            return False
        except (Trading212Error, ValueError) as exc:
            logger.error("Trading212 validation failed: %s", exc)
            return False
        logger.info("Trading212 connection successful (%s)", self.mode)
        return True


ClientFactory = Callable[[str, bool], Trading212Client]


def default_client_factory(api_key: str, is_practice: bool) -> Trading212Client:
    """Build a client bound to the process-wide limiter and settings."""
    return Trading212Client(api_key, is_practice)
