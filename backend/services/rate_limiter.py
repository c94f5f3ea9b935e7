"""
Sliding-window rate limiter for Trading212 API calls.

Each key keeps the timestamps of its recent requests; a request is allowed
while fewer than the limit fall inside the window.
"""
from __future__ import annotations

import math
import threading
import time
from numbers import Real
from typing import Callable, Dict, List, Optional

from config.settings import get_settings


class RateLimiter:
    """
    In-memory per-key rate limiter.

    A successful `can_make_request` records the request, so checking and
    consuming a slot are the same operation.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = float(window_seconds)
        self.max_requests = int(max_requests)
        self._clock = clock
        self._requests: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def can_make_request(self, key: str, rate_limit: Optional[float] = None) -> bool:
        """
        Check whether a request for `key` is allowed, recording it if so.

        Args:
            key: Limiter bucket key
            rate_limit: Per-call override of max requests per window

        Returns:
            True when the request was allowed and recorded
        """
        if rate_limit is not None:
            if isinstance(rate_limit, bool) or not isinstance(rate_limit, Real):
                raise TypeError("Rate limit must be a valid number")
            if math.isnan(rate_limit) or rate_limit <= 0:
                return False
            if math.isinf(rate_limit):
                return True
        if not isinstance(key, str):
            raise TypeError("Key must be a string")

        limit = rate_limit if rate_limit is not None else self.max_requests
        with self._lock:
            now = self._clock()
            valid = [ts for ts in self._requests.get(key, []) if now - ts < self.window_seconds]
            if len(valid) >= limit:
                self._requests[key] = valid
                return False
            valid.append(now)
            self._requests[key] = valid
            return True

    def get_time_until_reset(self, key: str) -> float:
        """Seconds until the oldest recorded request leaves the window."""
        with self._lock:
            requests = self._requests.get(key) or []
            if not requests:
                return 0.0
            remaining = self.window_seconds - (self._clock() - min(requests))
        return max(0.0, remaining)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget recorded requests for one key, or for all keys."""
        with self._lock:
            if key is None:
                self._requests.clear()
            else:
                self._requests.pop(key, None)


_rate_limiter: Optional[RateLimiter] = None
_rate_limiter_lock = threading.Lock()


def get_trading212_rate_limiter() -> RateLimiter:
    """Get the process-wide Trading212 limiter (15 requests per minute by default)."""
    global _rate_limiter
    with _rate_limiter_lock:
        if _rate_limiter is None:
            settings = get_settings()
            _rate_limiter = RateLimiter(
                window_seconds=settings.rate_limit_window_seconds,
                max_requests=settings.rate_limit_max_requests,
            )
        return _rate_limiter
