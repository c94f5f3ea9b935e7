"""
In-memory response cache for Trading212 data.

Entries are fresh for their data type's TTL and then remain available as
stale fallbacks for a further stale window before they are purged.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from config.settings import get_settings

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS: Dict[str, float] = {
    "portfolio": 120.0,
    "account": 300.0,
    "orders": 60.0,
    "positions": 120.0,
}

_APPROX_ENTRY_BYTES = 1024


class APICache:
    """
    Thread-safe TTL cache keyed by user, account, data type and params.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        stale_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max(1, int(max_entries))
        self.stale_seconds = max(0.0, float(stale_seconds))
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(user_id: Any, account_id: Any, data_type: str,
                 params: Optional[Dict[str, Any]] = None) -> str:
        param_string = json.dumps(params, sort_keys=True, default=str) if params else ""
        return f"{user_id}:{account_id}:{data_type}:{param_string}"

    @staticmethod
    def _ttl_for(data_type: str) -> float:
        try:
            return CACHE_TTL_SECONDS[data_type]
        except KeyError:
            raise ValueError(f"Unknown cache data type: {data_type}") from None

    def _age(self, entry: Dict[str, Any], now: float) -> float:
        return now - entry["timestamp"]

    def _is_dead(self, entry: Dict[str, Any], now: float) -> bool:
        return self._age(entry, now) > entry["ttl"] + self.stale_seconds

    def _purge_dead_locked(self, now: float) -> None:
        dead = [key for key, entry in self._entries.items() if self._is_dead(entry, now)]
        for key in dead:
            del self._entries[key]

    def _enforce_capacity_locked(self) -> None:
        if len(self._entries) < self.max_entries:
            return
        # Drop the oldest 20% by insertion timestamp.
        evict_count = max(1, int(self.max_entries * 0.2))
        oldest = sorted(self._entries.items(), key=lambda item: item[1]["timestamp"])[:evict_count]
        for key, _entry in oldest:
            del self._entries[key]

    def get(self, user_id: Any, account_id: Any, data_type: str,
            params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """Return cached data while it is within its TTL."""
        self._ttl_for(data_type)
        key = self.make_key(user_id, account_id, data_type, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            if self._is_dead(entry, now):
                del self._entries[key]
                return None
            if self._age(entry, now) > entry["ttl"]:
                return None
        logger.debug("Cache hit for %s (account=%s)", data_type, account_id)
        return entry["data"]

    def get_stale(self, user_id: Any, account_id: Any, data_type: str,
                  params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """Return cached data while it is fresh or within the stale window."""
        self._ttl_for(data_type)
        key = self.make_key(user_id, account_id, data_type, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_dead(entry, self._clock()):
                del self._entries[key]
                return None
            return entry["data"]

    def set(self, user_id: Any, account_id: Any, data_type: str, data: Any,
            params: Optional[Dict[str, Any]] = None) -> None:
        """Store data, then purge dead entries and enforce capacity."""
        ttl = self._ttl_for(data_type)
        key = self.make_key(user_id, account_id, data_type, params)
        with self._lock:
            now = self._clock()
            self._entries[key] = {
                "data": data,
                "timestamp": now,
                "ttl": ttl,
                "user_id": str(user_id),
                "account_id": str(account_id),
                "data_type": data_type,
            }
            self._purge_dead_locked(now)
            self._enforce_capacity_locked()
        logger.debug("Cache set for %s (account=%s)", data_type, account_id)

    def invalidate(self, user_id: Any, account_id: Any = None, data_type: Optional[str] = None) -> int:
        """Remove a user's entries, optionally narrowed to an account and data type."""
        user_key = str(user_id)
        account_key = str(account_id) if account_id is not None else None
        with self._lock:
            doomed = [
                key for key, entry in self._entries.items()
                if entry["user_id"] == user_key
                and (account_key is None or entry["account_id"] == account_key)
                and (data_type is None or entry["data_type"] == data_type)
            ]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info("Cache invalidated: %d entries for user %s", len(doomed), user_key)
        return len(doomed)

    def invalidate_all(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()
        logger.info("Cache cleared")

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            total = len(self._entries)
        return {"total_entries": total, "memory_usage": total * _APPROX_ENTRY_BYTES}


_api_cache: Optional[APICache] = None
_api_cache_lock = threading.Lock()


def get_api_cache() -> APICache:
    """Get the process-wide response cache."""
    global _api_cache
    with _api_cache_lock:
        if _api_cache is None:
            settings = get_settings()
            _api_cache = APICache(
                max_entries=settings.cache_max_entries,
                stale_seconds=settings.cache_stale_seconds,
            )
        return _api_cache
