"""
Background cache refresh for users with active Trading212 accounts.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.settings import get_settings
from services.api_batcher import AccountRef
from services.trading212_service import OptimizedTrading212Service, get_trading212_service
from storage.database import SessionLocal
from storage.repositories import Trading212AccountRepository, UserRepository

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    users_processed: int = 0
    accounts_processed: int = 0
    errors: int = 0
    execution_time_ms: float = 0.0


class BackgroundSyncService:
    """
    Periodically warms the cache for active users.

    Features:
    - Bounded users per cycle and accounts per user
    - Pause between users to stay under upstream limits
    - Per-user error isolation
    """

    def __init__(
        self,
        service: OptimizedTrading212Service,
        session_factory: Callable[[], Session],
        interval_seconds: float = 300.0,
        max_users: int = 10,
        max_accounts: int = 5,
        user_delay_seconds: float = 1.0,
        enabled: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service = service
        self.session_factory = session_factory
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.max_users = max(1, int(max_users))
        self.max_accounts = max(1, int(max_accounts))
        self.user_delay_seconds = max(0.0, float(user_delay_seconds))
        self.enabled = enabled
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.last_sync: Optional[datetime] = None
        self.last_stats: Optional[SyncStats] = None

    def _load_targets(self, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            users = UserRepository(db)
            accounts = Trading212AccountRepository(db)
            if user_id is None:
                candidates = users.get_with_active_accounts(limit=self.max_users)
            else:
                user = users.get_by_id(user_id)
                candidates = [user] if user else []
            targets = []
            for user in candidates:
                refs = [
                    AccountRef(id=acc.id, api_key=acc.api_key, is_practice=acc.is_practice, name=acc.name)
                    for acc in accounts.list_for_user(user.id, active_only=True, limit=self.max_accounts)
                    if acc.api_key
                ]
                targets.append({"user_id": user.id, "accounts": refs})
            return targets
        finally:
            db.close()

    async def run_sync(self) -> SyncStats:
        """Run one sync cycle across active users."""
        started = time.monotonic()
        stats = SyncStats()
        try:
            targets = self._load_targets()
        except SQLAlchemyError as exc:
            logger.error("Background sync could not load users: %s", exc)
            stats.errors += 1
            targets = []

        logger.info("Background sync cycle starting for %d users", len(targets))
        for index, target in enumerate(targets):
            if index > 0 and self.user_delay_seconds:
                await self._sleep(self.user_delay_seconds)
            if not target["accounts"]:
                continue
            try:
                synced = await self.service.background_sync(target["user_id"], target["accounts"])
                stats.accounts_processed += synced
                stats.users_processed += 1
            except Exception as exc:
                stats.errors += 1
                logger.error("Background sync failed for user %s: %s", target["user_id"], exc)

        stats.execution_time_ms = round((time.monotonic() - started) * 1000, 1)
        self.last_sync = datetime.now(timezone.utc)
        self.last_stats = stats
        logger.info(
            "Background sync cycle done: users=%d accounts=%d errors=%d (%.1fms)",
            stats.users_processed, stats.accounts_processed, stats.errors, stats.execution_time_ms,
        )
        return stats

    async def sync_user(self, user_id: int) -> Dict[str, Any]:
        """Sync a single user's active accounts on demand."""
        try:
            targets = self._load_targets(user_id=user_id)
            if not targets or not targets[0]["accounts"]:
                return {"success": True, "accounts_processed": 0, "errors": 0}
            synced = await self.service.background_sync(user_id, targets[0]["accounts"])
            return {"success": True, "accounts_processed": synced, "errors": 0}
        except Exception as exc:
            logger.error("Manual sync failed for user %s: %s", user_id, exc)
            return {"success": False, "accounts_processed": 0, "errors": 1}

    async def _loop(self, stop_event: asyncio.Event) -> None:
        logger.info("Background sync started (interval=%ss)", self.interval_seconds)
        while not stop_event.is_set():
            await self.run_sync()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Background sync stopped")

    def start(self) -> bool:
        """Start the sync loop on the running event loop (idempotent)."""
        if not self.enabled:
            return False
        if "PYTEST_CURRENT_TEST" in os.environ:
            return False
        if self.is_running():
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(self._stop_event))
        return True

    async def stop(self) -> bool:
        """Stop the sync loop (idempotent)."""
        task = self._task
        if task is None or task.done():
            self._task = None
            return False
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.TimeoutError:
            task.cancel()
        self._task = None
        return True

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def health_check(self) -> Dict[str, Any]:
        next_sync = None
        if self.is_running() and self.last_sync is not None:
            next_sync = (self.last_sync + timedelta(seconds=self.interval_seconds)).isoformat()
        return {
            "is_running": self.is_running(),
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "next_sync": next_sync,
            "last_stats": asdict(self.last_stats) if self.last_stats else None,
            "stats": {
                "cache": self.service.get_cache_stats(),
                "batches": self.service.get_batch_stats(),
            },
        }


_background_sync: Optional[BackgroundSyncService] = None


def get_background_sync_service() -> BackgroundSyncService:
    """Get the process-wide sync service bound to the app database."""
    global _background_sync
    if _background_sync is None:
        settings = get_settings()
        _background_sync = BackgroundSyncService(
            service=get_trading212_service(),
            session_factory=SessionLocal,
            interval_seconds=settings.background_sync_interval_seconds,
            max_users=settings.background_sync_max_users,
            max_accounts=settings.background_sync_max_accounts_per_user,
            user_delay_seconds=settings.background_sync_user_delay_seconds,
            enabled=settings.background_sync_enabled,
        )
    return _background_sync
