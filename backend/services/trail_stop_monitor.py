"""
Trail stop monitoring.

Prices each active trail stop order against the live position for its
symbol, ratchets the stop upward as the price rises, and notifies the user
when the price falls to the stop.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from config.settings import get_settings
from integrations.trading212_client import ClientFactory, default_client_factory
from services.notifications import create_trail_stop_notification
from storage.database import SessionLocal
from storage.models import TrailStopOrder
from storage.service import StorageService

logger = logging.getLogger(__name__)


def potential_stop_price(price: float, trail_amount: float, trail_percent: Optional[float]) -> float:
    """Stop level implied by the current price and the order's trail."""
    if trail_percent:
        return price - price * (trail_percent / 100)
    return price - (trail_amount or 0.0)


class TrailStopMonitor:
    """Evaluates active trail stop orders one at a time."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: ClientFactory = default_client_factory,
        interval_seconds: float = 60.0,
        enabled: bool = True,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.enabled = enabled
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def run_once(self, db: Optional[Session] = None) -> Dict[str, Any]:
        """
        Evaluate every active order.

        Args:
            db: Session to use; a new one is opened and closed when omitted

        Returns:
            success, processed and triggered counts, and a summary message
        """
        owns_session = db is None
        session = self.session_factory() if owns_session else db
        try:
            storage = StorageService(session)
            orders = storage.trail_stop_orders.get_all_active()
            logger.info("Monitoring %d active trail stop orders", len(orders))

            positions_by_account: Dict[int, List[Dict[str, Any]]] = {}
            processed = 0
            triggered = 0
            for order in orders:
                try:
                    position = await self._find_position(storage, order, positions_by_account)
                except Exception as exc:
                    logger.error("Error pricing trail stop order %s: %s", order.id, exc)
                    session.rollback()
                    continue
                if position is None:
                    continue
                processed += 1
                try:
                    if self._apply_price(storage, order, position):
                        triggered += 1
                except Exception as exc:
                    logger.error("Error processing trail stop order %s: %s", order.id, exc)
                    session.rollback()
        finally:
            if owns_session:
                session.close()

        return {
            "success": True,
            "processed": processed,
            "triggered": triggered,
            "message": f"Monitored {processed} orders, {triggered} triggered",
        }

    async def _find_position(
        self,
        storage: StorageService,
        order: TrailStopOrder,
        positions_by_account: Dict[int, List[Dict[str, Any]]],
    ) -> Optional[Dict[str, Any]]:
        """The live position for the order's symbol, or None when the order is skipped."""
        account = storage.resolve_order_account(order)
        if account is None or not account.api_key:
            logger.info("No Trading212 account found for order %s", order.id)
            return None

        positions = positions_by_account.get(account.id)
        if positions is None:
            client = self.client_factory(account.api_key, account.is_practice)
            positions = await client.get_positions()
            positions_by_account[account.id] = positions

        position = next((p for p in positions if p.get("ticker") == order.symbol), None)
        if position is None:
            logger.info("Position %s not found for order %s", order.symbol, order.id)
        return position

    def _apply_price(self, storage: StorageService, order: TrailStopOrder, position: Dict[str, Any]) -> bool:
        """Ratchet the stop and trigger when the price reached it. Returns whether it triggered."""
        price = float(position.get("currentPrice") or 0.0)
        old_stop = order.stop_price
        candidate = potential_stop_price(price, order.trail_amount, order.trail_percent)

        if not old_stop or candidate > old_stop:
            storage.trail_stop_orders.update(order, stop_price=candidate)
            logger.info("Updated stop price for %s: %.2f", order.symbol, candidate)

        if not old_stop or price > old_stop:
            return False

        logger.info("Trail stop triggered for %s at %.2f", order.symbol, price)
        create_trail_stop_notification(
            storage,
            order.user_id,
            symbol=order.symbol,
            quantity=order.quantity,
            stop_price=old_stop,
            trail_amount=order.trail_amount,
            trail_percent=order.trail_percent,
            is_practice=order.is_practice,
        )
        storage.trail_stop_orders.update(order, is_active=False)
        return True

    async def _loop(self, stop_event: asyncio.Event) -> None:
        logger.info("Trail stop monitor started (interval=%ss)", self.interval_seconds)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Trail stop monitor cycle failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Trail stop monitor stopped")

    def start(self) -> bool:
        """Start the monitor loop on the running event loop (idempotent)."""
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
        """Stop the monitor loop (idempotent)."""
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


_monitor: Optional[TrailStopMonitor] = None


def get_trail_stop_monitor() -> TrailStopMonitor:
    """Get the process-wide monitor bound to the app database."""
    global _monitor
    if _monitor is None:
        settings = get_settings()
        _monitor = TrailStopMonitor(
            session_factory=SessionLocal,
            interval_seconds=settings.trail_stop_monitor_interval_seconds,
            enabled=settings.trail_stop_monitor_enabled,
        )
    return _monitor
