"""
Tests for trail stop monitoring and trigger notifications.
"""
import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from integrations.trading212_client import Trading212Error
from services import trail_stop_monitor
from services.trail_stop_monitor import TrailStopMonitor, potential_stop_price
from storage.database import Base
from storage.models import NotificationTypeEnum
from storage.service import StorageService


class FakeClient:
    def __init__(self, market):
        self.market = market

    async def get_positions(self):
        self.market.calls += 1
        if self.market.error:
            raise Trading212Error(self.market.error)
        return [{"ticker": ticker, "currentPrice": price} for ticker, price in self.market.prices.items()]


class Market:
    def __init__(self, **prices):
        self.prices = prices
        self.calls = 0
        self.error = None

    def __call__(self, api_key, is_practice):
        return FakeClient(self)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def seeded(session_factory):
    db = session_factory()
    storage = StorageService(db)
    user = storage.create_user(email="stops@example.com")
    account = storage.create_account(user_id=user.id, name="Main", api_key="k" * 40, is_practice=True)
    ids = {"user_id": user.id, "account_id": account.id}
    db.close()
    return ids


def _add_order(session_factory, user_id, **kwargs):
    db = session_factory()
    try:
        order = StorageService(db).trail_stop_orders.create(user_id=user_id, **kwargs)
        return order.id
    finally:
        db.close()


def _load(session_factory, user_id, order_id):
    db = session_factory()
    try:
        storage = StorageService(db)
        order = storage.get_trail_stop_order(user_id, order_id)
        notifications = storage.notifications.list_for_user(user_id)
        return order, notifications
    finally:
        db.close()


def test_potential_stop_price():
    assert potential_stop_price(100.0, 5.0, None) == pytest.approx(95.0)
    assert potential_stop_price(100.0, 5.0, 10.0) == pytest.approx(90.0)
    assert potential_stop_price(100.0, 0.0, None) == pytest.approx(100.0)


def test_first_pass_sets_stop_without_triggering(session_factory, seeded):
    market = Market(AAPL=100.0)
    order_id = _add_order(session_factory, seeded["user_id"], symbol="AAPL", quantity=2, trail_amount=5.0)
    result = asyncio.run(TrailStopMonitor(session_factory, client_factory=market).run_once())

    assert result == {"success": True, "processed": 1, "triggered": 0, "message": "Monitored 1 orders, 0 triggered"}
    order, notifications = _load(session_factory, seeded["user_id"], order_id)
    assert order.stop_price == pytest.approx(95.0)
    assert order.is_active is True
    assert notifications == []


def test_stop_ratchets_up_but_never_down(session_factory, seeded):
    market = Market(AAPL=100.0)
    monitor = TrailStopMonitor(session_factory, client_factory=market)
    order_id = _add_order(session_factory, seeded["user_id"], symbol="AAPL", quantity=2, trail_percent=10.0)

    asyncio.run(monitor.run_once())
    market.prices["AAPL"] = 120.0
    asyncio.run(monitor.run_once())
    order, _ = _load(session_factory, seeded["user_id"], order_id)
    assert order.stop_price == pytest.approx(108.0)

    market.prices["AAPL"] = 110.0
    asyncio.run(monitor.run_once())
    order, _ = _load(session_factory, seeded["user_id"], order_id)
    assert order.stop_price == pytest.approx(108.0)
    assert order.is_active is True


def test_trigger_notifies_and_deactivates_practice_order(session_factory, seeded):
    market = Market(AAPL=100.0)
    monitor = TrailStopMonitor(session_factory, client_factory=market)
    order_id = _add_order(session_factory, seeded["user_id"], symbol="AAPL", quantity=3, trail_amount=5.0)
    asyncio.run(monitor.run_once())

    market.prices["AAPL"] = 94.0
    result = asyncio.run(monitor.run_once())
    assert result["triggered"] == 1

    order, notifications = _load(session_factory, seeded["user_id"], order_id)
    assert order.is_active is False
    assert len(notifications) == 1
    notification = notifications[0]
    assert notification.type == NotificationTypeEnum.TRAIL_STOP_TRIGGERED.value
    assert notification.title == "Trail Stop Triggered (Practice): AAPL"
    assert notification.data["stop_price"] == pytest.approx(95.0)
    assert notification.data["quantity"] == 3

    # Inactive orders are no longer evaluated
    assert asyncio.run(monitor.run_once())["processed"] == 0


def test_live_order_asks_for_manual_action(session_factory, seeded):
    market = Market(TSLA=50.0)
    monitor = TrailStopMonitor(session_factory, client_factory=market)
    order_id = _add_order(
        session_factory, seeded["user_id"], symbol="TSLA", quantity=1, trail_amount=1.0, is_practice=False
    )
    asyncio.run(monitor.run_once())
    market.prices["TSLA"] = 49.0
    asyncio.run(monitor.run_once())

    _, notifications = _load(session_factory, seeded["user_id"], order_id)
    assert notifications[0].title == "Trail Stop Triggered: TSLA"
    assert "Manual action required" in notifications[0].message


def test_missing_position_is_skipped(session_factory, seeded):
    market = Market(MSFT=10.0)
    _add_order(session_factory, seeded["user_id"], symbol="AAPL", quantity=1, trail_amount=1.0)
    result = asyncio.run(TrailStopMonitor(session_factory, client_factory=market).run_once())
    assert result["processed"] == 0


def test_positions_fetched_once_per_account(session_factory, seeded):
    market = Market(AAPL=100.0, MSFT=200.0)
    _add_order(session_factory, seeded["user_id"], symbol="AAPL", quantity=1, trail_amount=1.0)
    _add_order(session_factory, seeded["user_id"], symbol="MSFT", quantity=1, trail_amount=1.0)
    result = asyncio.run(TrailStopMonitor(session_factory, client_factory=market).run_once())
    assert result["processed"] == 2
    assert market.calls == 1


def test_upstream_error_skips_order_and_continues(session_factory, seeded):
    market = Market(AAPL=100.0)
    market.error = "upstream down"
    _add_order(session_factory, seeded["user_id"], symbol="AAPL", quantity=1, trail_amount=1.0)
    result = asyncio.run(TrailStopMonitor(session_factory, client_factory=market).run_once())
    assert result["success"] is True
    assert result["processed"] == 0


def test_failed_trigger_still_counts_as_processed(session_factory, seeded, monkeypatch):
    market = Market(AAPL=100.0)
    monitor = TrailStopMonitor(session_factory, client_factory=market)
    order_id = _add_order(session_factory, seeded["user_id"], symbol="AAPL", quantity=1, trail_amount=5.0)
    asyncio.run(monitor.run_once())

    def _write_fails(*args, **kwargs):
        raise SQLAlchemyError("notification write failed")

    monkeypatch.setattr(trail_stop_monitor, "create_trail_stop_notification", _write_fails)
    market.prices["AAPL"] = 90.0
    result = asyncio.run(monitor.run_once())
    assert result["processed"] == 1
    assert result["triggered"] == 0

    order, notifications = _load(session_factory, seeded["user_id"], order_id)
    assert order.is_active is True
    assert notifications == []


def test_user_without_account_is_skipped(session_factory):
    db = session_factory()
    user = StorageService(db).create_user(email="noaccount@example.com")
    user_id = user.id
    db.close()
    _add_order(session_factory, user_id, symbol="AAPL", quantity=1, trail_amount=1.0)
    market = Market(AAPL=100.0)
    result = asyncio.run(TrailStopMonitor(session_factory, client_factory=market).run_once())
    assert result["processed"] == 0
    assert market.calls == 0


def test_start_is_skipped_under_pytest(session_factory):
    monitor = TrailStopMonitor(session_factory, client_factory=Market())

    async def scenario():
        return monitor.start(), monitor.is_running(), await monitor.stop()

    assert asyncio.run(scenario()) == (False, False, False)
