"""
Tests for the dashboard API routes.
"""
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app import app
from api import routes as api_routes
from api.middleware import limiter
from integrations.trading212_client import Trading212Error
from services.api_batcher import APIBatcher
from services.api_cache import APICache
from services.rate_limiter import RateLimiter
from services.trading212_service import (
    CircuitOpenError,
    OptimizedTrading212Service,
    set_trading212_service,
)
from services.trail_stop_monitor import get_trail_stop_monitor
from storage.database import Base, get_db
from storage.service import StorageService

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_api_routes.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

GOOD_KEY = "good-" + "x" * 40
OTHER_KEY = "good-" + "y" * 40
BAD_KEY = "bad-" + "z" * 40


def override_get_db():
    """Override database dependency for testing."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


client = TestClient(app)


class FakeTrading212Client:
    """Upstream stand-in: keys starting with `bad` are rejected."""

    def __init__(self, api_key, is_practice):
        self.api_key = api_key
        self.is_practice = is_practice

    def _check(self):
        if self.api_key.startswith("bad"):
            raise Trading212Error("Trading212 API error (401)")

    async def validate_connection(self):
        return not self.api_key.startswith("bad")

    async def get_account(self):
        self._check()
        return {"id": 4242, "cash": 1000.0, "currencyCode": "GBP", "result": 15.0, "ppl": 30.0}

    async def get_positions(self):
        self._check()
        return [
            {"ticker": "AAPL_US_EQ", "quantity": 2, "currentPrice": 110.0, "ppl": 20.0},
            {"ticker": "MSFT_US_EQ", "quantity": 1, "currentPrice": 300.0, "ppl": 10.0},
        ]

    async def get_orders(self):
        self._check()
        return [{"id": 1, "ticker": "AAPL_US_EQ"}]


@pytest.fixture(autouse=True)
def setup_database(monkeypatch):
    """Create and drop test database for each test; isolate upstream and caches."""
    app.dependency_overrides[get_db] = override_get_db
    Base.metadata.create_all(bind=engine)
    cache = APICache()
    service = OptimizedTrading212Service(
        cache=cache,
        batcher=APIBatcher(cache, client_factory=FakeTrading212Client, batch_delay_ms=1),
        rate_limiter=RateLimiter(window_seconds=60, max_requests=100),
    )
    set_trading212_service(service)
    monkeypatch.setattr(api_routes, "_new_client", FakeTrading212Client)
    monkeypatch.setattr(get_trail_stop_monitor(), "client_factory", FakeTrading212Client)
    limiter.reset()
    yield service
    set_trading212_service(None)
    Base.metadata.drop_all(bind=engine)
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def user_id():
    db = TestingSessionLocal()
    try:
        return StorageService(db).create_user(email="trader@example.com", name="Trader").id
    finally:
        db.close()


@pytest.fixture
def headers(user_id):
    return {"X-User-Id": str(user_id)}


def _create_account(headers, name="Main", api_key=GOOD_KEY, **extra):
    payload = {"name": name, "api_key": api_key, "is_practice": True, **extra}
    response = client.post("/trading212/accounts", json=payload, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["account"]


# ============================================================================
# Identity
# ============================================================================

def test_missing_user_header_is_unauthorized():
    response = client.get("/trading212/accounts")
    assert response.status_code == 401
    assert response.json()["detail"] == "Unauthorized"


def test_non_numeric_user_header_is_unauthorized():
    response = client.get("/trading212/accounts", headers={"X-User-Id": "abc"})
    assert response.status_code == 401


def test_unknown_user_is_not_found():
    response = client.get("/trading212/accounts", headers={"X-User-Id": "999"})
    assert response.status_code == 404
    assert response.json()["detail"] == "User not found"


# ============================================================================
# Accounts
# ============================================================================

def test_create_account_with_valid_key(headers):
    response = client.post(
        "/trading212/accounts",
        json={"name": "Main", "api_key": GOOD_KEY, "is_practice": True},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Account added successfully"
    account = body["account"]
    assert account["is_default"] is True
    assert account["currency"] == "GBP"
    assert account["cash"] == 1000.0
    assert account["last_connected"] is not None
    assert account["last_error"] is None
    assert account["api_key_preview"] == f"{GOOD_KEY[:8]}...{GOOD_KEY[-4:]}"
    assert "api_key" not in account


def test_create_account_with_failing_key_is_still_stored(headers):
    response = client.post("/trading212/accounts", json={"name": "Broken", "api_key": BAD_KEY}, headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Account added but connection failed: Invalid API key or connection failed"
    assert body["account"]["last_error"] == "Invalid API key or connection failed"
    assert body["account"]["last_connected"] is None


@pytest.mark.parametrize(
    "payload,detail",
    [
        ({"api_key": GOOD_KEY}, "Account name and API key are required"),
        ({"name": "Main"}, "Account name and API key are required"),
        ({"name": "Main", "api_key": "short"}, "API key appears to be too short. Please check your key."),
    ],
)
def test_create_account_validation(headers, payload, detail):
    response = client.post("/trading212/accounts", json=payload, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == detail


def test_create_account_duplicate_name(headers):
    _create_account(headers)
    response = client.post("/trading212/accounts", json={"name": "Main", "api_key": OTHER_KEY}, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Account name already exists. Please choose a different name."


def test_list_accounts_default_first(headers):
    _create_account(headers, name="First")
    _create_account(headers, name="Second", api_key=OTHER_KEY, is_default=True)
    response = client.get("/trading212/accounts", headers=headers)
    assert response.status_code == 200
    names = [acc["name"] for acc in response.json()["accounts"]]
    assert names == ["Second", "First"]


def test_get_account_of_other_user_is_not_found(headers):
    account = _create_account(headers)
    db = TestingSessionLocal()
    try:
        other_id = StorageService(db).create_user(email="other@example.com").id
    finally:
        db.close()
    response = client.get(f"/trading212/accounts/{account['id']}", headers={"X-User-Id": str(other_id)})
    assert response.status_code == 404
    assert response.json()["detail"] == "Account not found"


def test_update_account_rename_and_key_change(headers):
    account = _create_account(headers)
    _create_account(headers, name="Taken", api_key=OTHER_KEY)

    conflict = client.put(f"/trading212/accounts/{account['id']}", json={"name": "Taken"}, headers=headers)
    assert conflict.status_code == 400

    short = client.put(f"/trading212/accounts/{account['id']}", json={"api_key": "short"}, headers=headers)
    assert short.status_code == 400

    response = client.put(
        f"/trading212/accounts/{account['id']}",
        json={"name": "Renamed", "api_key": BAD_KEY},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["account"]["name"] == "Renamed"
    assert body["account"]["last_error"] == "Invalid API key or connection failed"
    assert body["message"].startswith("Account updated but connection failed")


def test_delete_default_account_promotes_next(headers):
    first = _create_account(headers, name="First")
    second = _create_account(headers, name="Second", api_key=OTHER_KEY)
    response = client.delete(f"/trading212/accounts/{first['id']}", headers=headers)
    assert response.status_code == 200
    assert response.json()["message"] == "Account deleted successfully"

    accounts = client.get("/trading212/accounts", headers=headers).json()["accounts"]
    assert [(acc["id"], acc["is_default"]) for acc in accounts] == [(second["id"], True)]


def test_set_default_account(headers):
    _create_account(headers, name="First")
    second = _create_account(headers, name="Second", api_key=OTHER_KEY)
    response = client.post(f"/trading212/accounts/{second['id']}/set-default", headers=headers)
    assert response.status_code == 200
    assert response.json()["account"]["is_default"] is True

    client.put(f"/trading212/accounts/{second['id']}", json={"is_active": False}, headers=headers)
    inactive = client.post(f"/trading212/accounts/{second['id']}/set-default", headers=headers)
    assert inactive.status_code == 400
    assert inactive.json()["detail"] == "Cannot set inactive account as default"


def test_unsetting_default_moves_it_to_next_account(headers):
    first = _create_account(headers, name="First")
    second = _create_account(headers, name="Second", api_key=OTHER_KEY)
    response = client.put(f"/trading212/accounts/{first['id']}", json={"is_default": False}, headers=headers)
    assert response.status_code == 200
    assert response.json()["account"]["is_default"] is False

    accounts = client.get("/trading212/accounts", headers=headers).json()["accounts"]
    assert [(acc["id"], acc["is_default"]) for acc in accounts] == [(second["id"], True), (first["id"], False)]


def test_deprecated_connect_endpoints_are_gone():
    post = client.post("/trading212/connect")
    assert post.status_code == 410
    assert post.json()["migration"]["new_endpoint"] == "/trading212/accounts"
    delete = client.delete("/trading212/connect")
    assert delete.status_code == 410
    assert "note" in delete.json()["migration"]


# ============================================================================
# Optimized data
# ============================================================================

def test_optimized_account_without_accounts(headers):
    response = client.get("/trading212/optimized/account", headers=headers)
    assert response.status_code == 400
    assert response.json() == {"error": "No Trading212 accounts configured", "connected": False}


def test_optimized_account_fetch_then_cache_hit(headers):
    account = _create_account(headers)
    first = client.get("/trading212/optimized/account?include_orders=true", headers=headers)
    assert first.status_code == 200
    body = first.json()
    assert body["connected"] is True
    assert body["account_info"]["id"] == account["id"]
    assert body["currency"] == "GBP"
    assert body["stats"]["active_positions"] == 2
    assert body["stats"]["today_pnl"] == 15.0
    assert body["orders"] == [{"id": 1, "ticker": "AAPL_US_EQ"}]
    assert body["cache_stats"]["cache_hit"] is False

    second = client.get("/trading212/optimized/account?include_orders=true", headers=headers)
    assert second.json()["cache_stats"]["cache_hit"] is True
    assert second.json()["orders"] == [{"id": 1, "ticker": "AAPL_US_EQ"}]

    without_orders = client.get("/trading212/optimized/account", headers=headers)
    assert without_orders.json()["cache_stats"]["cache_hit"] is False
    assert without_orders.json()["orders"] == []

    refreshed = client.get("/trading212/optimized/account?force_refresh=true", headers=headers)
    assert refreshed.json()["cache_stats"]["cache_hit"] is False


def test_optimized_account_unknown_account(headers):
    _create_account(headers)
    response = client.get("/trading212/optimized/account?account_id=999", headers=headers)
    assert response.status_code == 404


def test_optimized_account_rate_limited(headers, setup_database, monkeypatch):
    _create_account(headers)
    monkeypatch.setattr(setup_database, "can_make_request", lambda user_id, account_id: False)
    monkeypatch.setattr(setup_database, "get_time_until_reset", lambda user_id, account_id: 12.2)
    response = client.get("/trading212/optimized/account", headers=headers)
    assert response.status_code == 429
    assert response.json() == {"error": "Rate limit exceeded", "retry_after": 13, "connected": True}


def test_optimized_account_circuit_open(headers, setup_database, monkeypatch):
    _create_account(headers)

    async def _open(*args, **kwargs):
        raise CircuitOpenError("Upstream temporarily unavailable (circuit open)")

    monkeypatch.setattr(setup_database, "get_account_data", _open)
    response = client.get("/trading212/optimized/account", headers=headers)
    assert response.status_code == 503


def test_optimized_account_upstream_failure(headers):
    _create_account(headers, name="Broken", api_key=BAD_KEY)
    response = client.get("/trading212/optimized/account", headers=headers)
    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to fetch account data"


def test_optimized_portfolio(headers):
    _create_account(headers)
    response = client.get("/trading212/optimized/portfolio", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert len(body["positions"]) == 2
    assert body["total_value"] == 520.0
    assert body["total_pnl"] == 30.0
    assert body["connected"] is True


def test_multi_account_without_accounts(headers):
    response = client.get("/trading212/optimized/multi-account", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["accounts"] == []
    assert body["connected"] is False
    assert body["error"] == "No Trading212 accounts configured"
    assert body["aggregated_stats"]["total_value"] == 0.0
    assert body["aggregated_stats"]["trail_stop_orders"] == 0


def test_multi_account_with_partial_failure(headers):
    _create_account(headers, name="Good")
    _create_account(headers, name="Broken", api_key=BAD_KEY)
    client.post("/trail-stop/orders", json={"symbol": "aapl_us_eq", "quantity": 1, "trail_amount": 2}, headers=headers)

    response = client.get("/trading212/optimized/multi-account", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["connected"] is True
    by_name = {acc["name"]: acc for acc in body["accounts"]}
    assert by_name["Good"]["error"] is None
    assert by_name["Broken"]["data"] is None
    assert by_name["Broken"]["error"]
    stats = body["aggregated_stats"]
    assert stats["connected_accounts"] == 1
    assert stats["total_value"] == 520.0
    assert stats["trail_stop_orders"] == 1
    assert body["cache_stats"]["total_accounts"] == 2


def test_optimized_accounts_listing(headers):
    _create_account(headers)
    body = client.get("/trading212/optimized/accounts", headers=headers).json()
    assert body["total"] == 1
    assert body["has_active_accounts"] is True


def test_warm_cache(headers, setup_database):
    missing = client.post("/trading212/warm-cache", headers=headers)
    assert missing.status_code == 404

    account = _create_account(headers)
    response = client.post("/trading212/warm-cache", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Cache warming initiated"
    assert body["accounts"] == [{"account_id": account["id"], "name": "Main", "status": "warming_started"}]
    assert body["initiated"] == 1
    assert setup_database.get_cache_stats()["total_entries"] > 0

    info = client.get("/trading212/warm-cache", headers=headers).json()
    assert info["status"] == "ready"


def test_trading212_health(headers, monkeypatch):
    healthy = client.get("/trading212/health", headers=headers)
    assert healthy.status_code == 200
    assert healthy.json()["status"] == "healthy"
    assert healthy.json()["recommendation"] == "API is responding normally"

    class Exploding(FakeTrading212Client):
        async def validate_connection(self):
            raise Trading212Error("boom")

    monkeypatch.setattr(api_routes, "_new_client", Exploding)
    unhealthy = client.get("/trading212/health", headers=headers)
    assert unhealthy.status_code == 503
    assert unhealthy.json()["error"] == "boom"


def test_optimization_health(headers):
    basic = client.get("/health/optimization", headers=headers).json()
    assert basic["status"] == "healthy"
    assert set(basic["services"]) == {"api_cache", "api_batcher", "background_sync"}
    assert "configuration" not in basic

    detailed = client.get("/health/optimization?detailed=true", headers=headers).json()
    assert detailed["configuration"]["cache_ttl_seconds"]["account"] == 300.0
    assert "Consider increasing cache size for better performance" in detailed["recommendations"]


# ============================================================================
# Trail stops
# ============================================================================

@pytest.mark.parametrize(
    "payload,detail",
    [
        ({"quantity": 1, "trail_amount": 1}, "Symbol and quantity are required"),
        ({"symbol": "AAPL", "trail_amount": 1}, "Symbol and quantity are required"),
        ({"symbol": "AAPL", "quantity": 1}, "Either trail amount or trail percentage is required"),
        ({"symbol": "AAPL", "quantity": -1, "trail_amount": 1}, "Quantity must be greater than 0"),
        ({"symbol": "AAPL", "quantity": 1, "trail_amount": -2}, "Trail amount must be greater than 0"),
        ({"symbol": "AAPL", "quantity": 1, "trail_percent": 150}, "Trail percentage must be between 0 and 100"),
    ],
)
def test_create_trail_stop_validation(headers, payload, detail):
    response = client.post("/trail-stop/orders", json=payload, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == detail


def test_trail_stop_crud(headers):
    created = client.post(
        "/trail-stop/orders",
        json={"symbol": "aapl_us_eq", "quantity": 2, "trail_percent": 5},
        headers=headers,
    )
    assert created.status_code == 200
    order = created.json()["order"]
    assert order["symbol"] == "AAPL_US_EQ"
    assert order["trail_amount"] == 0.0
    assert order["is_practice"] is True
    assert order["stop_price"] is None

    listed = client.get("/trail-stop/orders", headers=headers).json()["orders"]
    assert [o["id"] for o in listed] == [order["id"]]

    updated = client.put(
        f"/trail-stop/orders/{order['id']}",
        json={"quantity": 3, "trail_percent": None, "trail_amount": 1.5},
        headers=headers,
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["message"] == "Trail stop order updated successfully"
    assert body["order"]["quantity"] == 3
    assert body["order"]["trail_percent"] is None
    assert body["order"]["trail_amount"] == 1.5

    invalid = client.put(f"/trail-stop/orders/{order['id']}", json={"trail_percent": 100}, headers=headers)
    assert invalid.status_code == 400

    deleted = client.delete(f"/trail-stop/orders/{order['id']}", headers=headers)
    assert deleted.status_code == 200
    assert client.get(f"/trail-stop/orders/{order['id']}", headers=headers).status_code == 404


def test_trail_stop_unknown_account(headers):
    response = client.post(
        "/trail-stop/orders",
        json={"symbol": "AAPL", "quantity": 1, "trail_amount": 1, "account_id": 999},
        headers=headers,
    )
    assert response.status_code == 404
    assert response.json()["detail"] == "Account not found"


def test_trail_stop_monitor_endpoint(headers):
    _create_account(headers)
    client.post("/trail-stop/orders", json={"symbol": "AAPL_US_EQ", "quantity": 1, "trail_amount": 5}, headers=headers)
    response = client.post("/trail-stop/monitor")
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "processed": 1,
        "triggered": 0,
        "message": "Monitored 1 orders, 0 triggered",
    }
    order = client.get("/trail-stop/orders", headers=headers).json()["orders"][0]
    assert order["stop_price"] == 105.0


# ============================================================================
# Notifications
# ============================================================================

def test_notification_flow(headers):
    invalid = client.post("/notifications", json={"type": "info"}, headers=headers)
    assert invalid.status_code == 400

    created = client.post(
        "/notifications",
        json={"type": "info", "title": "Hello", "message": "World", "data": {"k": 1}},
        headers=headers,
    )
    assert created.status_code == 200
    notification = created.json()["notification"]
    assert notification["is_read"] is False

    unread = client.get("/notifications?unread_only=true", headers=headers).json()["notifications"]
    assert [n["id"] for n in unread] == [notification["id"]]

    marked = client.put(f"/notifications/{notification['id']}", json={}, headers=headers)
    assert marked.json()["notification"]["is_read"] is True
    assert client.get("/notifications?unread_only=true", headers=headers).json()["notifications"] == []

    deleted = client.delete(f"/notifications/{notification['id']}", headers=headers)
    assert deleted.json()["message"] == "Notification deleted successfully"
    missing = client.put(f"/notifications/{notification['id']}", json={}, headers=headers)
    assert missing.status_code == 404


# ============================================================================
# Daily P/L
# ============================================================================

def test_capture_daily_pnl_requires_accounts(headers):
    response = client.post("/daily-pnl", json={}, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "No active Trading212 accounts found"


def test_capture_and_read_daily_pnl(headers):
    account = _create_account(headers)
    captured = client.post("/daily-pnl", json={}, headers=headers)
    assert captured.status_code == 200
    body = captured.json()
    assert body["message"] == "Daily P/L snapshots captured"
    assert len(body["results"]) == 1
    result = body["results"][0]
    assert result["account_id"] == account["id"]
    assert result["action"] == "upserted"
    assert result["data"]["total_pnl"] == 30.0
    assert result["data"]["today_pnl"] == 15.0
    assert result["data"]["currency"] == "GBP"
    assert result["data"]["positions"] == 2

    # Same day again overwrites rather than duplicates
    client.post("/daily-pnl", json={"force_refresh": True}, headers=headers)
    history = client.get("/daily-pnl", headers=headers).json()
    assert len(history["daily_pnl"]) == 1
    summary = history["summary"]
    assert summary["total_days"] == 1
    assert summary["total_pnl_change"] == 0.0
    assert summary["best_day"]["today_pnl"] == 15.0
    assert summary["average_daily_pnl"] == 15.0


def test_daily_pnl_summary_over_range(headers, user_id):
    account = _create_account(headers)
    db = TestingSessionLocal()
    try:
        storage = StorageService(db)
        today = date.today()
        for offset, (total, daily) in enumerate([(30.0, 5.0), (25.0, -3.0), (28.0, 8.0)]):
            storage.record_daily_pnl(
                user_id, account["id"], today - timedelta(days=offset),
                total_pnl=total, today_pnl=daily, total_value=100.0,
                cash=None, currency="USD", positions=1,
            )
    finally:
        db.close()

    body = client.get("/daily-pnl?days=30", headers=headers).json()
    assert [r["total_pnl"] for r in body["daily_pnl"]] == [30.0, 25.0, 28.0]
    summary = body["summary"]
    assert summary["total_days"] == 3
    assert summary["total_pnl_change"] == 2.0
    assert summary["best_day"]["today_pnl"] == 8.0
    assert summary["worst_day"]["today_pnl"] == -3.0
    assert summary["average_daily_pnl"] == pytest.approx(10.0 / 3)

    narrowed = client.get(
        f"/daily-pnl?start_date={(date.today() - timedelta(days=1)).isoformat()}", headers=headers
    ).json()
    assert narrowed["summary"]["total_days"] == 2


# ============================================================================
# User
# ============================================================================

def test_connection_status(headers):
    empty = client.get("/user/connection-status", headers=headers).json()
    assert empty == {"has_api_key": False, "accounts": []}

    account = _create_account(headers)
    status = client.get("/user/connection-status", headers=headers).json()
    assert status["has_api_key"] is True
    assert status["accounts"] == [
        {"id": account["id"], "name": "Main", "is_practice": True, "is_default": True}
    ]
