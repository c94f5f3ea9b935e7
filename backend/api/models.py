"""
API Data Models and Contracts.
Defines Pydantic models for request/response validation.

Request models accept loosely-typed optional fields; routes validate them
and answer with 400 and a specific message rather than a schema error.
"""
from typing import Optional, List, Dict, Any
from datetime import date as date_type, datetime
from pydantic import BaseModel, Field


# ============================================================================
# Shared
# ============================================================================

class MessageResponse(BaseModel):
    """Plain acknowledgement."""
    message: str = Field(..., description="Human-readable outcome")


# ============================================================================
# Trading212 Accounts
# ============================================================================

class AccountCreateRequest(BaseModel):
    """Link a new Trading212 account."""
    name: Optional[str] = Field(None, description="Display name, unique per user")
    api_key: Optional[str] = Field(None, description="Trading212 API key")
    is_practice: bool = Field(default=False, description="Use the demo (practice) environment")
    is_default: bool = Field(default=False, description="Make this the default account")


class AccountUpdateRequest(BaseModel):
    """Partial account update; omitted fields are left unchanged."""
    name: Optional[str] = Field(None, description="New display name")
    api_key: Optional[str] = Field(None, description="Replacement API key (re-validated)")
    is_practice: Optional[bool] = Field(None, description="Practice or live environment")
    is_active: Optional[bool] = Field(None, description="Whether the account is used for data")
    is_default: Optional[bool] = Field(None, description="Make this the default account")


class AccountResponse(BaseModel):
    """Linked account without its API key."""
    id: int = Field(..., description="Account ID")
    name: str = Field(..., description="Display name")
    is_practice: bool = Field(..., description="Practice (demo) account")
    is_active: bool = Field(..., description="Active flag")
    is_default: bool = Field(..., description="Default flag")
    currency: Optional[str] = Field(None, description="Account currency code")
    cash: Optional[float] = Field(None, description="Free cash at last connection")
    last_connected: Optional[datetime] = Field(None, description="Last successful connection")
    last_error: Optional[str] = Field(None, description="Last connection error")
    api_key_preview: Optional[str] = Field(None, description="Masked API key")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class AccountsResponse(BaseModel):
    """Account list."""
    accounts: List[AccountResponse] = Field(default_factory=list, description="Accounts, default first")


class AccountMutationResponse(BaseModel):
    """Account plus outcome message."""
    account: AccountResponse = Field(..., description="The created or updated account")
    message: str = Field(..., description="Outcome message")


# ============================================================================
# Trail Stop Orders
# ============================================================================

class TrailStopOrderCreateRequest(BaseModel):
    """Create a trail stop order."""
    symbol: Optional[str] = Field(None, description="Instrument ticker")
    quantity: Optional[float] = Field(None, description="Shares covered by the stop")
    trail_amount: Optional[float] = Field(None, description="Fixed trail distance")
    trail_percent: Optional[float] = Field(None, description="Trail distance as a percentage of price")
    is_practice: bool = Field(default=True, description="Simulate execution instead of asking for manual action")
    account_id: Optional[int] = Field(None, description="Account used for pricing")


class TrailStopOrderUpdateRequest(BaseModel):
    """Partial order update; omitted fields are left unchanged."""
    quantity: Optional[float] = Field(None, description="Shares covered by the stop")
    trail_amount: Optional[float] = Field(None, description="Fixed trail distance")
    trail_percent: Optional[float] = Field(None, description="Trail percentage (null clears it)")
    stop_price: Optional[float] = Field(None, description="Current stop level (null clears it)")
    is_active: Optional[bool] = Field(None, description="Whether the monitor evaluates the order")


class TrailStopOrderResponse(BaseModel):
    """Trail stop order."""
    id: int = Field(..., description="Order ID")
    account_id: Optional[int] = Field(None, description="Pricing account")
    symbol: str = Field(..., description="Instrument ticker")
    quantity: float = Field(..., description="Shares covered")
    trail_amount: float = Field(..., description="Fixed trail distance")
    trail_percent: Optional[float] = Field(None, description="Trail percentage")
    stop_price: Optional[float] = Field(None, description="Current stop level")
    is_active: bool = Field(..., description="Active flag")
    is_practice: bool = Field(..., description="Practice flag")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class TrailStopOrdersResponse(BaseModel):
    orders: List[TrailStopOrderResponse] = Field(default_factory=list, description="Orders, newest first")


class TrailStopOrderMutationResponse(BaseModel):
    order: TrailStopOrderResponse = Field(..., description="The created or updated order")
    message: str = Field(..., description="Outcome message")


class TrailStopOrderDetailResponse(BaseModel):
    order: TrailStopOrderResponse = Field(..., description="Order")


class MonitorRunResponse(BaseModel):
    """Result of one monitor pass."""
    success: bool = Field(..., description="Pass completed")
    processed: int = Field(..., description="Orders priced against a live position")
    triggered: int = Field(..., description="Orders whose stop was hit")
    message: str = Field(..., description="Summary")


# ============================================================================
# Notifications
# ============================================================================

class NotificationCreateRequest(BaseModel):
    type: Optional[str] = Field(None, description="Notification type")
    title: Optional[str] = Field(None, description="Title")
    message: Optional[str] = Field(None, description="Body")
    data: Optional[Dict[str, Any]] = Field(None, description="Structured payload")


class NotificationUpdateRequest(BaseModel):
    is_read: bool = Field(default=True, description="Read flag")


class NotificationResponse(BaseModel):
    id: int = Field(..., description="Notification ID")
    type: str = Field(..., description="Notification type")
    title: str = Field(..., description="Title")
    message: str = Field(..., description="Body")
    data: Optional[Dict[str, Any]] = Field(None, description="Structured payload")
    is_read: bool = Field(..., description="Read flag")
    created_at: datetime = Field(..., description="Creation timestamp")


class NotificationsResponse(BaseModel):
    notifications: List[NotificationResponse] = Field(default_factory=list, description="Newest first")


class NotificationMutationResponse(BaseModel):
    notification: NotificationResponse = Field(..., description="The created or updated notification")
    message: str = Field(..., description="Outcome message")


# ============================================================================
# Daily P/L
# ============================================================================

class DailyPnLCaptureRequest(BaseModel):
    account_id: Optional[int] = Field(None, description="Capture one account instead of all active ones")
    force_refresh: bool = Field(default=False, description="Bypass the cache")


class DailyPnLRecord(BaseModel):
    id: int = Field(..., description="Record ID")
    account_id: int = Field(..., description="Account")
    date: date_type = Field(..., description="Calendar day")
    total_pnl: float = Field(..., description="Total unrealized P/L")
    today_pnl: float = Field(..., description="P/L for the day")
    total_value: float = Field(..., description="Position value")
    cash: Optional[float] = Field(None, description="Free cash")
    currency: str = Field(..., description="Currency code")
    positions: int = Field(..., description="Open position count")


class DayPnL(BaseModel):
    date: date_type = Field(..., description="Calendar day")
    today_pnl: float = Field(..., description="P/L for the day")


class DailyPnLSummary(BaseModel):
    total_days: int = Field(..., description="Records in range")
    total_pnl_change: float = Field(..., description="Newest total minus oldest total")
    best_day: Optional[DayPnL] = Field(None, description="Highest daily P/L")
    worst_day: Optional[DayPnL] = Field(None, description="Lowest daily P/L")
    average_daily_pnl: float = Field(..., description="Mean daily P/L")


class DailyPnLResponse(BaseModel):
    daily_pnl: List[DailyPnLRecord] = Field(default_factory=list, description="Records, newest first")
    summary: DailyPnLSummary = Field(..., description="Range summary")


# ============================================================================
# User
# ============================================================================

class ConnectionAccount(BaseModel):
    id: int = Field(..., description="Account ID")
    name: str = Field(..., description="Display name")
    is_practice: bool = Field(..., description="Practice flag")
    is_default: bool = Field(..., description="Default flag")


class ConnectionStatusResponse(BaseModel):
    has_api_key: bool = Field(..., description="At least one active account exists")
    accounts: List[ConnectionAccount] = Field(default_factory=list, description="Active accounts")
