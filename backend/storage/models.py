"""
Database models for the Trading212 dashboard.
Defines the schema for users, linked Trading212 accounts, trail stop orders,
notifications and daily P/L snapshots.
"""
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Date, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint,
)
from sqlalchemy.sql import func
import enum

from storage.database import Base


class NotificationTypeEnum(str, enum.Enum):
    """Notification type enumeration."""
    WELCOME = "welcome"
    TRAIL_STOP_TRIGGERED = "trail_stop_triggered"
    INFO = "info"


# Database Models

class User(Base):
    """
    User model - owner of linked accounts, orders and notifications.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=True)
    email = Column(String(320), nullable=False, unique=True, index=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class Trading212Account(Base):
    """
    Trading212Account model - a linked brokerage account and its API key.
    """
    __tablename__ = "trading212_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_trading212_accounts_user_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    api_key = Column(Text, nullable=False)

    is_practice = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_default = Column(Boolean, default=False, nullable=False)

    # Upstream metadata refreshed on connection tests
    account_id = Column(String(100), nullable=True)  # Trading212 account ID
    currency = Column(String(10), nullable=True)
    cash = Column(Float, nullable=True)
    last_connected = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class TrailStopOrder(Base):
    """
    TrailStopOrder model - application-side trailing stop tracked against live prices.
    """
    __tablename__ = "trail_stop_orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(
        Integer,
        ForeignKey("trading212_accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    symbol = Column(String(40), nullable=False, index=True)
    quantity = Column(Float, nullable=False)
    trail_amount = Column(Float, nullable=False, default=0.0)
    trail_percent = Column(Float, nullable=True)
    stop_price = Column(Float, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_practice = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class Notification(Base):
    """
    Notification model - in-app messages for a user.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False, index=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class DailyPnL(Base):
    """
    DailyPnL model - one P/L snapshot per user, account and calendar day.
    """
    __tablename__ = "daily_pnl"
    __table_args__ = (
        UniqueConstraint("user_id", "account_id", "date", name="uq_daily_pnl_user_account_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(
        Integer,
        ForeignKey("trading212_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date = Column(Date, nullable=False, index=True)

    total_pnl = Column(Float, nullable=False, default=0.0)
    today_pnl = Column(Float, nullable=False, default=0.0)
    total_value = Column(Float, nullable=False, default=0.0)
    cash = Column(Float, nullable=True)
    currency = Column(String(10), nullable=False, default="USD")
    positions = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)
