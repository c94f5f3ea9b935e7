"""
Repository classes for database CRUD operations.
Provides abstraction layer between services and database models.
"""
from typing import List, Optional, Dict, Any
from datetime import date, datetime, timezone
from sqlalchemy.orm import Session
from sqlalchemy import and_

from storage.models import (
    User, Trading212Account, TrailStopOrder, Notification, DailyPnL,
)


def _utcnow() -> datetime:
    """Naive UTC timestamp for DB storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRepository:
    """Repository for User CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, email: str, name: Optional[str] = None) -> User:
        """Create a new user."""
        user = User(email=email, name=name)
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_by_email(self, email: str) -> Optional[User]:
        """Get user by email."""
        return self.db.query(User).filter(User.email == email).first()

    def get_with_active_accounts(self, limit: int = 10) -> List[User]:
        """Get users owning at least one active Trading212 account."""
        has_active = (
            self.db.query(Trading212Account.id)
            .filter(and_(Trading212Account.user_id == User.id, Trading212Account.is_active == True))
            .exists()
        )
        return self.db.query(User).filter(has_active).order_by(User.id.asc()).limit(limit).all()


class Trading212AccountRepository:
    """Repository for Trading212Account CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: int, name: str, api_key: str, is_practice: bool = False,
               is_default: bool = False, currency: Optional[str] = None,
               cash: Optional[float] = None, account_id: Optional[str] = None,
               last_connected: Optional[datetime] = None,
               last_error: Optional[str] = None) -> Trading212Account:
        """Create a new linked account."""
        account = Trading212Account(
            user_id=user_id,
            name=name,
            api_key=api_key,
            is_practice=is_practice,
            is_active=True,
            is_default=is_default,
            currency=currency,
            cash=cash,
            account_id=account_id,
            last_connected=last_connected,
            last_error=last_error,
        )
        self.db.add(account)
        self.db.commit()
        self.db.refresh(account)
        return account

    def get_by_id(self, account_id: int) -> Optional[Trading212Account]:
        """Get account by ID."""
        return self.db.query(Trading212Account).filter(Trading212Account.id == account_id).first()

    def get_for_user(self, user_id: int, account_id: int) -> Optional[Trading212Account]:
        """Get an account only if it belongs to the user."""
        return self.db.query(Trading212Account).filter(
            and_(Trading212Account.id == account_id, Trading212Account.user_id == user_id)
        ).first()

    def get_by_name(self, user_id: int, name: str) -> Optional[Trading212Account]:
        """Get a user's account by display name."""
        return self.db.query(Trading212Account).filter(
            and_(Trading212Account.user_id == user_id, Trading212Account.name == name)
        ).first()

    def list_for_user(self, user_id: int, active_only: bool = False,
                      limit: Optional[int] = None) -> List[Trading212Account]:
        """List a user's accounts, default first then oldest first."""
        query = self.db.query(Trading212Account).filter(Trading212Account.user_id == user_id)
        if active_only:
            query = query.filter(Trading212Account.is_active == True)
        query = query.order_by(
            Trading212Account.is_default.desc(),
            Trading212Account.created_at.asc(),
            Trading212Account.id.asc(),
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def count_for_user(self, user_id: int, active_only: bool = False) -> int:
        """Count a user's accounts."""
        query = self.db.query(Trading212Account).filter(Trading212Account.user_id == user_id)
        if active_only:
            query = query.filter(Trading212Account.is_active == True)
        return query.count()

    def clear_default(self, user_id: int, exclude_id: Optional[int] = None) -> int:
        """Unset the default flag on a user's accounts."""
        query = self.db.query(Trading212Account).filter(
            and_(Trading212Account.user_id == user_id, Trading212Account.is_default == True)
        )
        if exclude_id is not None:
            query = query.filter(Trading212Account.id != exclude_id)
        updated = query.update({Trading212Account.is_default: False}, synchronize_session="fetch")
        self.db.commit()
        return updated

    def update(self, account: Trading212Account, **changes: Any) -> Trading212Account:
        """Apply field changes to an account."""
        for field, value in changes.items():
            setattr(account, field, value)
        account.updated_at = _utcnow()
        self.db.commit()
        self.db.refresh(account)
        return account

    def delete(self, account: Trading212Account) -> None:
        """Hard delete an account and detach rows that reference it."""
        self.db.query(TrailStopOrder).filter(TrailStopOrder.account_id == account.id).update(
            {TrailStopOrder.account_id: None}, synchronize_session=False
        )
        self.db.query(DailyPnL).filter(DailyPnL.account_id == account.id).delete(synchronize_session=False)
        self.db.delete(account)
        self.db.commit()


class TrailStopOrderRepository:
    """Repository for TrailStopOrder CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: int, symbol: str, quantity: float, trail_amount: float = 0.0,
               trail_percent: Optional[float] = None, is_practice: bool = True,
               account_id: Optional[int] = None) -> TrailStopOrder:
        """Create a new trail stop order."""
        order = TrailStopOrder(
            user_id=user_id,
            account_id=account_id,
            symbol=symbol,
            quantity=quantity,
            trail_amount=trail_amount,
            trail_percent=trail_percent,
            is_practice=is_practice,
            is_active=True,
        )
        self.db.add(order)
        self.db.commit()
        self.db.refresh(order)
        return order

    def get_by_id(self, order_id: int) -> Optional[TrailStopOrder]:
        """Get order by ID."""
        return self.db.query(TrailStopOrder).filter(TrailStopOrder.id == order_id).first()

    def get_for_user(self, user_id: int, order_id: int) -> Optional[TrailStopOrder]:
        """Get an order only if it belongs to the user."""
        return self.db.query(TrailStopOrder).filter(
            and_(TrailStopOrder.id == order_id, TrailStopOrder.user_id == user_id)
        ).first()

    def list_for_user(self, user_id: int) -> List[TrailStopOrder]:
        """List a user's orders, newest first."""
        return (
            self.db.query(TrailStopOrder)
            .filter(TrailStopOrder.user_id == user_id)
            .order_by(TrailStopOrder.created_at.desc(), TrailStopOrder.id.desc())
            .all()
        )

    def get_all_active(self) -> List[TrailStopOrder]:
        """Get every active order across users."""
        return (
            self.db.query(TrailStopOrder)
            .filter(TrailStopOrder.is_active == True)
            .order_by(TrailStopOrder.id.asc())
            .all()
        )

    def count_active_for_user(self, user_id: int) -> int:
        """Count a user's active orders."""
        return self.db.query(TrailStopOrder).filter(
            and_(TrailStopOrder.user_id == user_id, TrailStopOrder.is_active == True)
        ).count()

    def update(self, order: TrailStopOrder, **changes: Any) -> TrailStopOrder:
        """Apply field changes to an order."""
        for field, value in changes.items():
            setattr(order, field, value)
        order.updated_at = _utcnow()
        self.db.commit()
        self.db.refresh(order)
        return order

    def delete(self, order: TrailStopOrder) -> None:
        """Delete an order."""
        self.db.delete(order)
        self.db.commit()


class NotificationRepository:
    """Repository for Notification CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: int, type: str, title: str, message: str,
               data: Optional[Dict[str, Any]] = None) -> Notification:
        """Create a new notification."""
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            data=data,
            is_read=False,
        )
        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def get_for_user(self, user_id: int, notification_id: int) -> Optional[Notification]:
        """Get a notification only if it belongs to the user."""
        return self.db.query(Notification).filter(
            and_(Notification.id == notification_id, Notification.user_id == user_id)
        ).first()

    def list_for_user(self, user_id: int, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        """List a user's notifications, newest first."""
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read == False)
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    def mark_read(self, notification: Notification, is_read: bool = True) -> Notification:
        """Set the read flag."""
        notification.is_read = is_read
        notification.updated_at = _utcnow()
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def delete(self, notification: Notification) -> None:
        """Delete a notification."""
        self.db.delete(notification)
        self.db.commit()


class DailyPnLRepository:
    """Repository for DailyPnL snapshots."""

    def __init__(self, db: Session):
        self.db = db

    def upsert(self, user_id: int, account_id: int, day: date, total_pnl: float,
               today_pnl: float, total_value: float, cash: Optional[float],
               currency: str, positions: int) -> DailyPnL:
        """Create or overwrite the snapshot for (user, account, day)."""
        row = self.db.query(DailyPnL).filter(
            and_(
                DailyPnL.user_id == user_id,
                DailyPnL.account_id == account_id,
                DailyPnL.date == day,
            )
        ).first()
        if row is None:
            row = DailyPnL(user_id=user_id, account_id=account_id, date=day)
            self.db.add(row)
        row.total_pnl = total_pnl
        row.today_pnl = today_pnl
        row.total_value = total_value
        row.cash = cash
        row.currency = currency
        row.positions = positions
        row.updated_at = _utcnow()
        self.db.commit()
        self.db.refresh(row)
        return row

    def list_for_user(self, user_id: int, start: Optional[date] = None,
                      end: Optional[date] = None,
                      account_id: Optional[int] = None) -> List[DailyPnL]:
        """List snapshots in a date range, newest first."""
        query = self.db.query(DailyPnL).filter(DailyPnL.user_id == user_id)
        if start is not None:
            query = query.filter(DailyPnL.date >= start)
        if end is not None:
            query = query.filter(DailyPnL.date <= end)
        if account_id is not None:
            query = query.filter(DailyPnL.account_id == account_id)
        return query.order_by(DailyPnL.date.desc(), DailyPnL.id.desc()).all()
