"""
Storage service - High-level interface for storage operations.
Provides business logic on top of repositories.
"""
from typing import List, Optional, Dict, Any
from datetime import date
from sqlalchemy.orm import Session

from storage.repositories import (
    UserRepository, Trading212AccountRepository, TrailStopOrderRepository,
    NotificationRepository, DailyPnLRepository,
)
from storage.models import (
    User, Trading212Account, TrailStopOrder, Notification, DailyPnL,
    NotificationTypeEnum,
)
from storage.database import Base


class StorageService:
    """
    Main storage service coordinating all repository operations.
    This is the primary interface for backend services to interact with storage.
    """

    def __init__(self, db: Session):
        """Initialize storage service with database session."""
        self.db = db
        # Ensure schema exists for the active DB bind.
        # This keeps API behavior stable across different test DB overrides.
        Base.metadata.create_all(bind=self.db.get_bind())
        self.users = UserRepository(db)
        self.accounts = Trading212AccountRepository(db)
        self.trail_stop_orders = TrailStopOrderRepository(db)
        self.notifications = NotificationRepository(db)
        self.daily_pnl = DailyPnLRepository(db)

    # User operations

    def create_user(self, email: str, name: Optional[str] = None) -> User:
        """Create a new user."""
        return self.users.create(email=email.strip().lower(), name=name)

    def get_user(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        return self.users.get_by_id(user_id)

    def get_or_create_user(self, email: str, name: Optional[str] = None) -> User:
        """Return the user for an email, creating it when missing."""
        existing = self.users.get_by_email(email.strip().lower())
        if existing:
            return existing
        return self.create_user(email=email, name=name)

    # Account operations

    def list_accounts(self, user_id: int, active_only: bool = False) -> List[Trading212Account]:
        """List a user's accounts, default first."""
        return self.accounts.list_for_user(user_id, active_only=active_only)

    def get_account(self, user_id: int, account_id: int) -> Optional[Trading212Account]:
        """Get a user's account by ID."""
        return self.accounts.get_for_user(user_id, account_id)

    def resolve_target_account(self, user_id: int) -> Optional[Trading212Account]:
        """
        Pick the account data endpoints should read when none is specified.

        Returns the default active account, else the first active account.
        """
        active = self.accounts.list_for_user(user_id, active_only=True)
        default = next((acc for acc in active if acc.is_default), None)
        return default or (active[0] if active else None)

    def create_account(self, user_id: int, name: str, api_key: str, is_practice: bool = False,
                       make_default: bool = False, **metadata: Any) -> Trading212Account:
        """
        Create an account, making it default when asked or when it is the first one.

        Existing defaults are cleared before the new default is written.
        """
        should_be_default = make_default or self.accounts.count_for_user(user_id) == 0
        if should_be_default:
            self.accounts.clear_default(user_id)
        return self.accounts.create(
            user_id=user_id,
            name=name,
            api_key=api_key,
            is_practice=is_practice,
            is_default=should_be_default,
            **metadata,
        )

    def update_account(self, account: Trading212Account, **changes: Any) -> Trading212Account:
        """
        Update an account; setting is_default clears the flag elsewhere.

        Clearing the flag on the default promotes the oldest other active
        account. With no other active account the flag stays set.
        """
        if changes.get("is_default") and not account.is_default:
            self.accounts.clear_default(account.user_id, exclude_id=account.id)
        elif changes.get("is_default") is False and account.is_default:
            others = [
                acc for acc in self.accounts.list_for_user(account.user_id, active_only=True)
                if acc.id != account.id
            ]
            if not others:
                changes.pop("is_default")
            else:
                account = self.accounts.update(account, **changes)
                self.accounts.update(others[0], is_default=True)
                return account
        return self.accounts.update(account, **changes)

    def set_default_account(self, account: Trading212Account) -> Trading212Account:
        """Make an account the user's only default."""
        self.accounts.clear_default(account.user_id, exclude_id=account.id)
        return self.accounts.update(account, is_default=True)

    def delete_account(self, account: Trading212Account) -> Optional[Trading212Account]:
        """
        Delete an account. When it was the default, the first remaining
        account is promoted.

        Returns:
            The promoted account, if any
        """
        user_id = account.user_id
        was_default = bool(account.is_default)
        self.accounts.delete(account)
        if not was_default:
            return None
        remaining = self.accounts.list_for_user(user_id)
        if not remaining:
            return None
        return self.accounts.update(remaining[0], is_default=True)

    # Trail stop operations

    def list_trail_stop_orders(self, user_id: int) -> List[TrailStopOrder]:
        """List a user's trail stop orders, newest first."""
        return self.trail_stop_orders.list_for_user(user_id)

    def get_trail_stop_order(self, user_id: int, order_id: int) -> Optional[TrailStopOrder]:
        """Get a user's trail stop order."""
        return self.trail_stop_orders.get_for_user(user_id, order_id)

    def resolve_order_account(self, order: TrailStopOrder) -> Optional[Trading212Account]:
        """
        Resolve which account prices an order.

        Uses the order's own account when set; otherwise the user's default,
        then any active account, then the first account.
        """
        if order.account_id is not None:
            return self.accounts.get_for_user(order.user_id, order.account_id)
        accounts = self.accounts.list_for_user(order.user_id)
        return (
            next((acc for acc in accounts if acc.is_default), None)
            or next((acc for acc in accounts if acc.is_active), None)
            or (accounts[0] if accounts else None)
        )

    # Notification operations

    def create_notification(self, user_id: int, type: str, title: str, message: str,
                            data: Optional[Dict[str, Any]] = None) -> Notification:
        """Create an in-app notification."""
        return self.notifications.create(user_id=user_id, type=type, title=title, message=message, data=data)

    def create_welcome_notification(self, user_id: int) -> Notification:
        """Create the first-run welcome notification."""
        return self.create_notification(
            user_id=user_id,
            type=NotificationTypeEnum.WELCOME.value,
            title="Welcome to Trading212 Advanced Trade!",
            message="Your account has been set up successfully.",
        )

    # Daily P/L operations

    def record_daily_pnl(self, user_id: int, account_id: int, day: date, **values: Any) -> DailyPnL:
        """Upsert a day's P/L snapshot."""
        return self.daily_pnl.upsert(user_id=user_id, account_id=account_id, day=day, **values)

    def get_daily_pnl(self, user_id: int, start: Optional[date] = None, end: Optional[date] = None,
                      account_id: Optional[int] = None) -> List[DailyPnL]:
        """Get snapshots newest first."""
        return self.daily_pnl.list_for_user(user_id, start=start, end=end, account_id=account_id)
