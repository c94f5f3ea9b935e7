"""
Storage module - Database persistence layer.
Provides models, repositories, and services for data storage.
"""
from storage.database import Base, get_db, init_db, SessionLocal
from storage.models import (
    User, Trading212Account, TrailStopOrder, Notification, DailyPnL,
    NotificationTypeEnum,
)
from storage.repositories import (
    UserRepository, Trading212AccountRepository, TrailStopOrderRepository,
    NotificationRepository, DailyPnLRepository,
)
from storage.service import StorageService

__all__ = [
    # Database
    "Base",
    "get_db",
    "init_db",
    "SessionLocal",
    # Models
    "User",
    "Trading212Account",
    "TrailStopOrder",
    "Notification",
    "DailyPnL",
    # Enums
    "NotificationTypeEnum",
    # Repositories
    "UserRepository",
    "Trading212AccountRepository",
    "TrailStopOrderRepository",
    "NotificationRepository",
    "DailyPnLRepository",
    # Service
    "StorageService",
]
