"""
Notification helpers for events raised by background services.
"""
from typing import Optional

from storage.models import Notification, NotificationTypeEnum
from storage.service import StorageService


def create_trail_stop_notification(
    storage: StorageService,
    user_id: int,
    *,
    symbol: str,
    quantity: float,
    stop_price: float,
    trail_amount: float,
    trail_percent: Optional[float] = None,
    is_practice: bool,
) -> Notification:
    """
    Record that a trail stop was hit.

    Practice orders describe a simulated sell; live orders ask the user to
    place the sell manually.
    """
    if trail_percent:
        trail_text = f"{trail_percent:g}% trail"
    else:
        trail_text = f"${trail_amount:.2f} trail"

    if is_practice:
        title = f"Trail Stop Triggered (Practice): {symbol}"
        message = (
            f"Simulated sell of {quantity:g} shares of {symbol} at stop ${stop_price:.2f} "
            f"({trail_text})."
        )
    else:
        title = f"Trail Stop Triggered: {symbol}"
        message = (
            f"{symbol} fell to your stop ${stop_price:.2f} ({trail_text}). "
            f"Manual action required: sell {quantity:g} shares in Trading212."
        )

    return storage.create_notification(
        user_id=user_id,
        type=NotificationTypeEnum.TRAIL_STOP_TRIGGERED.value,
        title=title,
        message=message,
        data={
            "symbol": symbol,
            "quantity": quantity,
            "stop_price": stop_price,
            "trail_amount": trail_amount,
            "trail_percent": trail_percent,
            "is_practice": is_practice,
        },
    )
