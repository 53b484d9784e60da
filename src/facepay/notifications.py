"""
Payment notifications and the dispatcher seam.

Delivering an alert is the platform's job; the core only decides *what* to
announce. A dispatcher receives one PaymentNotification per state transition.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    PAYMENT_REQUEST = "payment_request"
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_DECLINED = "payment_declined"
    PAYMENT_FAILED = "payment_failed"
    AUTO_PAYMENT_PROCESSED = "auto_payment_processed"


@dataclass(frozen=True)
class PaymentNotification:
    type: NotificationType
    merchant_name: str
    amount: float
    payment_id: str
    reason: Optional[str] = None
    # True when the transition was caused from this device (user or auto-pay)
    user_initiated: bool = False

    @property
    def title(self) -> str:
        return {
            NotificationType.PAYMENT_REQUEST: "Payment Request",
            NotificationType.PAYMENT_APPROVED: "Payment Approved",
            NotificationType.PAYMENT_DECLINED: "Payment Declined",
            NotificationType.PAYMENT_FAILED: "Payment Failed",
            NotificationType.AUTO_PAYMENT_PROCESSED: "Auto Payment Processed",
        }[self.type]

    @property
    def body(self) -> str:
        amount = f"${self.amount:.2f}"
        if self.type is NotificationType.PAYMENT_REQUEST:
            return f"{self.merchant_name} is requesting {amount}"
        if self.type is NotificationType.PAYMENT_APPROVED:
            return f"Payment of {amount} to {self.merchant_name} was successful"
        if self.type is NotificationType.PAYMENT_DECLINED:
            return f"You declined payment of {amount} to {self.merchant_name}"
        if self.type is NotificationType.AUTO_PAYMENT_PROCESSED:
            return f"Auto payment of {amount} to {self.merchant_name} was processed"
        suffix = f": {self.reason}" if self.reason else ""
        return f"Payment of {amount} to {self.merchant_name} failed{suffix}"


class NotificationDispatcher:
    """Delivers payment notifications. Subclass and implement dispatch()."""

    async def dispatch(self, notification: PaymentNotification) -> None:
        raise NotImplementedError


class LoggingDispatcher(NotificationDispatcher):
    """Writes notifications to the log instead of raising platform alerts."""

    async def dispatch(self, notification: PaymentNotification) -> None:
        logger.info("%s: %s", notification.title, notification.body)
