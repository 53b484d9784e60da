"""FacePay SDK — session, PIN lockout and payment-request sync for the FacePay API."""

__version__ = "0.1.0"

from facepay.client import (
    FacePayClient,
    FacePayError,
    FacePayAPIError,
    NetworkError,
    AuthError,
    LockoutError,
    ValidationError,
    RateLimitError,
    ServerFault,
    RefreshError,
)
from facepay.config import Settings
from facepay.lockout import (
    LockoutRepository,
    LockoutState,
    PinLockoutGuard,
    PinOutcome,
    VerificationResult,
)
from facepay.models import AutoPayRule, PaymentRequestRecord
from facepay.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationType,
    PaymentNotification,
)
from facepay.pay import PaymentsClient
from facepay.session import Session, SessionRepository
from facepay.storage import FileStorage, MemoryStorage
from facepay.sync import PaymentRequestSync, PollResult
