"""
PIN lockout guard — gates sensitive actions behind the user's 4-digit PIN.

The backend decides when the account locks and for how long; the guard only
counts failed attempts for the "last attempt" warning, refuses submissions
while locked, and blocks a repeated submission of the same PIN within two
seconds (every server call counts as an attempt).

Usage:
    guard = PinLockoutGuard(client, LockoutRepository(storage),
                            on_tick=show_countdown, on_unlock=hide_countdown)
    await guard.mount()

    result = await guard.verify("1234")
    if result.success:
        proceed()
    else:
        show_error(result.message)

    guard.unmount()
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from facepay.client import (
    AuthError,
    FacePayAPIError,
    FacePayClient,
    FacePayError,
    LockoutError,
    RateLimitError,
    ServerFault,
    ValidationError,
)
from facepay.models import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

LOCK_STATE_KEY = "pin_lock_state"

PIN_PATTERN = re.compile(r"\d{4}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def to_dict(self) -> dict:
        return {
            "is_locked": self.locked_until is not None,
            "locked_until": format_timestamp(self.locked_until) if self.locked_until else None,
            "failed_attempts": self.failed_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockoutState":
        # is_locked is re-derived from locked_until, never trusted as stored
        attempts = data.get("failed_attempts") or 0
        return cls(
            failed_attempts=max(int(attempts), 0),
            locked_until=parse_timestamp(data.get("locked_until")),
        )


class LockoutRepository:
    """Typed access to the persisted lockout record."""

    def __init__(self, storage):
        self.storage = storage

    def load(self) -> LockoutState:
        data = self.storage.get(LOCK_STATE_KEY)
        if not data:
            return LockoutState()
        try:
            return LockoutState.from_dict(data)
        except (TypeError, ValueError):
            logger.warning("Discarding unreadable PIN lock state")
            return LockoutState()

    def save(self, state: LockoutState) -> None:
        self.storage.set(LOCK_STATE_KEY, state.to_dict())

    def clear(self) -> None:
        self.storage.delete(LOCK_STATE_KEY)


class GuardPhase(str, Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    LOCKED = "locked"


class PinOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_PIN = "invalid_pin"
    LOCKED = "locked"
    INVALID_LOCK_TIME = "invalid_lock_time"
    RATE_LIMITED = "rate_limited"
    PIN_NOT_SET = "pin_not_set"
    SERVER_ERROR = "server_error"
    ERROR = "error"
    # Refused locally, no request sent
    REJECTED_LOCKED = "rejected_locked"
    REJECTED_BUSY = "rejected_busy"
    REJECTED_DUPLICATE = "rejected_duplicate"
    REJECTED_FORMAT = "rejected_format"


_LOCAL_REJECTIONS = frozenset({
    PinOutcome.REJECTED_LOCKED,
    PinOutcome.REJECTED_BUSY,
    PinOutcome.REJECTED_DUPLICATE,
    PinOutcome.REJECTED_FORMAT,
})


@dataclass(frozen=True)
class VerificationResult:
    outcome: PinOutcome
    message: str = ""
    remaining_attempts: Optional[int] = None
    last_attempt_warning: bool = False
    locked_until: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.outcome is PinOutcome.SUCCESS

    @property
    def clear_input(self) -> bool:
        """Whether the entered PIN should be wiped (any answered attempt)."""
        return self.outcome not in _LOCAL_REJECTIONS

    @property
    def triggers_feedback(self) -> bool:
        return not self.success and self.clear_input and self.outcome is not PinOutcome.RATE_LIMITED


def format_remaining(remaining: timedelta) -> str:
    """Render a countdown as "1h 5m", "3m 2s" or "45s"."""
    total = max(int(remaining.total_seconds()), 0)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def lock_message(locked_until: datetime, now: datetime) -> str:
    """Describe a lock by the server's escalation tier (15 min, 1 h, 24 h)."""
    minutes = (locked_until - now).total_seconds() / 60
    if minutes <= 20:
        return "Account locked for 15 minutes. Next wrong PIN will lock for 1 hour."
    if minutes <= 70:
        return "Account locked for 1 hour. Next wrong PIN will lock for 24 hours!"
    return "Account locked for 24 hours due to repeated failures. Contact support if needed."


class PinLockoutGuard:
    """Client-side state machine for PIN verification and server lockouts."""

    MAX_ATTEMPTS = 3
    DUPLICATE_WINDOW = timedelta(seconds=2)
    TICK_INTERVAL = 1.0

    def __init__(
        self,
        client: FacePayClient,
        repository: LockoutRepository,
        max_attempts: int = MAX_ATTEMPTS,
        clock=None,
        tick_interval: float = TICK_INTERVAL,
        on_failure_feedback=None,
        on_tick=None,
        on_unlock=None,
    ):
        self.client = client
        self.repository = repository
        self.max_attempts = max_attempts
        self.tick_interval = tick_interval
        self.on_failure_feedback = on_failure_feedback
        self.on_tick = on_tick
        self.on_unlock = on_unlock
        self._clock = clock or _utcnow

        self.state = LockoutState()
        self.message = ""
        self.last_attempt_warning = False

        self._verifying = False
        self._last_pin: Optional[str] = None
        self._last_submitted_at: Optional[datetime] = None
        self._tick_task: Optional[asyncio.Task] = None

    # --- Derived state ---

    @property
    def is_locked(self) -> bool:
        return self.state.is_locked(self._clock())

    @property
    def phase(self) -> GuardPhase:
        if self._verifying:
            return GuardPhase.VERIFYING
        if self.is_locked:
            return GuardPhase.LOCKED
        return GuardPhase.IDLE

    def remaining(self) -> timedelta:
        if not self.is_locked:
            return timedelta(0)
        return self.state.locked_until - self._clock()

    def format_remaining(self) -> str:
        return format_remaining(self.remaining())

    # --- Lifecycle ---

    async def mount(self) -> None:
        """Load the persisted state and resume the countdown if still locked."""
        state = self.repository.load()
        if state.locked_until is not None and not state.is_locked(self._clock()):
            logger.info("Stored PIN lock has expired; clearing")
            self.repository.clear()
            state = LockoutState()
        self.state = state
        if self.is_locked:
            self.message = lock_message(state.locked_until, self._clock())
            self._start_countdown()

    def unmount(self) -> None:
        self._stop_countdown()

    # --- Verification ---

    async def verify(self, pin: str) -> VerificationResult:
        now = self._clock()
        if self.state.locked_until is not None and not self.state.is_locked(now):
            self._expire()

        if self.state.is_locked(now):
            return VerificationResult(
                PinOutcome.REJECTED_LOCKED,
                f"Too many failed attempts. Try again in {self.format_remaining()}.",
                locked_until=self.state.locked_until,
            )
        if self._verifying:
            return VerificationResult(PinOutcome.REJECTED_BUSY)
        if not isinstance(pin, str) or not PIN_PATTERN.fullmatch(pin):
            return VerificationResult(PinOutcome.REJECTED_FORMAT, "Enter your 4-digit PIN.")
        if (
            pin == self._last_pin
            and self._last_submitted_at is not None
            and now - self._last_submitted_at < self.DUPLICATE_WINDOW
        ):
            logger.debug("Duplicate PIN submission within %s; ignored", self.DUPLICATE_WINDOW)
            return VerificationResult(PinOutcome.REJECTED_DUPLICATE)

        self._last_pin = pin
        self._last_submitted_at = now
        self._verifying = True
        self.message = ""
        self.last_attempt_warning = False
        try:
            result = await self._submit(pin)
        finally:
            self._verifying = False

        self.message = result.message
        self.last_attempt_warning = result.last_attempt_warning
        if result.triggers_feedback and self.on_failure_feedback is not None:
            self.on_failure_feedback()
        return result

    async def _submit(self, pin: str) -> VerificationResult:
        try:
            payload = await self.client.verify_pin(pin)
        except LockoutError as e:
            return self._on_lockout(e)
        except RateLimitError:
            return VerificationResult(
                PinOutcome.RATE_LIMITED,
                "Too many requests. Please wait a moment and try again.",
            )
        except AuthError:
            return self._on_invalid_pin()
        except ValidationError:
            return VerificationResult(PinOutcome.PIN_NOT_SET, "PIN not set. Please reset your PIN first.")
        except ServerFault as e:
            logger.error("PIN verification server error %s: %s", e.status_code, e.detail)
            return VerificationResult(
                PinOutcome.SERVER_ERROR,
                "Server error occurred. Please try again later or contact support.",
            )
        except FacePayAPIError as e:
            return VerificationResult(PinOutcome.ERROR, e.detail or "PIN verification failed. Please try again.")
        except FacePayError as e:
            logger.warning("PIN verification failed: %s", e)
            return VerificationResult(PinOutcome.ERROR, "PIN verification failed. Please try again.")

        if isinstance(payload, dict) and payload.get("success") is False:
            return VerificationResult(
                PinOutcome.ERROR,
                payload.get("message") or "PIN verification failed. Please try again.",
            )
        return self._on_success()

    def _on_success(self) -> VerificationResult:
        logger.info("PIN verified")
        self._stop_countdown()
        self._reset()
        return VerificationResult(PinOutcome.SUCCESS)

    def _on_invalid_pin(self) -> VerificationResult:
        attempts = self.state.failed_attempts + 1
        self.state = LockoutState(failed_attempts=attempts)
        self.repository.save(self.state)

        remaining = max(self.max_attempts - attempts, 0)
        if remaining > 0:
            message = f"Invalid PIN. {remaining} attempt{'s' if remaining > 1 else ''} remaining."
        else:
            message = "Invalid PIN."
        return VerificationResult(
            PinOutcome.INVALID_PIN,
            message,
            remaining_attempts=remaining,
            last_attempt_warning=remaining == 1,
        )

    def _on_lockout(self, error: LockoutError) -> VerificationResult:
        if error.locked_until is None:
            logger.warning(
                "Lockout response %s without a usable unlock time: %r",
                error.status_code,
                error.locked_until_raw,
            )
            if error.locked_until_raw is None:
                message = "Account is locked but server did not provide unlock time."
            else:
                message = "Invalid lockout time received from server. Please try again."
            return VerificationResult(PinOutcome.INVALID_LOCK_TIME, message)

        # 401 + timestamp: this attempt triggered the lock. 423: already locked,
        # the server's timestamp replaces whatever the local countdown had.
        attempts = self.state.failed_attempts + (1 if error.status_code == 401 else 0)
        self.state = LockoutState(failed_attempts=attempts, locked_until=error.locked_until)
        self.repository.save(self.state)
        logger.info("PIN locked until %s", format_timestamp(error.locked_until))
        self._start_countdown()
        return VerificationResult(
            PinOutcome.LOCKED,
            lock_message(error.locked_until, self._clock()),
            locked_until=error.locked_until,
        )

    # --- Countdown ---

    def _start_countdown(self) -> None:
        self._stop_countdown()
        self._tick_task = asyncio.get_running_loop().create_task(self._countdown())

    def _stop_countdown(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _countdown(self) -> None:
        while self.is_locked:
            if self.on_tick is not None:
                self.on_tick(self.format_remaining())
            await asyncio.sleep(self.tick_interval)
        self._tick_task = None
        self._expire()

    def _expire(self) -> None:
        self._stop_countdown()
        logger.info("PIN lock expired")
        self._reset()
        if self.on_unlock is not None:
            self.on_unlock()

    def _reset(self) -> None:
        self.state = LockoutState()
        self.message = ""
        self.last_attempt_warning = False
        self.repository.clear()
