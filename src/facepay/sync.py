"""
Payment request sync — polls pending payment requests and reports changes.

Each cycle fetches the current requests and auto-pay rules, compares the
requests with the pending set seen on the previous cycle, and announces every
transition exactly once:

- a request that became pending is auto-approved when an auto-pay rule covers
  it, otherwise announced for manual approval;
- a request that was pending and is now terminal is announced as resolved.

The loop runs while the app is in the foreground and the user is signed in;
it is torn down automatically when the client's session ends.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from facepay.client import FacePayError
from facepay.models import AutoPayRule, PaymentRequestRecord, find_auto_pay_rule
from facepay.notifications import NotificationDispatcher, NotificationType, PaymentNotification
from facepay.pay import PaymentsClient

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10.0


@dataclass
class PollResult:
    """What one poll cycle observed and did."""
    newly_pending: list[PaymentRequestRecord] = field(default_factory=list)
    resolved: list[PaymentRequestRecord] = field(default_factory=list)
    auto_approved: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.newly_pending or self.resolved)


class PaymentRequestSync:
    """Polling and diffing engine for pending payment requests."""

    def __init__(
        self,
        payments: PaymentsClient,
        dispatcher: NotificationDispatcher,
        interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.payments = payments
        self.dispatcher = dispatcher
        self.interval = interval

        self._snapshot: dict[str, PaymentRequestRecord] = {}
        self._acted_on: set[str] = set()
        self._auto_processed: set[str] = set()
        self._polling = False
        self._task: Optional[asyncio.Task] = None
        self._on_updated = None

        payments.client.add_logout_listener(self.stop)

    @property
    def pending(self) -> list[PaymentRequestRecord]:
        """Pending requests as of the last completed poll."""
        return list(self._snapshot.values())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register_update_callback(self, callback) -> None:
        """Call `callback()` after any cycle that changed the pending set."""
        self._on_updated = callback

    # --- Scheduling ---

    def start(self) -> None:
        """Poll now, then every `interval` seconds. No-op if already running."""
        if self.running:
            return
        if not self.payments.client.is_authenticated:
            logger.debug("Not signed in; payment request polling not started")
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def pause(self) -> None:
        """Stop the timer but keep the snapshot (app moved to the background)."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    def resume(self) -> None:
        """App returned to the foreground: poll immediately and restart the timer."""
        self.pause()
        self.start()

    def set_foreground(self, active: bool) -> None:
        if active:
            self.resume()
        else:
            self.pause()

    def stop(self) -> None:
        """Tear the loop down and forget everything observed (logout)."""
        self.pause()
        self._snapshot = {}
        self._acted_on.clear()
        self._auto_processed.clear()
        logger.info("Payment request polling stopped")

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    # --- User actions ---

    async def approve(self, request_id: str) -> dict:
        """Approve on the user's behalf; its resolution is reported as user-initiated."""
        self._acted_on.add(request_id)
        try:
            return await self.payments.approve(request_id)
        except FacePayError:
            self._acted_on.discard(request_id)
            raise

    async def decline(self, request_id: str) -> dict:
        self._acted_on.add(request_id)
        try:
            return await self.payments.decline(request_id)
        except FacePayError:
            self._acted_on.discard(request_id)
            raise

    # --- Polling ---

    async def poll_once(self) -> Optional[PollResult]:
        """Run one cycle. Returns None if skipped or if the cycle failed.

        Errors never escape: the next cycle simply tries again.
        """
        if self._polling:
            logger.debug("Previous poll still running; skipping")
            return None
        self._polling = True
        try:
            return await self._poll()
        except Exception:
            logger.exception("Payment request poll failed")
            return None
        finally:
            self._polling = False

    async def _poll(self) -> PollResult:
        requests, rules = await asyncio.gather(
            self.payments.list_payment_requests(),
            self._fetch_rules(),
        )

        current = {record.id: record for record in requests}
        pending = {record.id: record for record in requests if record.is_pending}

        result = PollResult(
            newly_pending=[r for r in pending.values() if r.id not in self._snapshot],
            resolved=[
                current[request_id]
                for request_id in self._snapshot
                if request_id in current and current[request_id].is_terminal
            ],
        )
        changed = pending.keys() != self._snapshot.keys()
        acted_on = set(self._acted_on)
        auto_processed = set(self._auto_processed)

        # Commit before the first side effect: a cycle cancelled mid-way
        # (pause, resume) must not report the same transitions again.
        self._snapshot = pending
        self._acted_on.intersection_update(pending)
        self._auto_processed.intersection_update(pending)

        for record in result.resolved:
            await self._report_resolution(record, acted_on, auto_processed)
        for record in result.newly_pending:
            if await self._handle_new_request(record, rules):
                result.auto_approved.append(record.id)

        if changed:
            logger.info(
                "Payment requests updated: %d new, %d resolved, %d pending",
                len(result.newly_pending),
                len(result.resolved),
                len(pending),
            )
            self._notify_updated()
        return result

    async def _fetch_rules(self) -> list[AutoPayRule]:
        try:
            return await self.payments.list_auto_pay_rules()
        except FacePayError as e:
            logger.warning("Could not load auto-pay rules, treating as none: %s", e)
            return []

    async def _handle_new_request(self, record: PaymentRequestRecord, rules: list) -> bool:
        """Auto-approve or announce a new request. Returns True if auto-approved."""
        rule = find_auto_pay_rule(rules, record)
        if rule is not None:
            try:
                await self.payments.approve(record.id)
            except FacePayError as e:
                logger.warning("Auto-pay approval of %s failed, asking the user: %s", record.id, e)
            else:
                self._acted_on.add(record.id)
                self._auto_processed.add(record.id)
                await self._dispatch(PaymentNotification(
                    type=NotificationType.AUTO_PAYMENT_PROCESSED,
                    merchant_name=record.display_name,
                    amount=record.amount,
                    payment_id=record.id,
                    user_initiated=True,
                ))
                return True

        await self._dispatch(PaymentNotification(
            type=NotificationType.PAYMENT_REQUEST,
            merchant_name=record.display_name,
            amount=record.amount,
            payment_id=record.id,
        ))
        return False

    async def _report_resolution(self, record: PaymentRequestRecord, acted_on: set, auto_processed: set) -> None:
        if record.id in auto_processed and record.status == "approved":
            # Already announced as auto-processed
            return
        notification = self._resolution_notice(record, record.id in acted_on)
        await self._dispatch(notification)

    def _resolution_notice(self, record: PaymentRequestRecord, user_initiated: bool) -> PaymentNotification:
        if record.status == "approved":
            kind, reason = NotificationType.PAYMENT_APPROVED, None
            if not user_initiated:
                reason = "Approved outside this device"
        elif record.status == "declined" and user_initiated:
            kind, reason = NotificationType.PAYMENT_DECLINED, "Declined by user"
        elif record.status == "declined":
            kind, reason = NotificationType.PAYMENT_FAILED, "Payment request cancelled by merchant"
        elif record.status == "expired":
            kind, reason = NotificationType.PAYMENT_FAILED, "Payment request expired"
        else:
            kind, reason = NotificationType.PAYMENT_FAILED, "Payment could not be completed"
        return PaymentNotification(
            type=kind,
            merchant_name=record.display_name,
            amount=record.amount,
            payment_id=record.id,
            reason=reason,
            user_initiated=user_initiated,
        )

    async def _dispatch(self, notification: PaymentNotification) -> None:
        try:
            await self.dispatcher.dispatch(notification)
        except Exception:
            logger.exception("Failed to dispatch %s for %s", notification.type.value, notification.payment_id)

    def _notify_updated(self) -> None:
        if self._on_updated is None:
            return
        try:
            self._on_updated()
        except Exception:
            logger.exception("Payment request update callback failed")
