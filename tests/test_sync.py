"""Tests for payment request polling, diffing and auto-pay."""

import asyncio

import pytest

from conftest import FakeResponse
from facepay.client import REFRESH_PATH, NetworkError, ServerFault
from facepay.models import AutoPayRule, PaymentRequestRecord
from facepay.notifications import NotificationType
from facepay.pay import AUTO_PAY_PATH, PAYMENT_REQUESTS_PATH, PaymentsClient
from facepay.sync import PaymentRequestSync


def record(id, status="pending", merchant="Acme", amount=10.0, **kwargs):
    return PaymentRequestRecord(
        id=id, status=status, merchant_id="m1", merchant_name=merchant, amount=amount, **kwargs
    )


def rule(merchant="Acme", max_amount=50.0, enabled=True):
    return AutoPayRule(
        merchant_id="m1",
        merchant_name=merchant,
        is_enabled=enabled,
        max_amount=max_amount,
        payment_method_id="pm_1",
    )


class StubClient:
    def __init__(self):
        self.is_authenticated = True
        self.listeners = []

    def add_logout_listener(self, callback):
        self.listeners.append(callback)

    def end_session(self):
        self.is_authenticated = False
        for callback in self.listeners:
            callback()


class StubPayments:
    """Serves scripted poll responses; an Exception entry is raised instead."""

    def __init__(self, *responses, rules=None):
        self.client = StubClient()
        self.responses = list(responses)
        self.rules = rules if rules is not None else []
        self.approved = []
        self.approve_error = None
        self.polls = 0
        self.gate = None

    async def list_payment_requests(self):
        self.polls += 1
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return list(response)

    async def list_auto_pay_rules(self):
        if isinstance(self.rules, Exception):
            raise self.rules
        return list(self.rules)

    async def approve(self, request_id):
        if self.approve_error is not None:
            raise self.approve_error
        self.approved.append(request_id)
        return {"status": "approved"}

    async def decline(self, request_id):
        return {"status": "declined"}


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    async def dispatch(self, notification):
        self.sent.append(notification)

    def of(self, payment_id):
        return [n for n in self.sent if n.payment_id == payment_id]


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def run_polls(sync, count):
    async def main():
        return [await sync.poll_once() for _ in range(count)]
    return asyncio.run(main())


def test_new_then_resolved_request_is_announced_once_each(dispatcher):
    payments = StubPayments(
        [record("R1")],
        [record("R1", status="approved")],
        [record("R1", status="approved")],
    )
    sync = PaymentRequestSync(payments, dispatcher)
    updates = []
    sync.register_update_callback(lambda: updates.append(len(sync.pending)))

    first, second, third = run_polls(sync, 3)

    assert [n.type for n in dispatcher.sent] == [
        NotificationType.PAYMENT_REQUEST,
        NotificationType.PAYMENT_APPROVED,
    ]
    manual, resolved = dispatcher.sent
    assert manual.body == "Acme is requesting $10.00"
    assert resolved.reason == "Approved outside this device"
    assert not resolved.user_initiated
    assert [r.id for r in first.newly_pending] == ["R1"]
    assert [r.id for r in second.resolved] == ["R1"]
    assert not third.changed
    assert sync.pending == []
    assert updates == [1, 0]


def test_still_pending_request_is_not_renotified(dispatcher):
    payments = StubPayments([record("R1")], [record("R1"), record("R2", amount=5)])
    sync = PaymentRequestSync(payments, dispatcher)

    run_polls(sync, 3)

    assert [n.payment_id for n in dispatcher.sent] == ["R1", "R2"]
    assert {r.id for r in sync.pending} == {"R1", "R2"}


def test_covered_request_is_auto_approved_without_manual_prompt(dispatcher):
    payments = StubPayments(
        [record("R1", amount=12.5)],
        [record("R1", status="approved", amount=12.5)],
        rules=[rule(max_amount=20)],
    )
    sync = PaymentRequestSync(payments, dispatcher)

    first, second = run_polls(sync, 2)

    assert payments.approved == ["R1"]
    assert first.auto_approved == ["R1"]
    assert [n.type for n in dispatcher.sent] == [NotificationType.AUTO_PAYMENT_PROCESSED]
    assert dispatcher.sent[0].body == "Auto payment of $12.50 to Acme was processed"
    assert [r.id for r in second.resolved] == ["R1"]


def test_failed_auto_approval_falls_back_to_manual_prompt(dispatcher):
    payments = StubPayments([record("R1")], rules=[rule()])
    payments.approve_error = ServerFault(500, "boom")
    sync = PaymentRequestSync(payments, dispatcher)

    result, = run_polls(sync, 1)

    assert result.auto_approved == []
    assert [n.type for n in dispatcher.sent] == [NotificationType.PAYMENT_REQUEST]


@pytest.mark.parametrize("candidate", [
    rule(max_amount=9.99),
    rule(max_amount=None),
    rule(max_amount=0),
    rule(enabled=False),
    rule(merchant="Other Shop"),
])
def test_rules_that_do_not_cover_the_request(dispatcher, candidate):
    payments = StubPayments([record("R1", amount=10.0)], rules=[candidate])
    sync = PaymentRequestSync(payments, dispatcher)

    run_polls(sync, 1)

    assert payments.approved == []
    assert [n.type for n in dispatcher.sent] == [NotificationType.PAYMENT_REQUEST]


def test_rule_matches_merchant_name_case_insensitively_at_the_limit(dispatcher):
    payments = StubPayments(
        [record("R1", merchant="Merchant (acct_123)", business_name="Corner Cafe", amount=10.0)],
        rules=[rule(merchant="  corner cafe ", max_amount=10.0)],
    )
    sync = PaymentRequestSync(payments, dispatcher)

    run_polls(sync, 1)

    assert payments.approved == ["R1"]


def test_failed_fetch_keeps_previous_snapshot(dispatcher):
    payments = StubPayments([record("R1")], NetworkError("offline"), [record("R1")])
    sync = PaymentRequestSync(payments, dispatcher)

    first, failed, third = run_polls(sync, 3)

    assert failed is None
    assert [r.id for r in sync.pending] == ["R1"]
    assert not third.changed
    assert len(dispatcher.sent) == 1


def test_rule_fetch_failure_means_manual_approval(dispatcher):
    payments = StubPayments([record("R1")], rules=ServerFault(503, "down"))
    sync = PaymentRequestSync(payments, dispatcher)

    result, = run_polls(sync, 1)

    assert result is not None
    assert payments.approved == []
    assert [n.type for n in dispatcher.sent] == [NotificationType.PAYMENT_REQUEST]


def test_overlapping_poll_is_skipped(dispatcher):
    payments = StubPayments([record("R1")])
    sync = PaymentRequestSync(payments, dispatcher)

    async def main():
        payments.gate = asyncio.Event()
        first = asyncio.create_task(sync.poll_once())
        await asyncio.sleep(0)
        skipped = await sync.poll_once()
        payments.gate.set()
        return await first, skipped

    first, skipped = asyncio.run(main())

    assert skipped is None
    assert first is not None
    assert payments.polls == 1
    assert len(dispatcher.sent) == 1


@pytest.mark.parametrize("status,acted,expected_type,reason", [
    ("declined", True, NotificationType.PAYMENT_DECLINED, "Declined by user"),
    ("declined", False, NotificationType.PAYMENT_FAILED, "Payment request cancelled by merchant"),
    ("expired", False, NotificationType.PAYMENT_FAILED, "Payment request expired"),
    ("failed", False, NotificationType.PAYMENT_FAILED, "Payment could not be completed"),
    ("approved", True, NotificationType.PAYMENT_APPROVED, None),
])
def test_resolution_notifications(dispatcher, status, acted, expected_type, reason):
    payments = StubPayments([record("R1")], [record("R1", status=status)])
    sync = PaymentRequestSync(payments, dispatcher)

    async def main():
        await sync.poll_once()
        if acted:
            action = sync.decline if status == "declined" else sync.approve
            await action("R1")
        await sync.poll_once()

    asyncio.run(main())

    resolved = dispatcher.of("R1")[-1]
    assert resolved.type is expected_type
    assert resolved.reason == reason
    assert resolved.user_initiated is acted


def test_request_missing_from_response_is_dropped_silently(dispatcher):
    payments = StubPayments([record("R1")], [])
    sync = PaymentRequestSync(payments, dispatcher)

    run_polls(sync, 2)

    assert len(dispatcher.sent) == 1
    assert sync.pending == []


def test_dispatcher_failure_does_not_stop_the_cycle():
    class Broken:
        async def dispatch(self, notification):
            raise RuntimeError("push service down")

    payments = StubPayments([record("R1"), record("R2")])
    sync = PaymentRequestSync(payments, Broken())

    result, = run_polls(sync, 1)

    assert len(result.newly_pending) == 2
    assert {r.id for r in sync.pending} == {"R1", "R2"}


def test_session_end_stops_polling_and_forgets_snapshot(dispatcher):
    payments = StubPayments([record("R1")])
    sync = PaymentRequestSync(payments, dispatcher, interval=0.01)

    async def main():
        sync.start()
        await asyncio.sleep(0.03)
        assert sync.running
        payments.client.end_session()
        assert not sync.running
        polls = payments.polls
        await asyncio.sleep(0.03)
        return polls

    polls = asyncio.run(main())

    assert payments.polls == polls
    assert sync.pending == []


def test_start_requires_an_authenticated_session(dispatcher):
    payments = StubPayments([record("R1")])
    payments.client.is_authenticated = False
    sync = PaymentRequestSync(payments, dispatcher)

    async def main():
        sync.start()
        await asyncio.sleep(0.01)

    asyncio.run(main())

    assert not sync.running
    assert payments.polls == 0


def test_background_pauses_and_foreground_polls_immediately(dispatcher):
    payments = StubPayments([record("R1")])
    sync = PaymentRequestSync(payments, dispatcher, interval=60)

    async def main():
        sync.start()
        sync.start()
        await asyncio.sleep(0.01)
        assert payments.polls == 1

        sync.set_foreground(False)
        assert not sync.running
        await asyncio.sleep(0.01)
        assert payments.polls == 1

        sync.set_foreground(True)
        await asyncio.sleep(0.01)
        assert payments.polls == 2
        assert sync.running
        sync.pause()

    asyncio.run(main())

    assert [r.id for r in sync.pending] == ["R1"]
    assert len(dispatcher.sent) == 1


class StallingDispatcher(RecordingDispatcher):
    """Records, then hangs on the first notification about `payment_id`."""

    def __init__(self, payment_id):
        super().__init__()
        self.payment_id = payment_id
        self.stalled = False

    async def dispatch(self, notification):
        self.sent.append(notification)
        if notification.payment_id == self.payment_id and not self.stalled:
            self.stalled = True
            await asyncio.sleep(3600)


def test_cycle_cancelled_mid_dispatch_is_not_reported_again():
    dispatcher = StallingDispatcher("R2")
    payments = StubPayments(
        [record("R1")],
        [record("R1", status="approved"), record("R2", amount=5)],
    )
    sync = PaymentRequestSync(payments, dispatcher, interval=60)

    async def main():
        sync.start()
        await asyncio.sleep(0.01)
        sync.resume()
        await asyncio.sleep(0.01)
        assert dispatcher.stalled

        sync.set_foreground(False)
        await asyncio.sleep(0)
        sync.set_foreground(True)
        await asyncio.sleep(0.01)
        sync.pause()

    asyncio.run(main())

    assert payments.polls == 3
    assert [(n.payment_id, n.type) for n in dispatcher.sent] == [
        ("R1", NotificationType.PAYMENT_REQUEST),
        ("R1", NotificationType.PAYMENT_APPROVED),
        ("R2", NotificationType.PAYMENT_REQUEST),
    ]
    assert [r.id for r in sync.pending] == ["R2"]


def test_polls_through_the_authenticated_client(http, signed_in, dispatcher):
    def requests_handler(req):
        if req.token != "new":
            return FakeResponse(401, {"detail": "Token expired"})
        return FakeResponse(200, {"data": [
            {"id": "R1", "status": "pending", "merchant_name": "Acme", "amount": "7.5"},
            {"id": "R0", "status": "completed", "merchant_name": "Acme", "amount": 3},
        ]})

    def rules_handler(req):
        if req.token != "new":
            return FakeResponse(401, {"detail": "Token expired"})
        return FakeResponse(200, [
            {"merchant_id": "m1", "merchant_name": "acme", "is_enabled": True, "max_amount": 10},
        ])

    http.route("GET", PAYMENT_REQUESTS_PATH, requests_handler)
    http.route("GET", AUTO_PAY_PATH, rules_handler)
    http.route("POST", REFRESH_PATH, lambda req: FakeResponse(200, {"access_token": "new"}))
    http.route("POST", "/cb/users/me/payments/R1/approve", lambda req: FakeResponse(200, {"ok": True}))
    sync = PaymentRequestSync(PaymentsClient(signed_in), dispatcher)

    result, = run_polls(sync, 1)

    assert len(http.calls("POST", REFRESH_PATH)) == 1
    assert result.auto_approved == ["R1"]
    assert http.calls("POST", "/cb/users/me/payments/R1/approve")[0].token == "new"
    assert [n.type for n in dispatcher.sent] == [NotificationType.AUTO_PAYMENT_PROCESSED]
    assert dispatcher.sent[0].amount == 7.5
