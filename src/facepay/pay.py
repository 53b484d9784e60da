"""
Payment-request endpoints on top of the authenticated FacePay client.

Usage:
    from facepay import FacePayClient, PaymentsClient

    client = FacePayClient()
    await client.login(username, password)
    payments = PaymentsClient(client)

    for request in await payments.list_payment_requests():
        if request.is_pending:
            print(request.display_name, request.amount)

    await payments.approve(request.id)
"""

from facepay.client import FacePayClient
from facepay.models import AutoPayRule, PaymentRequestRecord

PAYMENT_REQUESTS_PATH = "/cb/users/me/payment-requests/"
AUTO_PAY_PATH = "/cb/users/me/autopay"
PAYMENTS_PATH = "/cb/users/me/payments"


def _items(payload) -> list:
    """Accept either a bare list or a {"data": [...]} envelope."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    return []


class PaymentsClient:
    """Payment-focused client. Wraps FacePayClient for payment requests only."""

    def __init__(self, client: FacePayClient):
        self.client = client

    async def list_payment_requests(self) -> list[PaymentRequestRecord]:
        """Pending requests plus recently resolved ones (needed for diffing)."""
        payload = await self.client.call("GET", PAYMENT_REQUESTS_PATH)
        return [PaymentRequestRecord.from_dict(item) for item in _items(payload)]

    async def list_auto_pay_rules(self) -> list[AutoPayRule]:
        payload = await self.client.call("GET", AUTO_PAY_PATH)
        return [AutoPayRule.from_dict(item) for item in _items(payload)]

    async def approve(self, request_id: str) -> dict:
        """Approve a payment request. Idempotent per request id on the backend."""
        return await self.client.call("POST", f"{PAYMENTS_PATH}/{request_id}/approve")

    async def decline(self, request_id: str) -> dict:
        return await self.client.call("POST", f"{PAYMENTS_PATH}/{request_id}/decline")
