"""
Payment request and auto-pay rule models.

Both are decoded from the backend's JSON payloads on every poll and never
mutated by the client.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

PENDING = "pending"
TERMINAL_STATUSES = frozenset({"approved", "declined", "expired", "failed"})

# Transaction-style status names the backend also reports for requests
STATUS_ALIASES = {
    "completed": "approved",
    "cancelled": "declined",
    "canceled": "declined",
}

_MERCHANT_ACCOUNT_SUFFIX = re.compile(r"^(.+?)\s*\(acct_[^)]+\)$")


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Returns None for anything that is not a usable timestamp. Naive values are
    taken to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class PaymentRequestRecord:
    """A merchant's request for payment, as reported by the backend."""
    id: str
    status: str
    merchant_id: str
    merchant_name: str
    amount: float
    expires_at: Optional[datetime] = None
    business_name: Optional[str] = None
    currency: str = "USD"

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRequestRecord":
        status = str(data.get("status") or "").strip().lower()
        return cls(
            id=str(data["id"]),
            status=STATUS_ALIASES.get(status, status),
            merchant_id=str(data.get("merchant_id") or ""),
            merchant_name=str(data.get("merchant_name") or ""),
            amount=float(data.get("amount") or 0),
            expires_at=parse_timestamp(data.get("expires_at")),
            business_name=data.get("business_name"),
            currency=str(data.get("currency") or "USD").upper(),
        )

    @property
    def is_pending(self) -> bool:
        return self.status == PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def display_name(self) -> str:
        """Name to show the user and to match auto-pay rules against.

        Prefers the business name; otherwise strips a trailing
        "(acct_...)" merchant identifier from the merchant name.
        """
        if self.business_name and self.business_name.strip():
            return self.business_name.strip()
        if self.merchant_name:
            match = _MERCHANT_ACCOUNT_SUFFIX.match(self.merchant_name)
            if match and match.group(1).strip() != "Merchant":
                return match.group(1).strip()
            if self.merchant_name.startswith("Merchant (acct_"):
                return "Business"
            return self.merchant_name
        return "Unknown Merchant"


@dataclass(frozen=True)
class AutoPayRule:
    """Standing permission to approve a merchant's requests up to a limit."""
    merchant_id: str
    merchant_name: str
    is_enabled: bool
    max_amount: Optional[float]
    payment_method_id: str
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "AutoPayRule":
        max_amount = data.get("max_amount")
        return cls(
            merchant_id=str(data.get("merchant_id") or ""),
            merchant_name=str(data.get("merchant_name") or ""),
            is_enabled=bool(data.get("is_enabled")),
            max_amount=float(max_amount) if max_amount is not None else None,
            payment_method_id=str(data.get("payment_method_id") or ""),
            id=data.get("id"),
        )

    def covers(self, request: PaymentRequestRecord) -> bool:
        """True if this rule authorizes approving `request` automatically.

        A rule without a positive maximum amount never matches.
        """
        if not self.is_enabled or self.max_amount is None or self.max_amount <= 0:
            return False
        if self.merchant_name.strip().lower() != request.display_name.lower():
            return False
        return self.max_amount >= request.amount


def find_auto_pay_rule(rules: list, request: PaymentRequestRecord) -> Optional[AutoPayRule]:
    for rule in rules:
        if rule.covers(request):
            return rule
    return None
