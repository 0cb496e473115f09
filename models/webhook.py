"""
models/webhook.py
-----------------
Gateway webhook events, decoded once at the boundary into a tagged union:
ChargeCompleted | SubscriptionCancelled | UnknownEvent.
Nothing downstream reads the raw payload dict.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from errors import MalformedPayloadError

CHARGE_COMPLETED = "charge.completed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"

_CHARGE_FIELDS = ("id", "tx_ref", "amount", "currency", "status")


@dataclass(frozen=True)
class Customer:
    email: Optional[str] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass(frozen=True)
class ChargeCompleted:
    gateway_transaction_id: str
    gateway_reference: str
    amount: Decimal
    currency: str
    status: str  # gateway-reported: 'successful' | 'failed' | ...
    flw_ref: Optional[str] = None
    customer: Customer = field(default_factory=Customer)
    created_at: Optional[datetime] = None
    event: str = CHARGE_COMPLETED

    @property
    def delivery_key(self) -> str:
        return f"{self.gateway_transaction_id}:{self.status}"


@dataclass(frozen=True)
class SubscriptionCancelled:
    gateway_subscription_id: str
    status: Optional[str] = None
    customer: Customer = field(default_factory=Customer)
    created_at: Optional[datetime] = None
    event: str = SUBSCRIPTION_CANCELLED

    @property
    def delivery_key(self) -> str:
        return f"sub:{self.gateway_subscription_id}:cancelled"


@dataclass(frozen=True)
class UnknownEvent:
    event: str
    raw_id: Optional[str] = None

    @property
    def delivery_key(self) -> str:
        return f"unknown:{self.event}:{self.raw_id}"


WebhookEvent = Union[ChargeCompleted, SubscriptionCancelled, UnknownEvent]


def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _customer(data: dict) -> Customer:
    raw = data.get("customer") or {}
    if not isinstance(raw, dict):
        raise MalformedPayloadError("'data.customer' must be an object")
    return Customer(
        email=raw.get("email"),
        name=raw.get("name"),
        phone_number=raw.get("phone_number"),
    )


def parse_webhook_event(payload) -> WebhookEvent:
    """
    Decode a parsed JSON webhook body.

    Raises:
        MalformedPayloadError: If the envelope or a known event's required
            fields are missing or of the wrong type.
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Webhook payload must be a JSON object")
    event = payload.get("event")
    data = payload.get("data")
    if not isinstance(event, str) or not event:
        raise MalformedPayloadError("Webhook payload is missing 'event'")
    if not isinstance(data, dict):
        raise MalformedPayloadError("Webhook payload is missing 'data'")

    if event == CHARGE_COMPLETED:
        missing = [name for name in _CHARGE_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise MalformedPayloadError(
                f"charge.completed is missing fields: {', '.join(missing)}",
                details={"missing": missing},
            )
        try:
            amount = Decimal(str(data["amount"]))
        except InvalidOperation:
            raise MalformedPayloadError(f"Invalid amount: {data['amount']!r}") from None
        return ChargeCompleted(
            gateway_transaction_id=str(data["id"]),
            gateway_reference=str(data["tx_ref"]),
            amount=amount,
            currency=str(data["currency"]).upper(),
            status=str(data["status"]).lower(),
            flw_ref=data.get("flw_ref"),
            customer=_customer(data),
            created_at=parse_timestamp(data.get("created_at")),
        )

    if event == SUBSCRIPTION_CANCELLED:
        if data.get("id") in (None, ""):
            raise MalformedPayloadError("subscription.cancelled is missing 'data.id'")
        return SubscriptionCancelled(
            gateway_subscription_id=str(data["id"]),
            status=data.get("status"),
            customer=_customer(data),
            created_at=parse_timestamp(data.get("created_at")),
        )

    raw_id = data.get("id")
    return UnknownEvent(event=event, raw_id=str(raw_id) if raw_id is not None else None)
