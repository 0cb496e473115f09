"""
services/gateway.py
--------------------
Flutterwave v3 REST adapter.

Synchronous httpx client; bot handlers call it through ``asyncio.to_thread``.
Every transport or API-level failure surfaces as ``GatewayError`` so callers
never handle httpx types.
"""

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from config import (
    APP_BASE_URL,
    FLUTTERWAVE_BASE_URL,
    FLUTTERWAVE_SECRET_HASH,
    FLUTTERWAVE_SECRET_KEY,
    FLUTTERWAVE_TIMEOUT_SECONDS,
    REFERENCE_PREFIX,
)
from errors import GatewayError, ValidationError
from models.webhook import Customer, parse_timestamp
from utils.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_CURRENCIES = ("NGN", "USD", "GHS", "KES", "UGX", "TZS", "EUR", "GBP")


def payment_methods(currency: str) -> list[str]:
    """Checkout options Flutterwave offers for ``currency``."""
    currency = currency.upper()
    if currency == "NGN":
        return ["card", "account", "ussd", "mobilemoney", "banktransfer"]
    if currency in ("GHS", "KES", "UGX", "TZS"):
        return ["card", "mobilemoney"]
    return ["card"]


@dataclass(frozen=True)
class ChargeInit:
    payment_link: str
    gateway_transaction_id: str
    gateway_reference: str


@dataclass(frozen=True)
class GatewayVerification:
    status: str
    amount: Decimal
    currency: str
    gateway_reference: str
    gateway_transaction_id: str
    processed_at: Optional[datetime] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_successful(self) -> bool:
        return self.status == "successful"


class FlutterwaveGateway:
    """Thin client over the Flutterwave REST API."""

    def __init__(self, secret_key: str = FLUTTERWAVE_SECRET_KEY,
                 secret_hash: str = FLUTTERWAVE_SECRET_HASH,
                 base_url: str = FLUTTERWAVE_BASE_URL,
                 timeout: float = FLUTTERWAVE_TIMEOUT_SECONDS,
                 transport: Optional[httpx.BaseTransport] = None):
        if not secret_key:
            raise ValidationError("FLUTTERWAVE_SECRET_KEY is not configured")
        self.secret_hash = secret_hash
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    # ── OUTBOUND ──────────────────────────────────────────

    def initialize_charge(self, reference: str, amount: Decimal, currency: str, customer: Customer,
                          callback_url: Optional[str] = None, title: str = "Subscription",
                          meta: Optional[dict] = None) -> ChargeInit:
        """
        Create a hosted-checkout charge.

        Flutterwave assigns its transaction id only once the customer pays,
        so ``gateway_transaction_id`` starts out as our reference.
        """
        if currency.upper() not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}")
        if not customer.email:
            raise ValidationError("A customer email is required to initialize a charge")
        payload = {
            "tx_ref": reference,
            "amount": str(amount),
            "currency": currency.upper(),
            "redirect_url": callback_url or f"{APP_BASE_URL}/subscription/callback",
            "payment_options": ",".join(payment_methods(currency)),
            "customer": {
                "email": customer.email,
                "name": customer.name,
                "phonenumber": customer.phone_number,
            },
            "customizations": {"title": title},
            "meta": meta or {},
        }
        data = self._request("POST", "/payments", json=payload)
        link = data.get("link") if isinstance(data, dict) else None
        if not link:
            raise GatewayError("Flutterwave did not return a payment link", details={"reference": reference})
        logger.info(f"Initialized charge {reference} for {amount} {currency}")
        return ChargeInit(payment_link=link, gateway_transaction_id=reference, gateway_reference=reference)

    def verify(self, transaction_id: str) -> GatewayVerification:
        return self._verification(self._request("GET", f"/transactions/{transaction_id}/verify"))

    def verify_by_reference(self, reference: str) -> GatewayVerification:
        data = self._request("GET", "/transactions/verify_by_reference", params={"tx_ref": reference})
        return self._verification(data)

    def cancel_payment_plan(self, plan_id: str) -> dict:
        data = self._request("PUT", f"/payment-plans/{plan_id}/cancel")
        logger.info(f"Cancelled Flutterwave payment plan {plan_id}")
        return data or {}

    # ── INBOUND ───────────────────────────────────────────

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA256 (hex) of the raw body with the webhook secret hash."""
        if not self.secret_hash or not signature:
            return False
        expected = hmac.new(self.secret_hash.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip())

    @staticmethod
    def generate_reference(user_id: int, plan_id: Optional[int] = None, type: str = "subscription",
                           prefix: str = REFERENCE_PREFIX) -> str:
        """Unique ``tx_ref``: prefix, type, user, plan, millisecond timestamp, random suffix."""
        parts = [prefix, type, str(user_id)]
        if plan_id is not None:
            parts.append(str(plan_id))
        parts += [str(int(time.time() * 1000)), secrets.token_hex(4)]
        return "_".join(parts)

    # ── HELPERS ───────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Flutterwave {method} {path} failed: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.is_error or body.get("status") != "success":
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.error(f"Flutterwave {method} {path} rejected: {message}")
            raise GatewayError(
                f"Payment gateway error: {message}",
                details={"status_code": response.status_code, "path": path},
            )
        return body.get("data")

    @staticmethod
    def _verification(data: Any) -> GatewayVerification:
        if not isinstance(data, dict):
            raise GatewayError("Malformed verification response")
        try:
            amount = Decimal(str(data.get("amount")))
        except InvalidOperation:
            raise GatewayError(f"Invalid amount in verification: {data.get('amount')!r}") from None
        return GatewayVerification(
            status=str(data.get("status", "")).lower(),
            amount=amount,
            currency=str(data.get("currency", "")).upper(),
            gateway_reference=str(data.get("tx_ref", "")),
            gateway_transaction_id=str(data.get("id", "")),
            processed_at=parse_timestamp(data.get("created_at")),
            raw=data,
        )
