"""
services/webhook_reconciler.py
-------------------------------
Reconciles Flutterwave webhook deliveries against local transactions.

Deliveries are at-least-once and may race direct verification. Both paths
settle through PaymentService.settle, so whichever lands first applies the
side effects and every later delivery is acknowledged as a duplicate.
"""

import json
from dataclasses import dataclass
from typing import Mapping, Optional

from errors import (
    DuplicateDeliveryError,
    InvalidSignatureError,
    MalformedPayloadError,
    RateLimitExceededError,
)
from models.webhook import (
    ChargeCompleted,
    SubscriptionCancelled,
    UnknownEvent,
    WebhookEvent,
    parse_webhook_event,
)
from repositories.transaction_repo import TransactionRepository
from security.rate_limiter import RateLimiter
from services.gateway import FlutterwaveGateway
from services.payment_service import PaymentService
from services.subscription_service import SubscriptionService
from utils.logger import get_logger
from utils.payment_monitor import PaymentMonitor

logger = get_logger(__name__)

SIGNATURE_HEADERS = ("flutterwave-signature", "verif-hash")


@dataclass
class WebhookOutcome:
    """What a delivery did. ``status`` is processed | duplicate | ignored | not_found."""
    event: str
    status: str
    message: str = ""
    transaction_id: Optional[int] = None
    subscription_id: Optional[int] = None

    def to_dict(self) -> dict:
        out = {"event": self.event, "status": self.status, "message": self.message}
        if self.transaction_id is not None:
            out["transaction_id"] = self.transaction_id
        if self.subscription_id is not None:
            out["subscription_id"] = self.subscription_id
        return out


class WebhookReconciler:
    """Verifies, decodes and applies gateway webhooks."""

    def __init__(self, gateway: FlutterwaveGateway, transaction_repo: TransactionRepository,
                 payment_service: PaymentService, subscription_service: SubscriptionService,
                 rate_limiter: Optional[RateLimiter] = None,
                 monitor: Optional[PaymentMonitor] = None):
        self.gateway = gateway
        self.transactions = transaction_repo
        self.payments = payment_service
        self.subscriptions = subscription_service
        self.rate_limiter = rate_limiter
        self.monitor = monitor

    def process_webhook(self, raw_payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Verify and apply one delivery.

        Raises:
            InvalidSignatureError: Signature missing or wrong.
            MalformedPayloadError: Body is not JSON or lacks required fields.
        """
        return self._apply(self._authenticate(raw_payload, signature))

    def handle_delivery(self, raw_body: bytes, headers: Mapping[str, str],
                        source: str = "flutterwave") -> tuple[int, dict]:
        """
        Framework-free entry point for an HTTP layer.

        Only signed deliveries count against the rate limit, so unsigned
        traffic cannot crowd out the gateway. ``source`` keys the limit;
        the HTTP layer may pass the caller's address.

        Returns:
            (status_code, json body): 401 bad signature, 400 malformed,
            429 rate limited, 200 for everything else with the outcome
            under ``data``.
        """
        try:
            raw_body = self._authenticate(raw_body, _signature_from(headers))
        except InvalidSignatureError as e:
            logger.warning("Rejected webhook with invalid signature")
            self._event("warning", "Rejected webhook with invalid signature")
            return 401, {"status": "error", "message": e.message}

        if self.rate_limiter is not None:
            try:
                self.rate_limiter.enforce(source, "webhook")
            except RateLimitExceededError as e:
                return 429, {"status": "error", "message": e.message, "retry_after": e.retry_after}

        try:
            outcome = self._apply(raw_body)
        except MalformedPayloadError as e:
            logger.warning(f"Rejected malformed webhook: {e}")
            return 400, {"status": "error", "message": e.message}
        except Exception as e:
            logger.exception("Webhook processing failed")
            if self.monitor:
                self.monitor.log_error("Webhook processing failed", e, category="webhook")
            return 200, {"status": "error", "message": "Webhook received but not processed"}
        return 200, {"status": "success", "data": outcome.to_dict()}

    def _authenticate(self, raw_payload: bytes, signature: Optional[str]) -> bytes:
        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode()
        if not self.gateway.verify_signature(raw_payload, signature):
            raise InvalidSignatureError("Invalid webhook signature")
        return raw_payload

    def _apply(self, raw_payload: bytes) -> WebhookOutcome:
        try:
            payload = json.loads(raw_payload)
        except ValueError:
            raise MalformedPayloadError("Webhook body is not valid JSON") from None

        event = parse_webhook_event(payload)
        outcome = self._dispatch(event)
        self._event("info" if outcome.status != "not_found" else "warning",
                    f"Webhook {outcome.event}: {outcome.status}", key=event.delivery_key)
        return outcome

    # ── EVENTS ────────────────────────────────────────────

    def _dispatch(self, event: WebhookEvent) -> WebhookOutcome:
        if isinstance(event, ChargeCompleted):
            return self._charge_completed(event)
        if isinstance(event, SubscriptionCancelled):
            return self._subscription_cancelled(event)
        if isinstance(event, UnknownEvent):
            logger.info(f"Ignoring unhandled webhook event '{event.event}'")
            return WebhookOutcome(event=event.event, status="ignored", message="Event not handled")
        raise MalformedPayloadError(f"Unsupported event type {type(event).__name__}")

    def _charge_completed(self, event: ChargeCompleted) -> WebhookOutcome:
        txn = (self.transactions.get_by_gateway_id(event.gateway_transaction_id)
               or self.transactions.get_by_reference(event.gateway_reference))
        if txn is None:
            logger.warning(
                f"No transaction for webhook id={event.gateway_transaction_id} ref={event.gateway_reference}"
            )
            return WebhookOutcome(event=event.event, status="not_found", message="Transaction not found")

        try:
            settled = self.payments.settle(txn, event)
        except DuplicateDeliveryError as e:
            logger.info(f"Duplicate webhook for transaction #{txn.id}: {e}")
            return WebhookOutcome(event=event.event, status="duplicate", message="Already processed",
                                  transaction_id=txn.id, subscription_id=txn.subscription_id)
        return WebhookOutcome(
            event=event.event,
            status="processed",
            message=f"Transaction {settled.status.value}",
            transaction_id=settled.id,
            subscription_id=settled.subscription_id,
        )

    def _subscription_cancelled(self, event: SubscriptionCancelled) -> WebhookOutcome:
        sub = self.subscriptions.cancel_from_gateway(event.gateway_subscription_id)
        if sub is None:
            return WebhookOutcome(event=event.event, status="not_found", message="Subscription not found")
        return WebhookOutcome(event=event.event, status="processed", message=f"Subscription {sub.status.value}",
                              subscription_id=sub.id)

    def _event(self, type: str, message: str, **data) -> None:
        if self.monitor:
            self.monitor.log(type, "webhook", message, **data)


def _signature_from(headers: Mapping[str, str]) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in SIGNATURE_HEADERS:
        if lowered.get(name):
            return lowered[name]
    return None
