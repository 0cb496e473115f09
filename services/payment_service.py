"""
services/payment_service.py
----------------------------
Transaction settlement, shared by direct verification and webhooks.

A pending transaction is settled by a single conditional status update;
only the caller whose update lands applies the subscription side effects.
Everyone else sees ``DuplicateDeliveryError``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Union

from errors import (
    BillingError,
    DuplicateDeliveryError,
    DuplicateRecordError,
    NotFoundError,
    PaymentNotAppliedError,
    StaleStateError,
    ValidationError,
)
from models.transaction import Transaction, TransactionStatus, TransactionType
from models.webhook import ChargeCompleted, Customer
from repositories.transaction_repo import TransactionRepository
from services.gateway import FlutterwaveGateway, GatewayVerification
from services.proration import to_money
from services.subscription_service import CheckoutResult, SubscriptionService
from utils.dates import utcnow
from utils.logger import get_logger
from utils.payment_monitor import PaymentMonitor

logger = get_logger(__name__)

Reported = Union[GatewayVerification, ChargeCompleted]

SIDE_EFFECT_ATTEMPTS = 3
FINAL_STATUSES = ("successful", "failed", "cancelled")


class PaymentService:
    """Verifies, settles, refunds and retries gateway transactions."""

    def __init__(self, transaction_repo: TransactionRepository, subscription_service: SubscriptionService,
                 gateway: FlutterwaveGateway, monitor: Optional[PaymentMonitor] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.transactions = transaction_repo
        self.subscriptions = subscription_service
        self.gateway = gateway
        self.monitor = monitor
        self.clock = clock

    # ── VERIFICATION ──────────────────────────────────────

    def verify_payment(self, gateway_transaction_id: str) -> Transaction:
        """
        Ask the gateway about a transaction and settle it locally.

        Settling an already-settled transaction is a no-op that returns the
        stored transaction.
        """
        reported = self.gateway.verify(gateway_transaction_id)
        txn = (self.transactions.get_by_gateway_id(gateway_transaction_id)
               or self.transactions.get_by_reference(reported.gateway_reference))
        return self._settle_quietly(txn, reported, gateway_transaction_id)

    def verify_reference(self, reference: str) -> Transaction:
        """Same as verify_payment, looked up by our ``tx_ref``."""
        txn = self.transactions.get_by_reference(reference)
        if txn is None:
            raise NotFoundError(f"No transaction with reference {reference}")
        if not txn.is_pending():
            return txn
        reported = self.gateway.verify_by_reference(reference)
        return self._settle_quietly(txn, reported, reference)

    def _settle_quietly(self, txn: Optional[Transaction], reported: Reported, key: str) -> Transaction:
        if txn is None:
            raise NotFoundError(f"No local transaction for {key}")
        try:
            return self.settle(txn, reported)
        except DuplicateDeliveryError:
            return self.transactions.get_by_id(txn.id) or txn

    def settle(self, txn: Transaction, reported: Reported) -> Transaction:
        """
        Apply a gateway-reported outcome to a pending transaction.

        A report whose amount or currency differs from ours settles the
        transaction as failed. A report with a non-final status (still
        pending at the gateway) changes nothing.

        Raises:
            DuplicateDeliveryError: The transaction was already settled,
                here or by a concurrent caller.
        """
        if not txn.is_pending():
            raise DuplicateDeliveryError(
                f"Transaction {txn.gateway_reference} already {txn.status.value}",
                details={"transaction_id": txn.id, "status": txn.status.value},
            )

        status = reported.status.lower()
        mismatch = {}
        if to_money(reported.amount) != to_money(txn.amount):
            mismatch["amount"] = {"expected": str(txn.amount), "reported": str(reported.amount)}
        if reported.currency.upper() != txn.currency.upper():
            mismatch["currency"] = {"expected": txn.currency, "reported": reported.currency}
        if not mismatch and status not in FINAL_STATUSES:
            logger.info(f"Transaction {txn.gateway_reference} still {status} at the gateway")
            return txn

        succeeded = status == "successful" and not mismatch
        new_status = TransactionStatus.SUCCESSFUL if succeeded else TransactionStatus.FAILED
        now = self.clock()
        metadata = {
            "gateway_transaction_id": reported.gateway_transaction_id,
            "reported_status": status,
        }
        if mismatch:
            metadata["mismatch"] = mismatch
            logger.warning(f"Transaction {txn.gateway_reference} reported with mismatch: {mismatch}")

        if not self.transactions.transition_status(txn.id, TransactionStatus.PENDING, new_status,
                                                   processed_at=now, metadata=metadata):
            raise DuplicateDeliveryError(
                f"Transaction {txn.gateway_reference} was settled concurrently",
                details={"transaction_id": txn.id},
            )
        txn.status = new_status
        txn.processed_at = now
        txn.metadata.update(metadata)

        self._apply_side_effects(txn, succeeded)
        if self.monitor:
            if succeeded:
                self.monitor.log_success(f"Payment {txn.gateway_reference} settled", category="subscription",
                                         user_id=txn.user_id, amount=txn.amount)
            else:
                self.monitor.log("warning", "subscription", f"Payment {txn.gateway_reference} failed",
                                 user_id=txn.user_id, reported_status=status)
        return txn

    def _apply_side_effects(self, txn: Transaction, succeeded: bool) -> None:
        apply = (self.subscriptions.apply_successful_payment if succeeded
                 else self.subscriptions.apply_failed_payment)
        for attempt in range(1, SIDE_EFFECT_ATTEMPTS + 1):
            try:
                apply(txn)
                return
            except StaleStateError:
                if attempt == SIDE_EFFECT_ATTEMPTS:
                    raise
                logger.warning(f"Subscription changed while settling {txn.gateway_reference}; retrying")
            except (PaymentNotAppliedError, DuplicateRecordError) as e:
                self._flag_for_refund(txn, e)
                return

    def _flag_for_refund(self, txn: Transaction, error: BillingError) -> None:
        """Keep a captured payment that could not be applied visible for an operator refund."""
        flags = {"refund_required": True, "unapplied_reason": error.message}
        self.transactions.transition_status(txn.id, txn.status, txn.status, metadata=flags)
        txn.metadata.update(flags)
        if self.monitor:
            self.monitor.log_error(f"Payment {txn.gateway_reference} needs a refund", error,
                                   category="subscription", user_id=txn.user_id)
        else:
            logger.error(f"Payment {txn.gateway_reference} settled but not applied: {error}")

    # ── REFUNDS & RETRIES ─────────────────────────────────

    def refund_transaction(self, transaction_id: int, amount: Optional[Decimal] = None) -> Transaction:
        """
        Mark a successful transaction refunded.

        Refunding an initial subscription payment also cancels the
        subscription, unless the payment was never applied to it.
        """
        txn = self._load(transaction_id)
        if not txn.is_successful():
            raise ValidationError("Cannot refund unsuccessful transaction")
        refund_amount = to_money(amount if amount is not None else txn.amount)
        if refund_amount <= 0 or refund_amount > txn.amount:
            raise ValidationError(f"Refund amount must be between 0 and {txn.amount}")

        if not self.transactions.transition_status(
            txn.id, TransactionStatus.SUCCESSFUL, TransactionStatus.REFUNDED,
            metadata={"refund_amount": str(refund_amount), "refunded_at": self.clock().isoformat()},
        ):
            raise StaleStateError(f"Transaction #{txn.id} changed while refunding")
        txn.status = TransactionStatus.REFUNDED
        txn.metadata["refund_amount"] = str(refund_amount)

        if (txn.subscription_id and txn.type == TransactionType.SUBSCRIPTION
                and not txn.metadata.get("refund_required")):
            sub = self.subscriptions.find(txn.subscription_id)
            if sub is not None and not sub.is_terminal():
                self.subscriptions.cancel_subscription(sub.id, immediate=True, reason="payment refunded")
        logger.info(f"Refunded {refund_amount} {txn.currency} on transaction #{txn.id}")
        return txn

    def retry_failed_payment(self, transaction_id: int, customer: Optional[Customer] = None) -> CheckoutResult:
        """Open a new charge for a failed transaction under a fresh reference."""
        txn = self._load(transaction_id)
        if not txn.is_failed():
            raise ValidationError("Transaction is not in failed state")
        email = (customer.email if customer else None) or txn.customer_email
        if not email:
            raise ValidationError("A customer email is required for payment")
        customer = customer or Customer(email=email)

        reference = f"retry_{txn.gateway_reference}_{int(self.clock().timestamp() * 1000)}"
        charge = self.gateway.initialize_charge(
            reference, txn.amount, txn.currency, customer,
            title="Payment retry", meta={"original_transaction_id": txn.id, "retry_attempt": True},
        )
        retry = self.transactions.add(Transaction(
            user_id=txn.user_id,
            subscription_id=txn.subscription_id,
            gateway_transaction_id=charge.gateway_transaction_id,
            gateway_reference=reference,
            amount=txn.amount,
            currency=txn.currency,
            type=txn.type,
            description=f"Retry: {txn.description}",
            customer_email=email,
            metadata={**_carried(txn.metadata), "original_transaction_id": txn.id, "retry_attempt": True},
        ))
        sub = self.subscriptions.find(txn.subscription_id) if txn.subscription_id else None
        return CheckoutResult(subscription=sub, transaction=retry, payment_link=charge.payment_link)

    def get_transaction_history(self, user_id: int, limit: int = 10, offset: int = 0) -> list[Transaction]:
        return self.transactions.list_by_user(user_id, limit=limit, offset=offset)

    def _load(self, transaction_id: int) -> Transaction:
        txn = self.transactions.get_by_id(transaction_id)
        if txn is None:
            raise NotFoundError(f"Transaction #{transaction_id} not found")
        return txn


def _carried(metadata: dict) -> dict:
    """Metadata a retry inherits; settlement details stay with the original."""
    return {k: v for k, v in metadata.items()
            if k not in ("gateway_transaction_id", "reported_status", "mismatch")}
