"""
services/subscription_service.py
---------------------------------
Subscription lifecycle: checkout, plan changes, renewals, cancellation,
period-end sweeps and feature gating.

Every status change goes through services/subscription_state.transition;
every save is version-guarded by the repository.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from errors import (
    BillingError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    PaymentNotAppliedError,
    ValidationError,
)
from models.plan import Plan
from models.subscription import ScheduledPlanChange, Subscription, SubscriptionStatus
from models.transaction import Transaction, TransactionStatus, TransactionType
from models.webhook import Customer
from repositories.plan_repo import PlanRepository
from repositories.subscription_repo import SubscriptionRepository
from repositories.transaction_repo import TransactionRepository
from services.gateway import FlutterwaveGateway
from services.proration import ProrationResult, calculate_proration, period_days_for
from services.subscription_state import can_transition, transition
from utils.dates import BILLING_CYCLES, days_until, period_end, utcnow
from utils.logger import get_logger
from utils.payment_monitor import PaymentMonitor

logger = get_logger(__name__)

HOLDING_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


@dataclass
class CheckoutResult:
    """What a subscription action produced: the subscription and any charge to pay."""
    subscription: Subscription
    transaction: Optional[Transaction] = None
    payment_link: Optional[str] = None
    proration: Optional[ProrationResult] = None

    @property
    def requires_payment(self) -> bool:
        return self.payment_link is not None


class SubscriptionService:
    """Business logic for plan subscriptions."""

    def __init__(self, subscription_repo: SubscriptionRepository, plan_repo: PlanRepository,
                 transaction_repo: TransactionRepository, gateway: FlutterwaveGateway,
                 monitor: Optional[PaymentMonitor] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.subscriptions = subscription_repo
        self.plans = plan_repo
        self.transactions = transaction_repo
        self.gateway = gateway
        self.monitor = monitor
        self.clock = clock

    # ── CHECKOUT ──────────────────────────────────────────

    def create_subscription(self, user_id: int, plan_id: int, billing_cycle: str = "monthly",
                            customer: Optional[Customer] = None,
                            metadata: Optional[dict] = None) -> CheckoutResult:
        """
        Start a subscription: a pending subscription plus a pending charge.

        The subscription becomes active when the charge settles. An earlier
        checkout still awaiting payment is expired once the new charge is
        initialized; paying its old link later flags that payment for refund.

        Raises:
            ValidationError: Bad billing cycle, inactive plan, missing email,
                or the user already holds an active/past-due subscription.
            NotFoundError: Unknown plan.
            GatewayError: The charge could not be initialized (nothing saved).
        """
        if billing_cycle not in BILLING_CYCLES:
            raise ValidationError(f"Billing cycle must be one of {', '.join(BILLING_CYCLES)}")
        plan = self._active_plan(plan_id)
        existing = self.subscriptions.get_current_for_user(user_id, HOLDING_STATUSES)
        if existing is not None:
            raise ValidationError(
                "User already has an active subscription",
                details={"subscription_id": existing.id, "status": existing.status.value},
            )
        customer = self._require_customer(customer)

        amount = plan.price_for(billing_cycle)
        reference = self.gateway.generate_reference(user_id, plan.id, TransactionType.SUBSCRIPTION.value)
        charge = self.gateway.initialize_charge(
            reference, amount, plan.currency, customer,
            title=f"{plan.name} subscription",
            meta={"user_id": user_id, "plan_id": plan.id, "billing_cycle": billing_cycle},
        )

        now = self.clock()
        abandoned = self.subscriptions.get_current_for_user(user_id, (SubscriptionStatus.PENDING,))
        if abandoned is not None:
            transition(abandoned, SubscriptionStatus.EXPIRED, "replaced by a new checkout")
            abandoned.metadata["superseded_by_reference"] = reference
            self.subscriptions.save(abandoned)
        sub = self.subscriptions.add(Subscription(
            user_id=user_id,
            plan_id=plan.id,
            current_period_start=now,
            current_period_end=period_end(now, billing_cycle),
            billing_cycle=billing_cycle,
            metadata={**(metadata or {}), "customer_email": customer.email},
        ))
        txn = self.transactions.add(Transaction(
            user_id=user_id,
            subscription_id=sub.id,
            gateway_transaction_id=charge.gateway_transaction_id,
            gateway_reference=reference,
            amount=amount,
            currency=plan.currency,
            type=TransactionType.SUBSCRIPTION,
            description=f"{plan.name} ({billing_cycle})",
            customer_email=customer.email,
        ))
        self._event("info", f"Subscription #{sub.id} created, awaiting payment", user_id=user_id,
                    plan_id=plan.id, reference=reference)
        return CheckoutResult(subscription=sub, transaction=txn, payment_link=charge.payment_link)

    def update_subscription(self, subscription_id: int, plan_id: int, immediate: bool = True,
                            customer: Optional[Customer] = None) -> CheckoutResult:
        """
        Change plan.

        Immediate changes are prorated over the days left in the period. A
        positive amount needs an upgrade charge and the plan only switches
        once it settles; otherwise the plan switches now with no charge.
        Non-immediate changes are scheduled for the end of the period.
        """
        sub = self._load(subscription_id)
        if sub.status != SubscriptionStatus.ACTIVE:
            raise ValidationError(f"Only active subscriptions can change plan (status: {sub.status.value})")
        if sub.plan_id == plan_id:
            raise ValidationError("Subscription is already on this plan")
        current_plan = self._plan(sub.plan_id)
        new_plan = self._active_plan(plan_id)
        cur_price = current_plan.price_for(sub.billing_cycle)
        new_price = new_plan.price_for(sub.billing_cycle)

        if not immediate:
            sub.scheduled_plan_change = ScheduledPlanChange(
                target_plan_id=new_plan.id,
                effective_date=sub.current_period_end,
                change_type="upgrade" if new_price > cur_price else "downgrade",
            )
            self.subscriptions.save(sub)
            self._event("info", f"Plan change to {new_plan.name} scheduled for "
                                f"{sub.current_period_end:%Y-%m-%d}", user_id=sub.user_id)
            return CheckoutResult(subscription=sub)

        now = self.clock()
        proration = calculate_proration(
            cur_price, new_price,
            days_remaining=max(0, days_until(sub.current_period_end, now)),
            period_days=period_days_for(sub.billing_cycle),
            currency=current_plan.currency,
            new_currency=new_plan.currency,
        )

        if proration.requires_payment:
            customer = self._require_customer(customer, sub)
            reference = self.gateway.generate_reference(sub.user_id, new_plan.id, TransactionType.UPGRADE.value)
            charge = self.gateway.initialize_charge(
                reference, proration.prorated_amount, proration.currency, customer,
                title=f"Upgrade to {new_plan.name}",
                meta={"subscription_id": sub.id, "new_plan_id": new_plan.id},
            )
            txn = self.transactions.add(Transaction(
                user_id=sub.user_id,
                subscription_id=sub.id,
                gateway_transaction_id=charge.gateway_transaction_id,
                gateway_reference=reference,
                amount=proration.prorated_amount,
                currency=proration.currency,
                type=TransactionType.UPGRADE,
                description=f"Upgrade {current_plan.name} -> {new_plan.name}",
                customer_email=customer.email,
                metadata={"new_plan_id": new_plan.id, "proration": proration.to_dict()},
            ))
            return CheckoutResult(subscription=sub, transaction=txn,
                                  payment_link=charge.payment_link, proration=proration)

        old_plan_id = sub.plan_id
        self._switch_plan(sub, new_plan.id, "immediate plan change")
        self.subscriptions.save(sub)
        change_type = TransactionType.UPGRADE if proration.is_upgrade else TransactionType.DOWNGRADE
        txn = self.transactions.add(Transaction(
            user_id=sub.user_id,
            subscription_id=sub.id,
            gateway_transaction_id=f"internal_{sub.id}_{int(now.timestamp())}",
            gateway_reference=self.gateway.generate_reference(sub.user_id, new_plan.id, change_type.value),
            amount=Decimal("0.00"),
            currency=proration.currency,
            type=change_type,
            status=TransactionStatus.SUCCESSFUL,
            description=f"Plan change {current_plan.name} -> {new_plan.name}",
            processed_at=now,
            metadata={
                "internal": True,
                "old_plan_id": old_plan_id,
                "new_plan_id": new_plan.id,
                "proration": proration.to_dict(),
            },
        ))
        self._event("success", f"Subscription #{sub.id} moved to {new_plan.name}", user_id=sub.user_id)
        return CheckoutResult(subscription=sub, transaction=txn, proration=proration)

    def start_renewal(self, subscription_id: int, customer: Optional[Customer] = None) -> CheckoutResult:
        """Initialize the charge for the next period (scheduled plan change included)."""
        sub = self._load(subscription_id)
        if sub.status not in HOLDING_STATUSES:
            raise ValidationError(f"Cannot renew a {sub.status.value} subscription")
        if sub.cancel_at_period_end:
            raise ValidationError("Subscription is set to cancel at period end")
        plan_id = sub.scheduled_plan_change.target_plan_id if sub.scheduled_plan_change else sub.plan_id
        plan = self._active_plan(plan_id)
        customer = self._require_customer(customer, sub)
        amount = plan.price_for(sub.billing_cycle)
        reference = self.gateway.generate_reference(sub.user_id, plan.id, TransactionType.RENEWAL.value)
        charge = self.gateway.initialize_charge(
            reference, amount, plan.currency, customer,
            title=f"{plan.name} renewal", meta={"subscription_id": sub.id},
        )
        txn = self.transactions.add(Transaction(
            user_id=sub.user_id,
            subscription_id=sub.id,
            gateway_transaction_id=charge.gateway_transaction_id,
            gateway_reference=reference,
            amount=amount,
            currency=plan.currency,
            type=TransactionType.RENEWAL,
            description=f"{plan.name} renewal ({sub.billing_cycle})",
            customer_email=customer.email,
            metadata={"plan_id": plan.id},
        ))
        return CheckoutResult(subscription=sub, transaction=txn, payment_link=charge.payment_link)

    # ── CANCELLATION ──────────────────────────────────────

    def cancel_subscription(self, subscription_id: int, immediate: bool = False,
                            reason: Optional[str] = None) -> Subscription:
        """
        Cancel now, or flag the subscription to end with its period.

        Raises:
            InvalidTransitionError: The subscription cannot be cancelled
                from its current status (already cancelled, expired, pending).
        """
        sub = self._load(subscription_id)
        if not can_transition(sub.status, SubscriptionStatus.CANCELLED):
            raise InvalidTransitionError(sub.status.value, SubscriptionStatus.CANCELLED.value, sub.id)

        if immediate:
            transition(sub, SubscriptionStatus.CANCELLED, reason or "cancelled by user")
            sub.cancel_at_period_end = False
            sub.metadata["cancelled_at"] = self.clock().isoformat()
        else:
            sub.cancel_at_period_end = True
        if reason:
            sub.metadata["cancel_reason"] = reason
        self.subscriptions.save(sub)

        if sub.gateway_subscription_id:
            try:
                self.gateway.cancel_payment_plan(sub.gateway_subscription_id)
            except GatewayError as e:
                logger.warning(f"Gateway plan cancel failed for subscription #{sub.id}: {e}")

        self._event("info", f"Subscription #{sub.id} "
                            + ("cancelled" if immediate else "will cancel at period end"),
                    user_id=sub.user_id)
        return sub

    def cancel_from_gateway(self, gateway_subscription_id: str) -> Optional[Subscription]:
        """Cancel in response to the gateway; repeated calls are no-ops."""
        sub = self.subscriptions.get_by_gateway_id(gateway_subscription_id)
        if sub is None:
            logger.warning(f"Gateway cancelled unknown subscription {gateway_subscription_id}")
            return None
        if sub.status == SubscriptionStatus.CANCELLED:
            return sub
        if not can_transition(sub.status, SubscriptionStatus.CANCELLED):
            logger.warning(f"Ignoring gateway cancel for {sub.status.value} subscription #{sub.id}")
            return sub
        transition(sub, SubscriptionStatus.CANCELLED, "cancelled by gateway")
        sub.metadata["cancelled_at"] = self.clock().isoformat()
        sub.metadata["cancelled_by"] = "gateway"
        self.subscriptions.save(sub)
        self._event("info", f"Subscription #{sub.id} cancelled by gateway", user_id=sub.user_id)
        return sub

    # ── SETTLEMENT SIDE EFFECTS ───────────────────────────

    def apply_successful_payment(self, txn: Transaction) -> Optional[Subscription]:
        """
        Apply what a settled charge paid for.

        Raises:
            PaymentNotAppliedError: The subscription can no longer be
                activated, or the user already holds another one.
        """
        if txn.subscription_id is None:
            return None
        sub = self._load(txn.subscription_id)
        now = self.clock()

        if txn.type == TransactionType.SUBSCRIPTION:
            if sub.status == SubscriptionStatus.ACTIVE:
                return sub
            if not can_transition(sub.status, SubscriptionStatus.ACTIVE):
                raise PaymentNotAppliedError(
                    f"Subscription #{sub.id} is {sub.status.value} and cannot be activated",
                    details={"subscription_id": sub.id, "status": sub.status.value},
                )
            holder = self.subscriptions.get_current_for_user(sub.user_id, HOLDING_STATUSES)
            if holder is not None and holder.id != sub.id:
                raise PaymentNotAppliedError(
                    f"User already holds subscription #{holder.id}",
                    details={"subscription_id": sub.id, "held_subscription_id": holder.id},
                )
            transition(sub, SubscriptionStatus.ACTIVE, "initial payment")
            sub.current_period_start = now
            sub.current_period_end = period_end(now, sub.billing_cycle)
            sub.metadata["activated_at"] = now.isoformat()
        elif txn.type in (TransactionType.UPGRADE, TransactionType.DOWNGRADE):
            new_plan_id = txn.metadata.get("new_plan_id")
            if new_plan_id is None:
                raise ValidationError(f"Transaction #{txn.id} has no target plan")
            self._switch_plan(sub, int(new_plan_id), "plan change paid")
        elif txn.type == TransactionType.RENEWAL:
            transition(sub, SubscriptionStatus.ACTIVE, "renewal paid")
            start = sub.current_period_end if sub.current_period_end > now else now
            sub.current_period_start = start
            sub.current_period_end = period_end(start, sub.billing_cycle)
            if sub.scheduled_plan_change:
                sub.plan_id = sub.scheduled_plan_change.target_plan_id
                sub.scheduled_plan_change = None

        sub.metadata["last_payment_reference"] = txn.gateway_reference
        self.subscriptions.save(sub)
        self._event("success", f"Payment applied to subscription #{sub.id} ({txn.type.value})",
                    user_id=sub.user_id, amount=str(txn.amount))
        return sub

    def apply_failed_payment(self, txn: Transaction) -> Optional[Subscription]:
        """A failed renewal puts an active subscription past due; other failures change nothing."""
        if txn.subscription_id is None:
            return None
        sub = self._load(txn.subscription_id)
        if txn.type == TransactionType.RENEWAL and sub.status == SubscriptionStatus.ACTIVE:
            transition(sub, SubscriptionStatus.PAST_DUE, "renewal payment failed")
            self.subscriptions.save(sub)
        self._event("warning", f"Payment failed for subscription #{sub.id} ({txn.type.value})",
                    user_id=sub.user_id)
        return sub

    # ── SWEEPS & QUERIES ──────────────────────────────────

    def process_period_ends(self) -> dict:
        """
        Close subscriptions whose period has ended.

        Flagged ones become cancelled, the rest expired. Each subscription
        is handled independently.
        """
        now = self.clock()
        outcome = {"cancelled": 0, "expired": 0, "errors": []}
        for sub in self.subscriptions.find_period_ended(now):
            target = SubscriptionStatus.CANCELLED if sub.cancel_at_period_end else SubscriptionStatus.EXPIRED
            try:
                transition(sub, target, "period ended")
                self.subscriptions.save(sub)
            except BillingError as e:
                logger.error(f"Period-end sweep failed for subscription #{sub.id}: {e}")
                outcome["errors"].append({"subscription_id": sub.id, "error": str(e), "code": e.code})
                continue
            outcome[target.value] += 1
        if outcome["cancelled"] or outcome["expired"] or outcome["errors"]:
            self._event("info" if not outcome["errors"] else "warning", "Subscription period-end sweep",
                        cancelled=outcome["cancelled"], expired=outcome["expired"],
                        errors=len(outcome["errors"]))
        return outcome

    def find(self, subscription_id: int) -> Optional[Subscription]:
        return self.subscriptions.get_by_id(subscription_id)

    def get_plans(self) -> list[Plan]:
        return self.plans.get_all_active()

    def get_subscription(self, user_id: int) -> Optional[Subscription]:
        return self.subscriptions.get_current_for_user(user_id)

    def check_feature_access(self, user_id: int, feature: str) -> bool:
        plan = self._active_plan_for(user_id)
        return plan is not None and plan.has_feature(feature)

    def get_feature_limits(self, user_id: int) -> dict[str, Optional[int]]:
        """Enabled features of the user's active plan mapped to their limit (None = unlimited)."""
        plan = self._active_plan_for(user_id)
        if plan is None:
            return {}
        return {name: plan.feature_limit(name) for name in plan.features if plan.has_feature(name)}

    def get_expiring_subscriptions(self, days: int = 7) -> list[Subscription]:
        now = self.clock()
        return self.subscriptions.find_expiring(now, now + timedelta(days=days))

    # ── HELPERS ───────────────────────────────────────────

    def _load(self, subscription_id: int) -> Subscription:
        sub = self.subscriptions.get_by_id(subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription #{subscription_id} not found")
        return sub

    def _plan(self, plan_id: int) -> Plan:
        plan = self.plans.get_by_id(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan #{plan_id} not found")
        return plan

    def _active_plan(self, plan_id: int) -> Plan:
        plan = self._plan(plan_id)
        if not plan.is_active:
            raise ValidationError(f"Plan '{plan.name}' is not available")
        return plan

    def _active_plan_for(self, user_id: int) -> Optional[Plan]:
        sub = self.subscriptions.get_current_for_user(user_id, (SubscriptionStatus.ACTIVE,))
        if sub is None or not sub.is_active(self.clock()):
            return None
        return self.plans.get_by_id(sub.plan_id)

    def _switch_plan(self, sub: Subscription, plan_id: int, reason: str) -> None:
        transition(sub, SubscriptionStatus.ACTIVE, reason)
        sub.metadata["last_plan_change"] = {
            "from": sub.plan_id, "to": plan_id, "at": self.clock().isoformat(),
        }
        sub.plan_id = plan_id
        sub.scheduled_plan_change = None

    @staticmethod
    def _require_customer(customer: Optional[Customer], sub: Optional[Subscription] = None) -> Customer:
        if customer is None and sub is not None and sub.metadata.get("customer_email"):
            customer = Customer(email=sub.metadata["customer_email"])
        if customer is None or not customer.email:
            raise ValidationError("A customer email is required for payment")
        return customer

    def _event(self, type: str, message: str, user_id: Optional[int] = None, **data) -> None:
        if self.monitor:
            self.monitor.log(type, "subscription", message, user_id=user_id, **data)
        else:
            logger.info(message)
