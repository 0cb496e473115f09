"""Shared fixtures: in-memory repositories, a fake gateway and a fixed clock.

The fakes subclass the PostgreSQL repositories and honour the same
contracts: obligations are only soft-deleted, the ledger's (obligation,
due date) key is unique, due dates advance only from the expected value,
subscription saves are version-guarded, a user holds at most one active
subscription and transaction references are unique.
"""

import copy
import hashlib
import hmac
import itertools
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import httpx
import pytest

from errors import DuplicateRecordError, GatewayError, PersistenceError, StaleStateError
from models.plan import Plan
from models.recurring import RecurringObligation
from models.subscription import SubscriptionStatus
from models.transaction import TransactionStatus
from models.webhook import Customer
from repositories.ledger_repo import LedgerRepository
from repositories.plan_repo import PlanRepository
from repositories.recurring_repo import RecurringRepository
from repositories.subscription_repo import OPEN_STATUSES, SubscriptionRepository
from repositories.transaction_repo import TransactionRepository
from services.gateway import ChargeInit, FlutterwaveGateway, GatewayVerification
from services.payment_service import PaymentService
from services.recurring_processor import RecurringPaymentProcessor
from services.subscription_service import SubscriptionService
from services.webhook_reconciler import WebhookReconciler
from utils.payment_monitor import PaymentMonitor

WEBHOOK_SECRET = "whsec_test"


class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


# =============================================================================
# Repositories
# =============================================================================


class FakeRecurringRepo(RecurringRepository):
    def __init__(self):
        self.rows: dict[int, RecurringObligation] = {}
        self._ids = itertools.count(1)
        self.fail_advance: set[int] = set()
        self.fail_get_due = False
        self.advance_calls: list[tuple] = []

    def add(self, obligation):
        obligation.id = next(self._ids)
        obligation.created_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.rows[obligation.id] = copy.deepcopy(obligation)
        return obligation

    def get_by_id(self, obligation_id, user_id=None):
        row = self.rows.get(obligation_id)
        if row is None or (user_id is not None and row.user_id != user_id):
            return None
        return copy.deepcopy(row)

    def get_due(self, today, user_id=None, limit=None):
        if self.fail_get_due:
            raise PersistenceError("Database error during get due obligations")
        due = sorted(
            (o for o in self.rows.values()
             if o.is_active and o.next_due_date <= today and (user_id is None or o.user_id == user_id)),
            key=lambda o: (o.next_due_date, o.id),
        )
        if limit:
            due = due[:limit]
        return [copy.deepcopy(o) for o in due]

    def get_all(self, user_id, active_only=True):
        rows = [o for o in self.rows.values()
                if o.user_id == user_id and o.deleted_at is None and (o.is_active or not active_only)]
        return [copy.deepcopy(o) for o in sorted(rows, key=lambda o: o.next_due_date)]

    def advance_due_date(self, obligation_id, expected_current, new_date):
        self.advance_calls.append((obligation_id, expected_current, new_date))
        if obligation_id in self.fail_advance:
            raise PersistenceError("Database error during advance due date")
        row = self.rows.get(obligation_id)
        if row is None or row.next_due_date != expected_current:
            return False
        row.next_due_date = new_date
        return True

    def deactivate(self, obligation_id):
        row = self.rows.get(obligation_id)
        if row is None or not row.is_active:
            return False
        row.is_active = False
        return True

    def toggle_active(self, obligation_id, user_id, active):
        row = self.rows.get(obligation_id)
        if row is None or row.user_id != user_id or row.deleted_at is not None:
            return False
        row.is_active = active
        return True

    def delete(self, obligation_id, user_id):
        row = self.rows.get(obligation_id)
        if row is None or row.user_id != user_id or row.deleted_at is not None:
            return False
        row.is_active = False
        row.deleted_at = datetime(2026, 1, 15, tzinfo=timezone.utc)
        return True


class FakeLedgerRepo(LedgerRepository):
    def __init__(self):
        self.records = {}
        self._ids = itertools.count(1)
        self.fail_for: set[int] = set()

    def add(self, record):
        if record.recurring_payment_id in self.fail_for:
            raise PersistenceError("Database error during add ledger record")
        if record.natural_key in self.records:
            raise DuplicateRecordError(
                "Duplicate value violates uq_ledger_cycle",
                details={"constraint": "uq_ledger_cycle"},
            )
        record.id = next(self._ids)
        self.records[record.natural_key] = copy.deepcopy(record)
        return record

    def get_by_obligation(self, obligation_id):
        return sorted((r for r in self.records.values() if r.recurring_payment_id == obligation_id),
                      key=lambda r: r.due_date)

    def get_by_date_range(self, user_id, start, end):
        return [r for r in self.records.values() if r.user_id == user_id and start <= r.date <= end]

    def get_totals(self, user_id, start, end):
        totals = {"income": Decimal("0"), "expense": Decimal("0")}
        for r in self.get_by_date_range(user_id, start, end):
            totals[r.kind] += r.amount
        return totals


class FakePlanRepo(PlanRepository):
    def __init__(self):
        self.rows: dict[int, Plan] = {}
        self._ids = itertools.count(1)

    def add(self, plan):
        plan.id = next(self._ids)
        self.rows[plan.id] = copy.deepcopy(plan)
        return plan

    def get_by_id(self, plan_id):
        row = self.rows.get(plan_id)
        return copy.deepcopy(row) if row else None

    def get_all_active(self):
        return [copy.deepcopy(p) for p in sorted(self.rows.values(), key=lambda p: p.sort_order) if p.is_active]


class FakeSubscriptionRepo(SubscriptionRepository):
    def __init__(self):
        self.rows = {}
        self._ids = itertools.count(1)

    def add(self, sub):
        self._check_one_active(sub)
        sub.id = next(self._ids)
        sub.version = 0
        sub.created_at = sub.updated_at = sub.current_period_start
        self.rows[sub.id] = copy.deepcopy(sub)
        return sub

    def save(self, sub):
        stored = self.rows.get(sub.id)
        if stored is None or stored.version != sub.version:
            raise StaleStateError(
                f"Subscription #{sub.id} was modified concurrently",
                details={"subscription_id": sub.id, "version": sub.version},
            )
        self._check_one_active(sub)
        sub.version += 1
        self.rows[sub.id] = copy.deepcopy(sub)
        return sub

    def get_by_id(self, subscription_id):
        row = self.rows.get(subscription_id)
        return copy.deepcopy(row) if row else None

    def get_by_gateway_id(self, gateway_subscription_id):
        for row in self.rows.values():
            if row.gateway_subscription_id == gateway_subscription_id:
                return copy.deepcopy(row)
        return None

    def get_current_for_user(self, user_id, statuses=OPEN_STATUSES):
        wanted = {SubscriptionStatus(s) for s in statuses}
        rows = [s for s in self.rows.values() if s.user_id == user_id and s.status in wanted]
        if not rows:
            return None
        return copy.deepcopy(max(rows, key=lambda s: s.id))

    def find_period_ended(self, now):
        holding = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
        return [copy.deepcopy(s) for s in self.rows.values()
                if s.status in holding and s.current_period_end <= now]

    def find_expiring(self, now, until):
        return [copy.deepcopy(s) for s in self.rows.values()
                if s.status == SubscriptionStatus.ACTIVE and now < s.current_period_end <= until]

    def _check_one_active(self, sub):
        if sub.status != SubscriptionStatus.ACTIVE:
            return
        if any(s.user_id == sub.user_id and s.status == SubscriptionStatus.ACTIVE and s.id != sub.id
               for s in self.rows.values()):
            raise DuplicateRecordError(
                "Duplicate value violates uq_subscriptions_one_active",
                details={"constraint": "uq_subscriptions_one_active"},
            )


class FakeTransactionRepo(TransactionRepository):
    def __init__(self):
        self.rows = {}
        self._ids = itertools.count(1)

    def add(self, txn):
        if any(t.gateway_reference == txn.gateway_reference for t in self.rows.values()):
            raise DuplicateRecordError(
                "Duplicate value violates uq_transactions_reference",
                details={"constraint": "uq_transactions_reference"},
            )
        txn.id = next(self._ids)
        txn.created_at = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=txn.id)
        self.rows[txn.id] = copy.deepcopy(txn)
        return txn

    def get_by_id(self, transaction_id):
        row = self.rows.get(transaction_id)
        return copy.deepcopy(row) if row else None

    def get_by_gateway_id(self, gateway_transaction_id):
        return self._find(lambda t: t.gateway_transaction_id == gateway_transaction_id)

    def get_by_reference(self, gateway_reference):
        return self._find(lambda t: t.gateway_reference == gateway_reference)

    def list_by_user(self, user_id, limit=20, offset=0):
        rows = sorted((t for t in self.rows.values() if t.user_id == user_id), key=lambda t: -t.id)
        return [copy.deepcopy(t) for t in rows[offset:offset + limit]]

    def transition_status(self, transaction_id, expected, new, processed_at=None, metadata=None):
        row = self.rows.get(transaction_id)
        if row is None or row.status != TransactionStatus(expected):
            return False
        row.status = TransactionStatus(new)
        row.processed_at = processed_at or row.processed_at
        row.metadata.update(metadata or {})
        return True

    def _find(self, match) -> Optional[object]:
        for row in self.rows.values():
            if match(row):
                return copy.deepcopy(row)
        return None


# =============================================================================
# Gateway
# =============================================================================


def _offline(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"status": "error", "message": "offline"})


class FakeGateway(FlutterwaveGateway):
    """Records outbound calls; verification answers come from ``reports``."""

    def __init__(self):
        super().__init__("FLWSECK_TEST-fake", secret_hash=WEBHOOK_SECRET,
                         base_url="https://flw.test/v3", transport=httpx.MockTransport(_offline))
        self.charges: list[dict] = []
        self.cancelled_plans: list[str] = []
        self.reports: dict[str, GatewayVerification] = {}
        self.fail_charges = False

    def initialize_charge(self, reference, amount, currency, customer, callback_url=None,
                          title="Subscription", meta=None):
        if self.fail_charges:
            raise GatewayError("Payment gateway unreachable: offline")
        self.charges.append({"reference": reference, "amount": amount, "currency": currency,
                             "email": customer.email, "meta": meta or {}})
        return ChargeInit(payment_link=f"https://checkout.flw.test/{reference}",
                          gateway_transaction_id=reference, gateway_reference=reference)

    def report(self, reference, status="successful", amount=None, currency="GHS", transaction_id=None):
        """Make the gateway answer verification of ``reference``."""
        verification = GatewayVerification(
            status=status,
            amount=Decimal(str(amount)),
            currency=currency,
            gateway_reference=reference,
            gateway_transaction_id=transaction_id or f"flw_{reference}",
        )
        self.reports[reference] = verification
        self.reports[verification.gateway_transaction_id] = verification
        return verification

    def verify(self, transaction_id):
        if transaction_id not in self.reports:
            raise GatewayError("Payment gateway error: No transaction was found for this id")
        return self.reports[transaction_id]

    def verify_by_reference(self, reference):
        return self.verify(reference)

    def cancel_payment_plan(self, plan_id):
        self.cancelled_plans.append(plan_id)
        return {"id": plan_id, "status": "cancelled"}


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def monitor(clock):
    return PaymentMonitor(clock=clock)


@pytest.fixture
def recurring_repo():
    return FakeRecurringRepo()


@pytest.fixture
def ledger_repo():
    return FakeLedgerRepo()


@pytest.fixture
def processor(recurring_repo, ledger_repo, monitor, clock):
    return RecurringPaymentProcessor(recurring_repo, ledger_repo, monitor=monitor, clock=clock)


@pytest.fixture
def make_obligation(recurring_repo):
    """Insert an obligation; keyword overrides on top of a monthly expense due today."""

    def _make(**overrides) -> RecurringObligation:
        fields = {
            "user_id": 42,
            "kind": "expense",
            "amount": Decimal("800.00"),
            "frequency": "monthly",
            "next_due_date": date(2026, 1, 15),
            "description": "Rent",
            "category": "housing",
            "vendor": "Landlord",
            "start_date": date(2025, 12, 15),
        }
        fields.update(overrides)
        return recurring_repo.add(RecurringObligation(**fields))

    return _make


@pytest.fixture
def plan_repo():
    repo = FakePlanRepo()
    repo.add(Plan(name="Basic", price_monthly=Decimal("30.00"), price_annual=Decimal("300.00"),
                  features={"reports": {"enabled": True, "limit": 5}}, sort_order=1))
    repo.add(Plan(name="Pro", price_monthly=Decimal("60.00"), price_annual=Decimal("600.00"),
                  features={"reports": {"enabled": True, "limit": -1},
                            "export": {"enabled": True, "limit": None}}, sort_order=2))
    repo.add(Plan(name="Legacy", price_monthly=Decimal("10.00"), price_annual=Decimal("100.00"),
                  is_active=False, sort_order=3))
    return repo


@pytest.fixture
def subscription_repo():
    return FakeSubscriptionRepo()


@pytest.fixture
def transaction_repo():
    return FakeTransactionRepo()


@pytest.fixture
def gateway():
    gw = FakeGateway()
    yield gw
    gw.close()


@pytest.fixture
def subscription_service(subscription_repo, plan_repo, transaction_repo, gateway, monitor, clock):
    return SubscriptionService(subscription_repo, plan_repo, transaction_repo, gateway,
                               monitor=monitor, clock=clock)


@pytest.fixture
def payment_service(transaction_repo, subscription_service, gateway, monitor, clock):
    return PaymentService(transaction_repo, subscription_service, gateway, monitor=monitor, clock=clock)


@pytest.fixture
def reconciler(gateway, transaction_repo, payment_service, subscription_service, monitor):
    return WebhookReconciler(gateway, transaction_repo, payment_service, subscription_service,
                             monitor=monitor)


@pytest.fixture
def checkout(subscription_service):
    """Start a subscription for user 42 (Basic, monthly by default)."""

    def _checkout(user_id=42, plan_id=1, billing_cycle="monthly", email="ama@example.com"):
        return subscription_service.create_subscription(user_id, plan_id, billing_cycle,
                                                        Customer(email=email, name="Ama"))

    return _checkout


@pytest.fixture
def pay(gateway, payment_service):
    """Have the gateway report a pending transaction and settle it."""

    def _pay(txn, status="successful", amount=None, currency=None):
        gateway.report(txn.gateway_reference, status=status,
                       amount=txn.amount if amount is None else amount,
                       currency=currency or txn.currency)
        return payment_service.verify_reference(txn.gateway_reference)

    return _pay


@pytest.fixture
def active_subscription(checkout, pay, subscription_service):
    result = checkout()
    pay(result.transaction)
    return subscription_service.find(result.subscription.id)
