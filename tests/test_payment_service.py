from datetime import timedelta
from decimal import Decimal

import pytest

from errors import DuplicateDeliveryError, GatewayError, NotFoundError, StaleStateError, ValidationError
from models.subscription import Subscription, SubscriptionStatus
from models.transaction import TransactionStatus


def test_verify_reference_settles_and_activates(checkout, gateway, payment_service, subscription_service,
                                                clock):
    result = checkout()
    gateway.report(result.transaction.gateway_reference, amount="30", transaction_id="9001")

    txn = payment_service.verify_reference(result.transaction.gateway_reference)

    assert txn.status == TransactionStatus.SUCCESSFUL
    assert txn.processed_at == clock.now
    assert txn.metadata["gateway_transaction_id"] == "9001"
    assert subscription_service.find(result.subscription.id).status == SubscriptionStatus.ACTIVE


def test_verify_payment_by_gateway_id_falls_back_to_reference(checkout, gateway, payment_service,
                                                              transaction_repo):
    result = checkout()
    gateway.report(result.transaction.gateway_reference, amount="30.00", transaction_id="9001")

    txn = payment_service.verify_payment("9001")

    assert txn.id == result.transaction.id
    assert transaction_repo.get_by_id(txn.id).is_successful()


def test_repeated_verification_applies_side_effects_once(checkout, pay, subscription_service):
    result = checkout()

    first = pay(result.transaction)
    version = subscription_service.find(result.subscription.id).version
    second = pay(result.transaction)

    assert first.status == second.status == TransactionStatus.SUCCESSFUL
    assert subscription_service.find(result.subscription.id).version == version


def test_settling_a_stale_copy_is_a_duplicate(checkout, gateway, payment_service, transaction_repo):
    result = checkout()
    stale = transaction_repo.get_by_id(result.transaction.id)
    report = gateway.report(result.transaction.gateway_reference, amount="30")

    payment_service.settle(transaction_repo.get_by_id(result.transaction.id), report)

    with pytest.raises(DuplicateDeliveryError):
        payment_service.settle(stale, report)


def test_settling_a_settled_transaction_is_a_duplicate(checkout, pay, payment_service, gateway):
    result = checkout()
    settled = pay(result.transaction)

    with pytest.raises(DuplicateDeliveryError):
        payment_service.settle(settled, gateway.reports[settled.gateway_reference])


@pytest.mark.parametrize("amount, currency", [("29.99", "GHS"), ("30.00", "NGN")])
def test_mismatched_report_fails_the_transaction(checkout, pay, subscription_service, amount, currency):
    result = checkout()

    txn = pay(result.transaction, amount=amount, currency=currency)

    assert txn.status == TransactionStatus.FAILED
    assert "mismatch" in txn.metadata
    assert subscription_service.find(result.subscription.id).status == SubscriptionStatus.PENDING


def test_amounts_compare_at_cent_precision(checkout, pay):
    result = checkout()
    assert pay(result.transaction, amount=Decimal("30.001")).is_successful()


def test_still_pending_at_gateway_changes_nothing(checkout, pay, transaction_repo):
    result = checkout()

    txn = pay(result.transaction, status="pending")

    assert txn.is_pending()
    assert transaction_repo.get_by_id(result.transaction.id).is_pending()


def test_failed_initial_payment_leaves_subscription_pending(checkout, pay, subscription_service):
    result = checkout()

    assert pay(result.transaction, status="failed").is_failed()
    assert subscription_service.find(result.subscription.id).status == SubscriptionStatus.PENDING


def test_side_effects_retry_on_stale_state(checkout, gateway, payment_service, subscription_service,
                                           monkeypatch):
    result = checkout()
    real = subscription_service.apply_successful_payment
    calls = []

    def flaky(txn):
        calls.append(txn.id)
        if len(calls) < 3:
            raise StaleStateError("Subscription was modified concurrently")
        return real(txn)

    monkeypatch.setattr(subscription_service, "apply_successful_payment", flaky)
    gateway.report(result.transaction.gateway_reference, amount="30")

    payment_service.verify_reference(result.transaction.gateway_reference)

    assert len(calls) == 3
    assert subscription_service.find(result.subscription.id).status == SubscriptionStatus.ACTIVE


def test_side_effects_give_up_after_three_attempts(checkout, gateway, payment_service, subscription_service,
                                                   transaction_repo, monkeypatch):
    result = checkout()

    def always_stale(txn):
        raise StaleStateError("Subscription was modified concurrently")

    monkeypatch.setattr(subscription_service, "apply_successful_payment", always_stale)
    gateway.report(result.transaction.gateway_reference, amount="30")

    with pytest.raises(StaleStateError):
        payment_service.verify_reference(result.transaction.gateway_reference)
    assert transaction_repo.get_by_id(result.transaction.id).is_successful()


def test_paying_a_replaced_checkout_is_flagged_for_refund(checkout, pay, payment_service, subscription_service,
                                                         transaction_repo, monitor):
    first = checkout()
    second = checkout(plan_id=2)
    pay(second.transaction)

    txn = pay(first.transaction)

    assert txn.status == TransactionStatus.SUCCESSFUL
    stored = transaction_repo.get_by_id(first.transaction.id)
    assert stored.metadata["refund_required"] is True
    assert "expired" in stored.metadata["unapplied_reason"]
    assert subscription_service.find(first.subscription.id).status == SubscriptionStatus.EXPIRED
    assert subscription_service.get_subscription(42).id == second.subscription.id
    assert monitor.get_events(type="error", category="subscription")


def hold_active_subscription(subscription_repo, clock, plan_id=2):
    """Store an active subscription for user 42 behind the service's back."""
    return subscription_repo.add(Subscription(user_id=42, plan_id=plan_id, current_period_start=clock.now,
                                              current_period_end=clock.now + timedelta(days=30),
                                              status=SubscriptionStatus.ACTIVE))


def test_payment_for_a_user_who_already_holds_a_subscription_is_flagged(checkout, pay, subscription_repo,
                                                                        transaction_repo, clock):
    result = checkout()
    hold_active_subscription(subscription_repo, clock)

    pay(result.transaction)

    stored = transaction_repo.get_by_id(result.transaction.id)
    assert stored.is_successful()
    assert stored.metadata["refund_required"] is True
    assert subscription_repo.get_by_id(result.subscription.id).status == SubscriptionStatus.PENDING


def test_lost_activation_race_is_flagged_not_stranded(checkout, pay, subscription_repo, transaction_repo,
                                                      payment_service, clock, monkeypatch):
    result = checkout()
    hold_active_subscription(subscription_repo, clock)
    monkeypatch.setattr(subscription_repo, "get_current_for_user", lambda *args, **kwargs: None)

    pay(result.transaction)

    stored = transaction_repo.get_by_id(result.transaction.id)
    assert stored.metadata["refund_required"] is True
    assert "uq_subscriptions_one_active" in stored.metadata["unapplied_reason"]
    assert payment_service.verify_reference(result.transaction.gateway_reference).is_successful()


def test_refunding_an_unapplied_payment_leaves_subscriptions_alone(checkout, pay, payment_service,
                                                                   subscription_service):
    first = checkout()
    second = checkout(plan_id=2)
    pay(second.transaction)
    unapplied = pay(first.transaction)

    refunded = payment_service.refund_transaction(unapplied.id)

    assert refunded.status == TransactionStatus.REFUNDED
    assert subscription_service.find(second.subscription.id).status == SubscriptionStatus.ACTIVE


def test_unknown_reference_and_gateway_errors(payment_service):
    with pytest.raises(NotFoundError):
        payment_service.verify_reference("BOTBILL_nope")
    with pytest.raises(GatewayError):
        payment_service.verify_payment("404")


def test_refund_cancels_the_subscription(checkout, pay, payment_service, subscription_service):
    result = checkout()
    txn = pay(result.transaction)

    refunded = payment_service.refund_transaction(txn.id)

    assert refunded.status == TransactionStatus.REFUNDED
    assert refunded.metadata["refund_amount"] == "30.00"
    assert subscription_service.find(result.subscription.id).status == SubscriptionStatus.CANCELLED


def test_partial_refund_bounds(checkout, pay, payment_service):
    txn = pay(checkout().transaction)

    with pytest.raises(ValidationError):
        payment_service.refund_transaction(txn.id, amount=Decimal("31"))
    with pytest.raises(ValidationError):
        payment_service.refund_transaction(txn.id, amount=Decimal("0"))
    assert payment_service.refund_transaction(txn.id, amount=Decimal("10")).metadata["refund_amount"] == "10.00"


def test_only_successful_transactions_are_refundable(checkout, payment_service):
    with pytest.raises(ValidationError):
        payment_service.refund_transaction(checkout().transaction.id)


def test_retry_failed_payment_opens_a_new_charge(checkout, pay, payment_service, gateway):
    result = checkout()
    failed = pay(result.transaction, status="failed")

    retry = payment_service.retry_failed_payment(failed.id)

    txn = retry.transaction
    assert txn.gateway_reference.startswith(f"retry_{failed.gateway_reference}_")
    assert txn.is_pending()
    assert txn.amount == failed.amount
    assert txn.metadata["original_transaction_id"] == failed.id
    assert "reported_status" not in txn.metadata
    assert retry.subscription.id == result.subscription.id
    assert gateway.charges[-1]["email"] == "ama@example.com"


def test_paid_retry_activates_the_subscription(checkout, pay, payment_service, subscription_service):
    result = checkout()
    failed = pay(result.transaction, status="failed")

    pay(payment_service.retry_failed_payment(failed.id).transaction)

    assert subscription_service.find(result.subscription.id).status == SubscriptionStatus.ACTIVE


def test_retry_requires_a_failed_transaction(checkout, payment_service):
    with pytest.raises(ValidationError):
        payment_service.retry_failed_payment(checkout().transaction.id)


def test_transaction_history_newest_first(checkout, pay, payment_service, subscription_service):
    result = checkout()
    pay(result.transaction)
    renewal = subscription_service.start_renewal(result.subscription.id)

    history = payment_service.get_transaction_history(42)

    assert [t.id for t in history] == [renewal.transaction.id, result.transaction.id]
    assert payment_service.get_transaction_history(42, limit=1, offset=1)[0].id == result.transaction.id
