from decimal import Decimal

import pytest

from errors import ValidationError
from services.proration import calculate_proration, period_days_for, prorate, to_money


def test_upgrade_half_way_through_the_period_charges_the_difference():
    result = calculate_proration(1000, 2000, days_remaining=15, period_days=30, currency="NGN")

    assert result.prorated_amount == Decimal("500.00")
    assert result.current_plan_credit == Decimal("500.00")
    assert result.new_plan_charge == Decimal("1000.00")
    assert result.is_upgrade and not result.is_downgrade
    assert result.requires_payment


def test_downgrade_yields_a_credit_and_no_payment():
    result = calculate_proration(2000, 1000, days_remaining=15, period_days=30, currency="NGN")

    assert result.prorated_amount == Decimal("-500.00")
    assert result.is_downgrade
    assert not result.requires_payment


def test_same_price_is_neither_upgrade_nor_downgrade():
    result = calculate_proration("30.00", "30.00", days_remaining=10)
    assert result.prorated_amount == Decimal("0.00")
    assert not result.is_upgrade and not result.is_downgrade


def test_negative_days_remaining_is_clamped_to_zero():
    result = calculate_proration(1000, 2000, days_remaining=-3, period_days=30)
    assert result.prorated_amount == Decimal("0.00")
    assert not result.requires_payment


def test_rounding_is_half_up_to_cents():
    # 10/30 per day * 1 day = 0.3333...
    assert calculate_proration(0, 10, days_remaining=1, period_days=30).prorated_amount == Decimal("0.33")
    assert to_money("0.005") == Decimal("0.01")
    assert to_money(Decimal("2.675")) == Decimal("2.68")


def test_prorate_works_on_daily_rates():
    assert prorate(Decimal("10"), Decimal("25"), 4) == Decimal("60.00")
    assert prorate(Decimal("25"), Decimal("10"), 4) == Decimal("-60.00")


def test_annual_plans_use_a_365_day_period():
    assert period_days_for("annual") == 365
    assert period_days_for("monthly") == 30
    result = calculate_proration(365, 730, days_remaining=100, period_days=period_days_for("annual"))
    assert result.prorated_amount == Decimal("100.00")


def test_to_dict_is_serializable():
    data = calculate_proration(1000, 2000, 15, currency="GHS").to_dict()
    assert data["prorated_amount"] == "500.00"
    assert data["currency"] == "GHS"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"current_price": 10, "new_price": 20, "days_remaining": 5, "period_days": 0},
        {"current_price": -1, "new_price": 20, "days_remaining": 5},
        {"current_price": 10, "new_price": 20, "days_remaining": 5, "currency": "GHS", "new_currency": "USD"},
    ],
)
def test_invalid_inputs_raise_validation_error(kwargs):
    with pytest.raises(ValidationError):
        calculate_proration(**kwargs)
