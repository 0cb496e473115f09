"""
services/proration.py
----------------------
Mid-period plan change arithmetic.

All money is Decimal and rounded half-up to cents at the boundary.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from config import DEFAULT_CURRENCY, PRORATION_PERIOD_DAYS
from errors import ValidationError

CENTS = Decimal("0.01")
ANNUAL_PERIOD_DAYS = 365


def to_money(value) -> Decimal:
    """Coerce to Decimal rounded half-up to cents."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ProrationResult:
    current_plan_credit: Decimal
    new_plan_charge: Decimal
    prorated_amount: Decimal
    is_upgrade: bool
    is_downgrade: bool
    currency: str

    @property
    def requires_payment(self) -> bool:
        return self.prorated_amount > 0

    def to_dict(self) -> dict:
        return {
            "current_plan_credit": str(self.current_plan_credit),
            "new_plan_charge": str(self.new_plan_charge),
            "prorated_amount": str(self.prorated_amount),
            "is_upgrade": self.is_upgrade,
            "is_downgrade": self.is_downgrade,
            "currency": self.currency,
        }


def prorate(current_daily_rate, new_daily_rate, days_remaining) -> Decimal:
    """
    Amount owed for switching rates with ``days_remaining`` left.

    Positive means the customer pays the difference; negative is a credit.
    """
    days = Decimal(str(days_remaining))
    return to_money(Decimal(str(new_daily_rate)) * days - Decimal(str(current_daily_rate)) * days)


def period_days_for(billing_cycle: str) -> int:
    return ANNUAL_PERIOD_DAYS if billing_cycle == "annual" else PRORATION_PERIOD_DAYS


def calculate_proration(current_price, new_price, days_remaining: int,
                        period_days: int = PRORATION_PERIOD_DAYS,
                        currency: str = DEFAULT_CURRENCY,
                        new_currency: str | None = None) -> ProrationResult:
    """
    Prorate a plan change.

    Args:
        current_price: Price of the current plan for one nominal period.
        new_price: Price of the target plan for the same period.
        days_remaining: Whole days left in the current period (clamped at 0).
        period_days: Nominal period length used to derive daily rates.
        currency: Currency of the current plan.
        new_currency: Currency of the target plan, when it may differ.

    Raises:
        ValidationError: Non-positive period, negative prices or a currency mismatch.
    """
    if new_currency is not None and new_currency != currency:
        raise ValidationError(
            f"Cannot prorate between currencies {currency} and {new_currency}",
            details={"currency": currency, "new_currency": new_currency},
        )
    if period_days <= 0:
        raise ValidationError("period_days must be positive")
    current_price = Decimal(str(current_price))
    new_price = Decimal(str(new_price))
    if current_price < 0 or new_price < 0:
        raise ValidationError("Plan prices cannot be negative")

    days = max(0, int(days_remaining))
    current_daily = current_price / period_days
    new_daily = new_price / period_days

    return ProrationResult(
        current_plan_credit=to_money(current_daily * days),
        new_plan_charge=to_money(new_daily * days),
        prorated_amount=prorate(current_daily, new_daily, days),
        is_upgrade=new_price > current_price,
        is_downgrade=new_price < current_price,
        currency=currency,
    )
