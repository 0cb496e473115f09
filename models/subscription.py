"""
models/subscription.py
----------------------
Domain model for plan subscriptions.
Status changes are owned by services/subscription_state.py.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class ScheduledPlanChange:
    """A plan swap deferred to the end of the current period."""
    target_plan_id: int
    effective_date: datetime
    change_type: str  # 'upgrade' | 'downgrade'

    def to_dict(self) -> dict:
        return {
            "target_plan_id": self.target_plan_id,
            "effective_date": self.effective_date.isoformat(),
            "change_type": self.change_type,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ScheduledPlanChange"]:
        if not data:
            return None
        effective = data["effective_date"]
        if isinstance(effective, str):
            effective = datetime.fromisoformat(effective)
        return cls(
            target_plan_id=int(data["target_plan_id"]),
            effective_date=effective,
            change_type=data.get("change_type", "upgrade"),
        )


@dataclass
class Subscription:
    """
    A user's subscription to a plan.

    Attributes:
        id: Database primary key (None for new records).
        user_id: Owner's Telegram user ID.
        plan_id: Current plan.
        status: One of SubscriptionStatus.
        current_period_start: Start of the paid period (aware UTC).
        current_period_end: End of the paid period; always after the start.
        billing_cycle: 'monthly' or 'annual'.
        cancel_at_period_end: Cancellation deferred to the period-end sweep.
        scheduled_plan_change: Plan swap applied at the next renewal.
        gateway_subscription_id: Gateway payment-plan subscription, if any.
        metadata: Free-form data (customer email, last upgrade...).
        version: Optimistic-lock counter, bumped on every save.
    """
    user_id: int
    plan_id: int
    current_period_start: datetime
    current_period_end: datetime
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    billing_cycle: str = "monthly"
    cancel_at_period_end: bool = False
    scheduled_plan_change: Optional[ScheduledPlanChange] = None
    gateway_subscription_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    version: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        self.status = SubscriptionStatus(self.status)

    def is_active(self, now: datetime) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and now < self.current_period_end

    def is_terminal(self) -> bool:
        return self.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)

    def period_ended(self, now: datetime) -> bool:
        return now >= self.current_period_end

    def __str__(self) -> str:
        flag = " (cancels at period end)" if self.cancel_at_period_end else ""
        return (
            f"#{self.id} plan={self.plan_id} {self.status.value}{flag} "
            f"{self.current_period_start:%Y-%m-%d} → {self.current_period_end:%Y-%m-%d}"
        )
