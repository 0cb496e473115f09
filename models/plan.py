"""
models/plan.py
--------------
Domain model for subscription plans and their feature sets.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass
class Plan:
    """
    A purchasable subscription plan.

    ``features`` maps a feature name to ``{"enabled": bool, "limit": int | None}``;
    a limit of ``-1`` or ``None`` means unlimited.
    """
    name: str
    price_monthly: Decimal
    price_annual: Decimal
    currency: str = "GHS"
    description: str = ""
    features: dict = field(default_factory=dict)
    is_active: bool = True
    sort_order: int = 0
    gateway_plan_id: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def price_for(self, billing_cycle: str) -> Decimal:
        return self.price_annual if billing_cycle == "annual" else self.price_monthly

    def has_feature(self, feature: str) -> bool:
        entry = self.features.get(feature)
        return bool(entry and entry.get("enabled"))

    def feature_limit(self, feature: str) -> Optional[int]:
        """Limit for an enabled feature; None when unlimited."""
        entry = self.features.get(feature) or {}
        limit = entry.get("limit")
        if limit is None or limit < 0:
            return None
        return int(limit)

    def __str__(self) -> str:
        return f"{self.name} ({self.price_monthly:.2f}/mo, {self.price_annual:.2f}/yr {self.currency})"
