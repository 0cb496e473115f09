"""
models/recurring.py
-------------------
Domain model for recurring (scheduled) income and expense obligations.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional


@dataclass
class RecurringObligation:
    """
    A recurring income or expense definition (salary, rent, subscription fee...).

    Attributes:
        id: Database primary key (None for new records).
        user_id: Owner's Telegram user ID.
        kind: Either 'income' or 'expense'.
        amount: Amount produced on every due cycle (always > 0).
        frequency: How often ('daily', 'weekly', 'monthly', 'yearly').
        next_due_date: The next cycle date that has not been processed yet.
        description: Human-readable label copied onto every ledger record.
        category: Category reference (plain name).
        vendor: Vendor reference, expenses only.
        currency: ISO currency code.
        start_date: First due date; its day of month anchors monthly steps.
        end_date: Last day the obligation may produce records (inclusive).
        is_active: False once expired or cancelled. Never hard-deleted by processing.
        created_at: Timestamp when the record was created.
        deleted_at: Set when the user deletes it; the row is kept for its ledger records.
    """
    user_id: int
    kind: str  # 'income' | 'expense'
    amount: Decimal
    frequency: str  # 'daily' | 'weekly' | 'monthly' | 'yearly'
    next_due_date: date
    description: str = ""
    category: Optional[str] = None
    vendor: Optional[str] = None
    currency: str = "GHS"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def is_due(self, today: date) -> bool:
        return self.is_active and self.next_due_date <= today

    def is_expired(self, today: date) -> bool:
        """True once ``end_date`` lies strictly before ``today``."""
        return self.end_date is not None and self.end_date < today

    @property
    def anchor_day(self) -> Optional[int]:
        if self.frequency in ("monthly", "yearly") and self.start_date:
            return self.start_date.day
        return None

    def __str__(self) -> str:
        status = "✅" if self.is_active else "❌"
        sign = "+" if self.kind == "income" else "-"
        return (
            f"{status} #{self.id} {self.description}: {sign}{self.amount:.2f} {self.currency} "
            f"({self.frequency}) - Next: {self.next_due_date}"
        )


@dataclass
class ScheduleInfo:
    """Upcoming or overdue cycle of an obligation, for schedule listings."""
    obligation_id: int
    kind: str
    amount: Decimal
    description: str
    next_due_date: date
    frequency: str
    is_overdue: bool
    days_past_due: int = 0
    extra: dict = field(default_factory=dict)
