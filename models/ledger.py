"""
models/ledger.py
----------------
Domain model for realized income/expense entries produced by the
recurring payment processor.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional


@dataclass
class LedgerRecord:
    """
    A single income or expense entry created for one due cycle.

    ``(recurring_payment_id, due_date)`` is the record's natural key: the
    store rejects a second record for the same obligation and cycle.

    Attributes:
        id: Database primary key (None for new records).
        user_id: Owner's Telegram user ID.
        kind: Either 'income' or 'expense'.
        amount: Amount booked.
        description: Obligation description suffixed with "(Recurring)".
        date: Day the record was booked (processing day).
        due_date: Cycle date of the obligation that produced this record.
        recurring_payment_id: Back-reference to the obligation.
        category: Category reference.
        vendor: Vendor reference (expenses only).
        currency: ISO currency code.
        is_recurring: Always True for processor-created records.
        created_at: Timestamp when the record was created.
    """
    user_id: int
    kind: str  # 'income' | 'expense'
    amount: Decimal
    description: str
    date: date
    due_date: date
    recurring_payment_id: int
    category: Optional[str] = None
    vendor: Optional[str] = None
    currency: str = "GHS"
    is_recurring: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def natural_key(self) -> tuple[int, date]:
        return (self.recurring_payment_id, self.due_date)

    def is_expense(self) -> bool:
        return self.kind == "expense"

    def is_income(self) -> bool:
        return self.kind == "income"

    def __str__(self) -> str:
        sign = "-" if self.is_expense() else "+"
        return f"{sign}{self.amount:.2f} {self.currency} | {self.description} | {self.date}"
