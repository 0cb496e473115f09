"""
models/transaction.py
---------------------
Domain model for gateway charges tracked locally.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RENEWAL = "renewal"


# Status moves are one-way; nothing returns to pending.
TRANSACTION_TRANSITIONS: dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.SUCCESSFUL, TransactionStatus.FAILED}),
    TransactionStatus.SUCCESSFUL: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}


@dataclass
class Transaction:
    """
    A charge initialized with the payment gateway.

    ``gateway_reference`` (the ``tx_ref`` we generate) is unique and is the
    deduplication key shared by direct verification and webhook deliveries.
    """
    user_id: int
    gateway_transaction_id: str
    gateway_reference: str
    amount: Decimal
    currency: str
    type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    subscription_id: Optional[int] = None
    description: str = ""
    customer_email: Optional[str] = None
    processed_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = TransactionStatus(self.status)
        self.type = TransactionType(self.type)

    def is_successful(self) -> bool:
        return self.status == TransactionStatus.SUCCESSFUL

    def is_failed(self) -> bool:
        return self.status == TransactionStatus.FAILED

    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def can_move_to(self, target: TransactionStatus) -> bool:
        return target in TRANSACTION_TRANSITIONS[self.status]

    def __str__(self) -> str:
        return (
            f"#{self.id} {self.type.value} {self.amount:.2f} {self.currency} "
            f"[{self.status.value}] ref={self.gateway_reference}"
        )
