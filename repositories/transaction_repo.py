"""
repositories/transaction_repo.py
---------------------------------
Data access layer for gateway transactions.
Status changes are conditional on the current status; the caller whose
update matches a row is the one that applies side effects.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from psycopg2.extras import Json

from db.connection import db_cursor
from models.transaction import Transaction, TransactionStatus
from utils.logger import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "id, user_id, subscription_id, gateway_transaction_id, gateway_reference, amount, "
    "currency, status, type, description, customer_email, processed_at, metadata, created_at"
)


class TransactionRepository:
    """Repository for the transactions table."""

    # ── CREATE ────────────────────────────────────────────

    def add(self, txn: Transaction) -> Transaction:
        """
        Insert a transaction.

        Raises:
            DuplicateRecordError: ``gateway_reference`` is already used.
        """
        sql = """
            INSERT INTO transactions
                (user_id, subscription_id, gateway_transaction_id, gateway_reference, amount,
                 currency, status, type, description, customer_email, processed_at, metadata)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, created_at;
        """
        with db_cursor("add transaction") as cur:
            cur.execute(sql, (
                txn.user_id, txn.subscription_id, txn.gateway_transaction_id,
                txn.gateway_reference, txn.amount, txn.currency, txn.status.value,
                txn.type.value, txn.description, txn.customer_email, txn.processed_at,
                Json(txn.metadata),
            ))
            txn.id, txn.created_at = cur.fetchone()
        logger.info(f"Recorded transaction {txn}")
        return txn

    # ── READ ──────────────────────────────────────────────

    def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        return self._fetch_one("id", transaction_id)

    def get_by_gateway_id(self, gateway_transaction_id: str) -> Optional[Transaction]:
        return self._fetch_one("gateway_transaction_id", gateway_transaction_id)

    def get_by_reference(self, gateway_reference: str) -> Optional[Transaction]:
        return self._fetch_one("gateway_reference", gateway_reference)

    def list_by_user(self, user_id: int, limit: int = 20, offset: int = 0) -> list[Transaction]:
        """A user's transactions, newest first."""
        sql = f"""
            SELECT {_COLUMNS} FROM transactions WHERE user_id = %s
            ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s;
        """
        with db_cursor("transaction history") as cur:
            cur.execute(sql, (user_id, limit, offset))
            return [self._row_to_transaction(r) for r in cur.fetchall()]

    # ── UPDATE ────────────────────────────────────────────

    def transition_status(self, transaction_id: int, expected: TransactionStatus,
                          new: TransactionStatus, processed_at: Optional[datetime] = None,
                          metadata: Optional[dict] = None) -> bool:
        """
        Move a transaction from ``expected`` to ``new`` status.

        ``metadata`` is merged into the stored metadata.

        Returns:
            True if this call performed the move, False if the row was no
            longer in ``expected`` status.
        """
        sql = """
            UPDATE transactions SET
                status = %s,
                processed_at = COALESCE(%s, processed_at),
                metadata = COALESCE(metadata, '{}'::jsonb) || %s
            WHERE id = %s AND status = %s;
        """
        with db_cursor("transition transaction") as cur:
            cur.execute(sql, (
                TransactionStatus(new).value, processed_at, Json(metadata or {}),
                transaction_id, TransactionStatus(expected).value,
            ))
            moved = cur.rowcount > 0
        if moved:
            logger.info(f"Transaction #{transaction_id}: {TransactionStatus(expected).value} -> {TransactionStatus(new).value}")
        return moved

    # ── HELPERS ───────────────────────────────────────────

    def _fetch_one(self, column: str, value) -> Optional[Transaction]:
        with db_cursor(f"get transaction by {column}") as cur:
            cur.execute(f"SELECT {_COLUMNS} FROM transactions WHERE {column} = %s;", (value,))
            row = cur.fetchone()
        return self._row_to_transaction(row) if row else None

    @staticmethod
    def _row_to_transaction(row: tuple) -> Transaction:
        return Transaction(
            id=row[0],
            user_id=row[1],
            subscription_id=row[2],
            gateway_transaction_id=row[3],
            gateway_reference=row[4],
            amount=Decimal(row[5]),
            currency=row[6],
            status=row[7],
            type=row[8],
            description=row[9] or "",
            customer_email=row[10],
            processed_at=row[11],
            metadata=row[12] or {},
            created_at=row[13],
        )
