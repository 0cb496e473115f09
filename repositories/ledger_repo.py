"""
repositories/ledger_repo.py
----------------------------
Data access layer for ledger records (realized income and expenses).
"""

from datetime import date
from decimal import Decimal

from db.connection import db_cursor
from models.ledger import LedgerRecord
from utils.logger import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "id, user_id, kind, amount, currency, description, date, due_date, category, "
    "vendor, is_recurring, recurring_payment_id, created_at"
)


class LedgerRepository:
    """Repository for the append-only ledger_records table."""

    def add(self, record: LedgerRecord) -> LedgerRecord:
        """
        Insert a ledger record.

        Raises:
            DuplicateRecordError: A record already exists for this
                obligation and due date.
        """
        sql = """
            INSERT INTO ledger_records
                (user_id, kind, amount, currency, description, date, due_date,
                 category, vendor, is_recurring, recurring_payment_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, created_at;
        """
        with db_cursor("add ledger record") as cur:
            cur.execute(sql, (
                record.user_id, record.kind, record.amount, record.currency,
                record.description, record.date, record.due_date, record.category,
                record.vendor, record.is_recurring, record.recurring_payment_id,
            ))
            record.id, record.created_at = cur.fetchone()
        return record

    def get_by_obligation(self, obligation_id: int) -> list[LedgerRecord]:
        sql = f"SELECT {_COLUMNS} FROM ledger_records WHERE recurring_payment_id = %s ORDER BY due_date ASC;"
        with db_cursor("ledger by obligation") as cur:
            cur.execute(sql, (obligation_id,))
            return [self._row_to_record(r) for r in cur.fetchall()]

    def get_by_date_range(self, user_id: int, start: date, end: date) -> list[LedgerRecord]:
        """Records booked between two dates (inclusive), newest first."""
        sql = f"""
            SELECT {_COLUMNS} FROM ledger_records
            WHERE user_id = %s AND date BETWEEN %s AND %s
            ORDER BY date DESC, id DESC;
        """
        with db_cursor("ledger by date range") as cur:
            cur.execute(sql, (user_id, start, end))
            return [self._row_to_record(r) for r in cur.fetchall()]

    def get_totals(self, user_id: int, start: date, end: date) -> dict[str, Decimal]:
        """Sum of income and expenses in a date range."""
        sql = """
            SELECT kind, COALESCE(SUM(amount), 0) FROM ledger_records
            WHERE user_id = %s AND date BETWEEN %s AND %s
            GROUP BY kind;
        """
        with db_cursor("ledger totals") as cur:
            cur.execute(sql, (user_id, start, end))
            totals = {kind: Decimal(total) for kind, total in cur.fetchall()}
        return {
            "income": totals.get("income", Decimal("0")),
            "expense": totals.get("expense", Decimal("0")),
        }

    @staticmethod
    def _row_to_record(row: tuple) -> LedgerRecord:
        return LedgerRecord(
            id=row[0],
            user_id=row[1],
            kind=row[2],
            amount=Decimal(row[3]),
            currency=row[4],
            description=row[5],
            date=row[6],
            due_date=row[7],
            category=row[8],
            vendor=row[9],
            is_recurring=row[10],
            recurring_payment_id=row[11],
            created_at=row[12],
        )
