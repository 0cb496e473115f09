"""
repositories/recurring_repo.py
-------------------------------
Data access layer for recurring obligations.
All SQL queries related to the `recurring_payments` table live here.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from db.connection import db_cursor
from models.recurring import RecurringObligation
from utils.logger import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "id, user_id, kind, amount, currency, frequency, description, category, vendor, "
    "start_date, next_due_date, end_date, is_active, created_at, deleted_at"
)


class RecurringRepository:
    """Repository for CRUD operations on recurring_payments table."""

    # ── CREATE ────────────────────────────────────────────

    def add(self, obligation: RecurringObligation) -> RecurringObligation:
        """
        Insert a new recurring obligation.

        Args:
            obligation: The RecurringObligation to persist.

        Returns:
            The same object with its `id` and `created_at` populated.
        """
        sql = """
            INSERT INTO recurring_payments
                (user_id, kind, amount, currency, frequency, description, category,
                 vendor, start_date, next_due_date, end_date, is_active)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, created_at;
        """
        with db_cursor("add recurring obligation") as cur:
            cur.execute(sql, (
                obligation.user_id, obligation.kind, obligation.amount,
                obligation.currency, obligation.frequency, obligation.description,
                obligation.category, obligation.vendor, obligation.start_date,
                obligation.next_due_date, obligation.end_date, obligation.is_active,
            ))
            obligation.id, obligation.created_at = cur.fetchone()
        logger.info(f"Added recurring {obligation.kind} '{obligation.description}' #{obligation.id}")
        return obligation

    # ── READ ──────────────────────────────────────────────

    def get_by_id(self, obligation_id: int, user_id: Optional[int] = None) -> Optional[RecurringObligation]:
        """Fetch a single obligation by ID, optionally scoped to a user."""
        sql = f"SELECT {_COLUMNS} FROM recurring_payments WHERE id = %s"
        params: list = [obligation_id]
        if user_id is not None:
            sql += " AND user_id = %s"
            params.append(user_id)
        with db_cursor("get recurring obligation") as cur:
            cur.execute(sql + ";", params)
            row = cur.fetchone()
        return self._row_to_obligation(row) if row else None

    def get_due(self, today: date, user_id: Optional[int] = None,
                limit: Optional[int] = None) -> list[RecurringObligation]:
        """
        Active obligations whose next_due_date is on or before ``today``.

        Args:
            today: Processing day.
            user_id: Restrict to one user's obligations.
            limit: Batch size cap; oldest due first.
        """
        sql = f"SELECT {_COLUMNS} FROM recurring_payments WHERE is_active = TRUE AND next_due_date <= %s"
        params: list = [today]
        if user_id is not None:
            sql += " AND user_id = %s"
            params.append(user_id)
        sql += " ORDER BY next_due_date ASC, id ASC"
        if limit:
            sql += " LIMIT %s"
            params.append(limit)
        with db_cursor("get due obligations") as cur:
            cur.execute(sql + ";", params)
            return [self._row_to_obligation(r) for r in cur.fetchall()]

    def get_all(self, user_id: int, active_only: bool = True) -> list[RecurringObligation]:
        """
        Get all recurring obligations for a user.

        Args:
            user_id: Telegram user ID.
            active_only: If True, only return active obligations.
        """
        sql = f"SELECT {_COLUMNS} FROM recurring_payments WHERE user_id = %s AND deleted_at IS NULL"
        if active_only:
            sql += " AND is_active = TRUE"
        sql += " ORDER BY next_due_date ASC;"
        with db_cursor("list recurring obligations") as cur:
            cur.execute(sql, (user_id,))
            return [self._row_to_obligation(r) for r in cur.fetchall()]

    # ── UPDATE ────────────────────────────────────────────

    def advance_due_date(self, obligation_id: int, expected_current: date, new_date: date) -> bool:
        """
        Move next_due_date forward, only if it still equals ``expected_current``.

        Returns:
            False when another writer already advanced the obligation.
        """
        sql = """
            UPDATE recurring_payments SET next_due_date = %s
            WHERE id = %s AND next_due_date = %s;
        """
        with db_cursor("advance due date") as cur:
            cur.execute(sql, (new_date, obligation_id, expected_current))
            updated = cur.rowcount > 0
        if updated:
            logger.debug(f"Advanced obligation #{obligation_id} next due date to {new_date}")
        return updated

    def deactivate(self, obligation_id: int) -> bool:
        """Soft-deactivate an obligation (end date passed)."""
        sql = "UPDATE recurring_payments SET is_active = FALSE WHERE id = %s AND is_active = TRUE;"
        with db_cursor("deactivate obligation") as cur:
            cur.execute(sql, (obligation_id,))
            updated = cur.rowcount > 0
        if updated:
            logger.info(f"Deactivated recurring obligation #{obligation_id}")
        return updated

    def toggle_active(self, obligation_id: int, user_id: int, active: bool) -> bool:
        """Pause or resume an obligation; deleted ones stay inactive."""
        sql = """
            UPDATE recurring_payments SET is_active = %s
            WHERE id = %s AND user_id = %s AND deleted_at IS NULL;
        """
        with db_cursor("toggle obligation") as cur:
            cur.execute(sql, (active, obligation_id, user_id))
            toggled = cur.rowcount > 0
        if toggled:
            logger.info(f"Recurring obligation #{obligation_id} {'resumed' if active else 'paused'}")
        return toggled

    # ── DELETE ────────────────────────────────────────────

    def delete(self, obligation_id: int, user_id: int) -> bool:
        """
        Soft-delete an obligation, scoped to user.

        The row stays so its ledger records keep pointing at it.
        """
        sql = """
            UPDATE recurring_payments SET is_active = FALSE, deleted_at = NOW()
            WHERE id = %s AND user_id = %s AND deleted_at IS NULL;
        """
        with db_cursor("delete obligation") as cur:
            cur.execute(sql, (obligation_id, user_id))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info(f"Deleted recurring obligation #{obligation_id}")
        return deleted

    # ── HELPERS ───────────────────────────────────────────

    @staticmethod
    def _row_to_obligation(row: tuple) -> RecurringObligation:
        """Convert a database row tuple to a RecurringObligation domain object."""
        return RecurringObligation(
            id=row[0],
            user_id=row[1],
            kind=row[2],
            amount=Decimal(row[3]),
            currency=row[4],
            frequency=row[5],
            description=row[6],
            category=row[7],
            vendor=row[8],
            start_date=row[9],
            next_due_date=row[10],
            end_date=row[11],
            is_active=row[12],
            created_at=row[13],
            deleted_at=row[14],
        )
