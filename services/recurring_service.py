"""
services/recurring_service.py
------------------------------
Business logic for managing recurring obligations from the bot.
Processing of due cycles lives in services/recurring_processor.py.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from config import DEFAULT_CURRENCY
from errors import ValidationError
from models.recurring import RecurringObligation, ScheduleInfo
from repositories.recurring_repo import RecurringRepository
from services.recurring_processor import validate_obligation
from utils.logger import get_logger

logger = get_logger(__name__)


class RecurringService:
    """
    Handles all business logic for recurring obligations.

    Responsibilities:
        - Validate and create obligations.
        - List, toggle and delete a user's obligations.
        - Format schedules for the bot.
    """

    def __init__(self, repo: RecurringRepository):
        self.repo = repo

    def add_obligation(self, user_id: int, kind: str, amount, frequency: str, description: str,
                       start_date: date, end_date: Optional[date] = None,
                       category: Optional[str] = None, vendor: Optional[str] = None,
                       currency: str = DEFAULT_CURRENCY) -> RecurringObligation:
        """
        Validate and save a new recurring obligation.

        The first due date is ``start_date``.

        Raises:
            ValidationError: Listing every problem with the definition.
        """
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {amount!r}") from None
        errors = validate_obligation(kind, amount, frequency, start_date, end_date, category, vendor)
        if errors:
            logger.warning(f"Rejected recurring obligation for user {user_id}: {errors}")
            raise ValidationError("Invalid recurring obligation", errors=errors)

        obligation = RecurringObligation(
            user_id=user_id,
            kind=kind,
            amount=amount,
            frequency=frequency,
            next_due_date=start_date,
            description=description.strip(),
            category=category,
            vendor=vendor,
            currency=currency,
            start_date=start_date,
            end_date=end_date,
        )
        return self.repo.add(obligation)

    def list_active(self, user_id: int) -> str:
        """
        Get a formatted list of all active recurring obligations.

        Returns:
            Formatted string or "no obligations" message.
        """
        obligations = self.repo.get_all(user_id, active_only=True)
        if not obligations:
            return "📭 No recurring income or expenses yet."

        lines = ["🔁 Active recurring entries:\n"]
        monthly_net = Decimal("0")
        for o in obligations:
            lines.append(f"  {o}")
            if o.frequency == "monthly":
                monthly_net += o.amount if o.kind == "income" else -o.amount

        if monthly_net:
            lines.append(f"\n💶 Net monthly commitments: {monthly_net:+.2f}")
        return "\n".join(lines)

    def delete_obligation(self, obligation_id: int, user_id: int) -> str:
        """Delete an obligation by ID. Its booked ledger records are kept."""
        if self.repo.delete(obligation_id, user_id):
            return f"🗑️ Recurring entry #{obligation_id} deleted."
        return f"⚠️ Recurring entry #{obligation_id} not found."

    def toggle_obligation(self, obligation_id: int, user_id: int, active: bool) -> str:
        """
        Pause or resume an obligation.

        A resumed obligation keeps its due date, so cycles missed while
        paused are booked on the next run.
        """
        if self.repo.toggle_active(obligation_id, user_id, active):
            status = "resumed ▶️" if active else "paused ⏸️"
            return f"Recurring entry #{obligation_id} {status}."
        return f"⚠️ Recurring entry #{obligation_id} not found."

    @staticmethod
    def format_created(obligation: RecurringObligation) -> str:
        msg = (
            f"🔁 Recurring {obligation.kind} added:\n"
            f"  📌 {obligation.description}\n"
            f"  💶 {obligation.amount:.2f} {obligation.currency}\n"
            f"  🔄 {obligation.frequency}\n"
            f"  📅 First due: {obligation.next_due_date}\n"
        )
        if obligation.end_date:
            msg += f"  ⏹️ Ends: {obligation.end_date}\n"
        return msg + f"  🔖 #{obligation.id}"

    @staticmethod
    def format_schedule(items: list[ScheduleInfo], days_ahead: int) -> str:
        if not items:
            return f"📭 Nothing due in the next {days_ahead} days."
        lines = [f"📅 Due in the next {days_ahead} days:\n"]
        for item in items:
            sign = "+" if item.kind == "income" else "-"
            late = f" ⚠️ {item.days_past_due}d overdue" if item.is_overdue else ""
            lines.append(
                f"  #{item.obligation_id} {item.next_due_date} {item.description}: "
                f"{sign}{item.amount:.2f}{late}"
            )
        return "\n".join(lines)
