"""
services/recurring_processor.py
--------------------------------
Turns due recurring obligations into ledger records.

Each item is folded independently into a ProcessingResult: one item's
failure is recorded and the loop moves on. Per item the order is fixed:
write the ledger record, then advance the due date. A failed ledger write
leaves the due date untouched; a failed advance leaves the record in place
and is reported. A record that already exists for the cycle is detected
through the ledger's natural key and only the due date is advanced.
"""

import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from errors import BillingError, DuplicateRecordError, NotFoundError
from models.ledger import LedgerRecord
from models.recurring import RecurringObligation, ScheduleInfo
from repositories.ledger_repo import LedgerRepository
from repositories.recurring_repo import RecurringRepository
from utils.dates import FREQUENCIES, advance_due_date, days_past_due, utcnow
from utils.logger import get_logger
from utils.payment_monitor import PaymentMonitor

logger = get_logger(__name__)

KINDS = ("income", "expense")


@dataclass
class ProcessingResult:
    """Outcome of one processing pass."""
    processed_count: int = 0
    created_records: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    deactivated_count: int = 0
    duplicate_count: int = 0
    total_amount: Decimal = Decimal("0")

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, obligation_id, error: Exception | str) -> None:
        code = getattr(error, "code", None) or "UNKNOWN"
        self.errors.append({"obligation_id": obligation_id, "error": str(error), "code": code})

    def merge(self, other: "ProcessingResult") -> None:
        self.processed_count += other.processed_count
        self.created_records.extend(other.created_records)
        self.errors.extend(other.errors)
        self.deactivated_count += other.deactivated_count
        self.duplicate_count += other.duplicate_count
        self.total_amount += other.total_amount

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "processed_count": self.processed_count,
            "created_records": [dict(r, amount=str(r["amount"])) for r in self.created_records],
            "errors": list(self.errors),
            "deactivated_count": self.deactivated_count,
            "duplicate_count": self.duplicate_count,
            "total_amount": str(self.total_amount),
        }


def validate_obligation(kind: str, amount, frequency: str, start_date: Optional[date] = None,
                        end_date: Optional[date] = None, category: Optional[str] = None,
                        vendor: Optional[str] = None) -> list[str]:
    """
    Check a recurring obligation definition.

    Returns:
        Every problem found; an empty list means the definition is valid.
    """
    errors = []
    if kind not in KINDS:
        errors.append("Type must be either income or expense")
    try:
        if amount is None or Decimal(str(amount)) <= 0:
            errors.append("Amount must be a positive number")
    except ArithmeticError:
        errors.append("Amount must be a positive number")
    if frequency not in FREQUENCIES:
        errors.append("Frequency must be daily, weekly, monthly, or yearly")
    if end_date and start_date and end_date <= start_date:
        errors.append("End date must be after start date")
    if kind == "income" and not category:
        errors.append("Income entries must have a category")
    if kind == "expense" and not category and not vendor:
        errors.append("Expense entries must have either a category or vendor")
    if kind == "income" and vendor:
        errors.append("Income entries cannot have a vendor")
    return errors


class RecurringPaymentProcessor:
    """
    Processes due obligations against the obligation and ledger stores.

    Synchronous: every call blocks on the database. The scheduler runs it
    in a worker thread.
    """

    def __init__(self, recurring_repo: RecurringRepository, ledger_repo: LedgerRepository,
                 monitor: Optional[PaymentMonitor] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.recurring_repo = recurring_repo
        self.ledger_repo = ledger_repo
        self.monitor = monitor
        self.clock = clock

    def today(self) -> date:
        return self.clock().date()

    # ── ENTRY POINTS ──────────────────────────────────────

    def process_all_due(self, batch_size: Optional[int] = None) -> ProcessingResult:
        """Process every due obligation (oldest first, at most ``batch_size``)."""
        return self._process_query(
            "all users", lambda today: self.recurring_repo.get_due(today, limit=batch_size)
        )

    def process_user(self, user_id: int) -> ProcessingResult:
        """Process the due obligations of a single user."""
        return self._process_query(
            f"user {user_id}", lambda today: self.recurring_repo.get_due(today, user_id=user_id),
            user_id=user_id,
        )

    def process_one(self, obligation_id: int, user_id: Optional[int] = None) -> ProcessingResult:
        """
        Process one obligation if it is active and due.

        A missing, inactive or not-yet-due obligation is reported as an
        error entry instead of raising.
        """
        result = ProcessingResult()
        try:
            obligation = self.recurring_repo.get_by_id(obligation_id, user_id)
        except BillingError as e:
            result.add_error(obligation_id, e)
            return result
        if obligation is None or not obligation.is_active:
            result.add_error(obligation_id, NotFoundError(
                f"Recurring obligation #{obligation_id} not found or inactive"
            ))
            return result
        if not obligation.is_due(self.today()):
            result.add_error(obligation_id, BillingError(
                f"Recurring obligation #{obligation_id} is not due until {obligation.next_due_date}",
                code="NOT_DUE",
            ))
            return result
        return self.process_batch([obligation])

    def process_batch(self, obligations: Iterable[RecurringObligation]) -> ProcessingResult:
        """Fold each obligation into one result; failures never stop the loop."""
        obligations = list(obligations)
        today = self.today()
        result = ProcessingResult()
        if self.monitor:
            self.monitor.log_system("info", f"Processing {len(obligations)} recurring obligations",
                                    count=len(obligations))

        for obligation in obligations:
            self._process_item(obligation, today, result)

        if self.monitor:
            self.monitor.log_system(
                "info" if result.success else "warning",
                "Recurring payment batch completed",
                processed=result.processed_count, errors=len(result.errors),
                deactivated=result.deactivated_count, duplicates=result.duplicate_count,
            )
        return result

    # ── SCHEDULE QUERIES ──────────────────────────────────

    def get_upcoming_schedule(self, user_id: int, days_ahead: int = 30) -> list[ScheduleInfo]:
        """Active obligations due within ``days_ahead`` days, overdue ones included."""
        today = self.today()
        horizon = today + timedelta(days=days_ahead)
        return [
            self._schedule_info(o, today)
            for o in self.recurring_repo.get_all(user_id, active_only=True)
            if o.next_due_date <= horizon
        ]

    def get_overdue(self, user_id: int) -> list[ScheduleInfo]:
        """Active obligations whose due date is strictly before today."""
        today = self.today()
        return [
            self._schedule_info(o, today)
            for o in self.recurring_repo.get_all(user_id, active_only=True)
            if o.next_due_date < today
        ]

    # ── INTERNALS ─────────────────────────────────────────

    def _process_query(self, scope: str, fetch: Callable[[date], list[RecurringObligation]],
                       user_id: Optional[int] = None) -> ProcessingResult:
        today = self.today()
        if self.monitor:
            self.monitor.log_processing_start(f"Starting recurring payment processing for {scope}",
                                              user_id=user_id)
        try:
            due = fetch(today)
        except Exception as e:
            logger.exception(f"Could not load due obligations for {scope}")
            result = ProcessingResult()
            result.add_error("system", e)
            if self.monitor:
                self.monitor.log_error(f"Due obligation query failed for {scope}", e, user_id=user_id)
            return result
        logger.info(f"Found {len(due)} due obligations for {scope}")
        return self.process_batch(due)

    def _process_item(self, obligation: RecurringObligation, today: date, result: ProcessingResult) -> None:
        started = time.perf_counter()

        if obligation.is_expired(today):
            try:
                self.recurring_repo.deactivate(obligation.id)
            except Exception as e:
                self._record_failure(obligation, e, result, "Failed to deactivate expired obligation")
                return
            result.deactivated_count += 1
            if self.monitor:
                self.monitor.log_system("info", f"Deactivated expired recurring obligation #{obligation.id}",
                                        user_id=obligation.user_id, obligation_id=obligation.id,
                                        end_date=str(obligation.end_date))
            return

        record = LedgerRecord(
            user_id=obligation.user_id,
            kind=obligation.kind,
            amount=obligation.amount,
            description=f"{obligation.description} (Recurring)",
            date=today,
            due_date=obligation.next_due_date,
            recurring_payment_id=obligation.id,
            category=obligation.category,
            vendor=obligation.vendor if obligation.kind == "expense" else None,
            currency=obligation.currency,
        )
        duplicate = False
        try:
            record = self.ledger_repo.add(record)
        except DuplicateRecordError:
            duplicate = True
            logger.warning(
                f"Ledger record for obligation #{obligation.id} due {obligation.next_due_date} "
                f"already exists; advancing only"
            )
        except Exception as e:
            self._record_failure(obligation, e, result, "Failed to create ledger record")
            return

        if duplicate:
            result.duplicate_count += 1
        else:
            result.created_records.append({
                "kind": record.kind,
                "record_id": record.id,
                "obligation_id": obligation.id,
                "amount": record.amount,
                "description": record.description,
            })
            result.total_amount += record.amount

        new_due = advance_due_date(obligation.next_due_date, obligation.frequency, obligation.anchor_day)
        try:
            advanced = self.recurring_repo.advance_due_date(obligation.id, obligation.next_due_date, new_due)
        except Exception as e:
            self._record_failure(obligation, e, result, "Ledger record created but due date not advanced")
            return
        if not advanced:
            logger.warning(f"Obligation #{obligation.id} due date was already moved by another writer")

        result.processed_count += 1
        if self.monitor and not duplicate:
            self.monitor.log_success(
                f"Processed recurring {obligation.kind}: {obligation.description}",
                amount=obligation.amount,
                processing_ms=(time.perf_counter() - started) * 1000,
                user_id=obligation.user_id, obligation_id=obligation.id, record_id=record.id,
                next_due_date=str(new_due),
            )

    def _record_failure(self, obligation: RecurringObligation, error: Exception,
                        result: ProcessingResult, message: str) -> None:
        if isinstance(error, BillingError):
            logger.error(f"{message} for obligation #{obligation.id}: {error}")
        else:
            logger.exception(f"{message} for obligation #{obligation.id}")
        result.add_error(obligation.id, error)
        if self.monitor:
            self.monitor.log_error(f"{message}: #{obligation.id}", error,
                                   user_id=obligation.user_id, obligation_id=obligation.id)

    @staticmethod
    def _schedule_info(obligation: RecurringObligation, today: date) -> ScheduleInfo:
        overdue = obligation.next_due_date < today
        return ScheduleInfo(
            obligation_id=obligation.id,
            kind=obligation.kind,
            amount=obligation.amount,
            description=obligation.description,
            next_due_date=obligation.next_due_date,
            frequency=obligation.frequency,
            is_overdue=overdue,
            days_past_due=days_past_due(obligation.next_due_date, today) if overdue else 0,
        )
