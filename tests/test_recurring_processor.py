from datetime import date, datetime, timezone
from decimal import Decimal

from services.recurring_processor import ProcessingResult, validate_obligation


def test_monthly_obligation_creates_record_and_advances(processor, make_obligation, recurring_repo,
                                                         ledger_repo, clock):
    clock.now = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    obligation = make_obligation(amount=Decimal("50"), next_due_date=date(2024, 1, 1),
                                 start_date=date(2024, 1, 1))

    result = processor.process_all_due()

    assert result.success
    assert result.processed_count == 1
    assert result.total_amount == Decimal("50")
    [record] = ledger_repo.get_by_obligation(obligation.id)
    assert record.amount == Decimal("50")
    assert record.due_date == date(2024, 1, 1)
    assert record.date == date(2024, 1, 1)
    assert record.is_recurring
    assert record.description == "Rent (Recurring)"
    assert recurring_repo.rows[obligation.id].next_due_date == date(2024, 2, 1)


def test_expired_obligation_is_deactivated_without_a_record(processor, make_obligation, recurring_repo,
                                                             ledger_repo, clock):
    clock.now = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    obligation = make_obligation(next_due_date=date(2023, 12, 1), end_date=date(2023, 12, 31))

    result = processor.process_all_due()

    assert result.deactivated_count == 1
    assert result.processed_count == 0
    assert result.created_records == []
    assert ledger_repo.records == {}
    assert recurring_repo.rows[obligation.id].is_active is False


def test_end_date_is_inclusive(processor, make_obligation, ledger_repo):
    make_obligation(next_due_date=date(2026, 1, 15), end_date=date(2026, 1, 15))

    result = processor.process_all_due()

    assert result.deactivated_count == 0
    assert len(ledger_repo.records) == 1


def test_ledger_failure_leaves_due_date_untouched(processor, make_obligation, recurring_repo, ledger_repo):
    obligation = make_obligation()
    ledger_repo.fail_for.add(obligation.id)

    result = processor.process_all_due()

    assert not result.success
    assert result.errors[0]["obligation_id"] == obligation.id
    assert result.errors[0]["code"] == "PERSISTENCE_ERROR"
    assert recurring_repo.rows[obligation.id].next_due_date == date(2026, 1, 15)
    assert recurring_repo.advance_calls == []


def test_advance_failure_keeps_the_record_and_reports_error(processor, make_obligation, recurring_repo,
                                                            ledger_repo):
    obligation = make_obligation()
    recurring_repo.fail_advance.add(obligation.id)

    result = processor.process_all_due()

    assert len(result.errors) == 1
    assert result.processed_count == 0
    assert len(ledger_repo.get_by_obligation(obligation.id)) == 1
    assert recurring_repo.rows[obligation.id].next_due_date == date(2026, 1, 15)


def test_replay_after_failed_advance_heals_without_second_record(processor, make_obligation,
                                                                 recurring_repo, ledger_repo):
    obligation = make_obligation()
    recurring_repo.fail_advance.add(obligation.id)
    processor.process_all_due()
    recurring_repo.fail_advance.clear()

    result = processor.process_all_due()

    assert result.success
    assert result.duplicate_count == 1
    assert result.created_records == []
    assert result.processed_count == 1
    assert len(ledger_repo.get_by_obligation(obligation.id)) == 1
    assert recurring_repo.rows[obligation.id].next_due_date == date(2026, 2, 15)


def test_one_failing_item_does_not_stop_the_batch(processor, make_obligation, ledger_repo):
    first = make_obligation(description="Rent", next_due_date=date(2026, 1, 10))
    broken = make_obligation(description="Gym", next_due_date=date(2026, 1, 11))
    last = make_obligation(description="Salary", kind="income", category="salary", vendor=None,
                           next_due_date=date(2026, 1, 12))
    ledger_repo.fail_for.add(broken.id)

    result = processor.process_all_due()

    assert result.processed_count == 2
    assert [e["obligation_id"] for e in result.errors] == [broken.id]
    assert {r["obligation_id"] for r in result.created_records} == {first.id, last.id}


def test_overdue_obligation_catches_up_one_cycle_per_run(processor, make_obligation, recurring_repo):
    obligation = make_obligation(next_due_date=date(2025, 11, 15))

    processor.process_all_due()
    assert recurring_repo.rows[obligation.id].next_due_date == date(2025, 12, 15)
    processor.process_all_due()
    processor.process_all_due()
    assert recurring_repo.rows[obligation.id].next_due_date == date(2026, 2, 15)
    assert processor.process_all_due().processed_count == 0


def test_vendor_is_only_copied_for_expenses(processor, make_obligation, ledger_repo):
    make_obligation(kind="income", category="salary", vendor="Employer")

    processor.process_all_due()

    [record] = ledger_repo.records.values()
    assert record.vendor is None
    assert record.category == "salary"


def test_batch_size_processes_oldest_first(processor, make_obligation):
    older = make_obligation(next_due_date=date(2026, 1, 1))
    make_obligation(next_due_date=date(2026, 1, 5))

    result = processor.process_all_due(batch_size=1)

    assert [r["obligation_id"] for r in result.created_records] == [older.id]


def test_query_failure_is_reported_as_system_error(processor, recurring_repo):
    recurring_repo.fail_get_due = True

    result = processor.process_all_due()

    assert result.errors == [{
        "obligation_id": "system",
        "error": "Database error during get due obligations",
        "code": "PERSISTENCE_ERROR",
    }]


def test_process_user_only_touches_that_user(processor, make_obligation, ledger_repo):
    mine = make_obligation(user_id=1)
    make_obligation(user_id=2)

    result = processor.process_user(1)

    assert [r["obligation_id"] for r in result.created_records] == [mine.id]
    assert len(ledger_repo.records) == 1


def test_process_one_reports_missing_and_not_due(processor, make_obligation):
    future = make_obligation(next_due_date=date(2026, 2, 1))

    missing = processor.process_one(999)
    not_due = processor.process_one(future.id)

    assert missing.errors[0]["code"] == "NOT_FOUND"
    assert not_due.errors[0]["code"] == "NOT_DUE"


def test_process_one_processes_a_due_obligation(processor, make_obligation):
    obligation = make_obligation()
    assert processor.process_one(obligation.id, user_id=42).processed_count == 1


def test_schedule_queries_flag_overdue_items(processor, make_obligation):
    late = make_obligation(next_due_date=date(2026, 1, 10))
    soon = make_obligation(next_due_date=date(2026, 1, 20))
    make_obligation(next_due_date=date(2026, 6, 1))

    upcoming = processor.get_upcoming_schedule(42, days_ahead=30)
    overdue = processor.get_overdue(42)

    assert [i.obligation_id for i in upcoming] == [late.id, soon.id]
    assert upcoming[0].is_overdue and upcoming[0].days_past_due == 5
    assert not upcoming[1].is_overdue
    assert [i.obligation_id for i in overdue] == [late.id]


def test_monitor_tracks_booked_amounts(processor, make_obligation, monitor):
    make_obligation(amount=Decimal("10.50"))
    make_obligation(amount=Decimal("4.50"))

    processor.process_all_due()

    metrics = monitor.get_metrics()
    assert metrics["total_successful"] == 2
    assert metrics["total_amount"] == Decimal("15.00")
    assert metrics["total_failed"] == 0


def test_processing_result_merge_and_to_dict():
    a = ProcessingResult(processed_count=1, total_amount=Decimal("5"))
    a.created_records.append({"record_id": 1, "obligation_id": 1, "amount": Decimal("5"),
                              "kind": "expense", "description": "x"})
    b = ProcessingResult(deactivated_count=1)
    b.add_error(7, "boom")

    a.merge(b)

    data = a.to_dict()
    assert data["success"] is False
    assert data["deactivated_count"] == 1
    assert data["errors"] == [{"obligation_id": 7, "error": "boom", "code": "UNKNOWN"}]
    assert data["created_records"][0]["amount"] == "5"
    assert data["total_amount"] == "5"


def test_validate_obligation_collects_every_problem():
    errors = validate_obligation("gift", Decimal("0"), "hourly", date(2026, 2, 1), date(2026, 1, 1),
                                 category=None, vendor=None)
    assert len(errors) >= 4


def test_validate_obligation_requires_category_for_income():
    errors = validate_obligation("income", Decimal("10"), "monthly", date(2026, 1, 1), None,
                                 category=None, vendor=None)
    assert errors == ["Income entries must have a category"]
