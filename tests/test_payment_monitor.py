from decimal import Decimal

import pytest

from utils.payment_monitor import AlertConfig, PaymentMonitor


def test_metrics_follow_recurring_payment_events(monitor):
    monitor.log_processing_start("Processing #1", obligation_id=1)
    monitor.log_success("Booked #1", amount=Decimal("800.00"), processing_ms=12.0, obligation_id=1)
    monitor.log_processing_start("Processing #2", obligation_id=2)
    monitor.log_error("Failed #2", RuntimeError("boom"), obligation_id=2)
    monitor.log_success("Payment settled", amount="30", category="subscription")

    metrics = monitor.get_metrics()

    assert metrics["total_processed"] == 2
    assert metrics["total_successful"] == 1
    assert metrics["total_failed"] == 1
    assert metrics["total_amount"] == Decimal("800.00")
    assert metrics["average_processing_ms"] == 12.0
    assert metrics["error_rate"] == 50.0


def test_error_details_capture_code(monitor):
    class Coded(Exception):
        code = "PERSISTENCE_ERROR"

    coded = monitor.log_error("db", Coded("down"))
    plain = monitor.log_error("text", "just a string")

    assert coded.error == {"code": "PERSISTENCE_ERROR", "message": "down"}
    assert plain.error == {"code": "UNKNOWN", "message": "just a string"}


def test_events_are_filtered_newest_first(monitor, clock):
    monitor.log_system("info", "boot")
    clock.advance(minutes=5)
    monitor.log_scheduler("warning", "skipped", user_id=7)
    monitor.log_scheduler("info", "done")

    assert [e.message for e in monitor.get_events(category="scheduler")] == ["done", "skipped"]
    assert [e.message for e in monitor.get_events(user_id=7)] == ["skipped"]
    assert [e.message for e in monitor.get_events(type="info", limit=1)] == ["done"]
    assert len(monitor.get_events(since=clock.now)) == 2


def test_unknown_type_or_category_is_rejected(monitor):
    with pytest.raises(ValueError):
        monitor.log("fatal", "system", "nope")
    with pytest.raises(ValueError):
        monitor.log("info", "billing", "nope")


def test_alert_fires_at_threshold_within_window(clock):
    monitor = PaymentMonitor(alert_config=AlertConfig(error_threshold=2, window_minutes=10), clock=clock)

    monitor.log_error("first", "x")
    clock.advance(minutes=11)
    monitor.log_error("second", "x")
    assert monitor.alerts_sent == 0

    monitor.log_error("third", "x")
    assert monitor.alerts_sent == 1
    assert len(monitor.get_recent_errors()) == 2


def test_alerts_can_be_disabled(monitor):
    monitor.update_alert_config(enabled=False, error_threshold=1)
    monitor.log_error("first", "x")

    assert monitor.alerts_sent == 0
    with pytest.raises(ValueError):
        monitor.update_alert_config(volume=11)


def test_clear_and_reset(monitor):
    monitor.log_processing_start("Processing #1")

    monitor.clear_events()
    monitor.reset_metrics()

    assert [e.message for e in monitor.get_events()] == ["Payment monitor metrics reset",
                                                         "Payment monitor events cleared"]
    assert monitor.get_metrics()["total_processed"] == 0


def test_event_history_is_bounded(clock):
    monitor = PaymentMonitor(max_events=3, clock=clock)
    for n in range(5):
        monitor.log_system("info", f"event {n}")

    assert [e.message for e in monitor.get_events()] == ["event 4", "event 3", "event 2"]
    assert monitor.get_events()[0].to_dict()["timestamp"] == clock.now.isoformat()
