import asyncio
import threading
from datetime import timedelta

import pytest

from errors import ValidationError
from services.recurring_processor import ProcessingResult
from services.scheduler import RecurringPaymentScheduler, SchedulerConfig

pytestmark = pytest.mark.asyncio


class StubProcessor:
    """Stands in for RecurringPaymentProcessor.process_all_due."""

    def __init__(self, result=None, error=None, block=False):
        self.result = result or ProcessingResult()
        self.error = error
        self.block = block
        self.calls = []
        self.started = threading.Event()
        self.release = threading.Event()

    def process_all_due(self, batch_size=None):
        self.calls.append(batch_size)
        self.started.set()
        if self.block:
            self.release.wait(5)
        if self.error:
            raise self.error
        return self.result


def make_scheduler(processor, clock, monitor=None, **config):
    config.setdefault("interval_minutes", 60)
    config.setdefault("batch_size", 25)
    config.setdefault("log_level", "debug")
    return RecurringPaymentScheduler(processor, SchedulerConfig(**config), monitor=monitor, clock=clock)


async def wait_for_calls(processor, count, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(processor.calls) < count and loop.time() < deadline:
        await asyncio.sleep(0.01)


async def test_overlapping_cycle_is_skipped_and_logged(clock):
    processor = StubProcessor(block=True)
    scheduler = make_scheduler(processor, clock)

    first = asyncio.create_task(scheduler.run_cycle())
    await asyncio.to_thread(processor.started.wait, 5)
    assert scheduler.is_processing

    assert await scheduler.run_cycle() is None
    processor.release.set()
    assert await first is not None

    stats = scheduler.get_stats()
    assert len(processor.calls) == 1
    assert stats.skipped_runs == 1
    assert stats.total_runs == 1
    assert not stats.is_processing
    assert any("already in progress" in e.message for e in scheduler.get_logs(level="warn"))


async def test_successful_cycle_updates_stats(clock):
    result = ProcessingResult(processed_count=2)
    result.created_records = [
        {"record_id": 1, "obligation_id": 1, "amount": 10, "kind": "expense", "description": "a"},
        {"record_id": 2, "obligation_id": 2, "amount": 5, "kind": "income", "description": "b"},
    ]
    processor = StubProcessor(result=result)
    scheduler = make_scheduler(processor, clock)

    assert await scheduler.run_cycle() is result

    stats = scheduler.get_stats()
    assert processor.calls == [25]
    assert stats.successful_runs == 1
    assert stats.total_payments_processed == 2
    assert stats.total_payments_created == 2
    assert stats.last_run_time == clock.now


async def test_cycle_with_item_errors_counts_as_failed(clock):
    result = ProcessingResult(processed_count=1)
    result.add_error(9, "boom")
    scheduler = make_scheduler(StubProcessor(result=result), clock)

    await scheduler.run_cycle()

    stats = scheduler.get_stats()
    assert stats.failed_runs == 1
    assert stats.total_errors == 1
    assert any("9 - boom" in e.message for e in scheduler.get_logs(level="error"))


async def test_processor_crash_is_recorded_and_swallowed(clock, monitor):
    scheduler = make_scheduler(StubProcessor(error=RuntimeError("db down")), clock, monitor=monitor)

    assert await scheduler.run_cycle() is None

    stats = scheduler.get_stats()
    assert stats.failed_runs == 1
    assert stats.total_errors == 1
    assert not scheduler.is_processing
    [entry] = scheduler.get_logs(level="error")
    assert entry.data["error"] == "db down"
    assert monitor.get_events(type="error", category="scheduler")


async def test_force_run_propagates_processor_errors(clock):
    scheduler = make_scheduler(StubProcessor(error=RuntimeError("db down")), clock)

    with pytest.raises(RuntimeError):
        await scheduler.force_run()
    assert scheduler.get_stats().failed_runs == 1
    assert not scheduler.is_processing


async def test_force_run_waits_for_in_flight_cycle(clock):
    processor = StubProcessor(block=True)
    scheduler = make_scheduler(processor, clock)

    cycle = asyncio.create_task(scheduler.run_cycle())
    await asyncio.to_thread(processor.started.wait, 5)
    forced = asyncio.create_task(scheduler.force_run())
    await asyncio.sleep(0.05)
    assert not forced.done()
    assert len(processor.calls) == 1

    processor.release.set()
    await cycle
    await forced
    assert len(processor.calls) == 2
    assert scheduler.get_stats().skipped_runs == 0


async def test_start_runs_immediately_and_stop_cancels_timer(clock):
    processor = StubProcessor()
    scheduler = make_scheduler(processor, clock)

    assert scheduler.start() is True
    assert scheduler.start() is False
    await wait_for_calls(processor, 1)

    assert scheduler.is_running
    assert len(processor.calls) == 1
    assert scheduler.time_until_next_run() == timedelta(minutes=60)

    assert scheduler.stop() is True
    assert scheduler.stop() is False
    await scheduler.wait_idle()
    assert not scheduler.is_running
    assert scheduler.time_until_next_run() is None


async def test_stop_lets_in_flight_cycle_finish(clock):
    processor = StubProcessor(block=True)
    scheduler = make_scheduler(processor, clock)
    scheduler.start()
    await asyncio.to_thread(processor.started.wait, 5)

    scheduler.stop()
    processor.release.set()
    await scheduler.wait_idle()

    assert scheduler.get_stats().successful_runs == 1


async def test_disabled_scheduler_does_not_start(clock):
    scheduler = make_scheduler(StubProcessor(), clock, enabled=False)
    assert scheduler.start() is False
    assert not scheduler.is_running


async def test_start_accepts_config_overrides(clock):
    processor = StubProcessor()
    scheduler = make_scheduler(processor, clock)

    scheduler.start({"batch_size": 5})
    await wait_for_calls(processor, 1)
    scheduler.stop()
    await scheduler.wait_idle()

    assert processor.calls == [5]


async def test_interval_change_restarts_only_the_timer(clock):
    processor = StubProcessor()
    scheduler = make_scheduler(processor, clock)
    scheduler.start()
    await wait_for_calls(processor, 1)

    scheduler.update_config(interval_minutes=5)
    await asyncio.sleep(0)

    assert scheduler.is_running
    assert scheduler.get_config().interval_minutes == 5
    assert scheduler.time_until_next_run() == timedelta(minutes=5)
    assert len(processor.calls) == 1

    scheduler.update_config(enabled=False)
    assert not scheduler.is_running
    await scheduler.wait_idle()


async def test_invalid_config_changes_are_rejected(clock):
    scheduler = make_scheduler(StubProcessor(), clock)

    with pytest.raises(ValidationError):
        scheduler.update_config(interval_minutes=0)
    with pytest.raises(ValidationError):
        scheduler.update_config(colour="blue")
    assert scheduler.get_config().interval_minutes == 60


async def test_logs_filter_by_level_and_limit(clock):
    scheduler = make_scheduler(StubProcessor(), clock)
    await scheduler.run_cycle()
    scheduler.stop()

    assert all(e.level in ("warn", "error") for e in scheduler.get_logs(level="warning"))
    assert len(scheduler.get_logs(limit=1)) == 1
    with pytest.raises(ValidationError):
        scheduler.get_logs(level="loud")

    scheduler.clear_logs()
    assert [e.message for e in scheduler.get_logs()] == ["Scheduler logs cleared"]


async def test_reset_stats(clock):
    scheduler = make_scheduler(StubProcessor(), clock)
    await scheduler.run_cycle()

    scheduler.reset_stats()

    assert scheduler.get_stats().total_runs == 0


async def test_instances_do_not_share_state(clock):
    a = make_scheduler(StubProcessor(), clock)
    b = make_scheduler(StubProcessor(), clock)

    await a.run_cycle()

    assert a.get_stats().total_runs == 1
    assert b.get_stats().total_runs == 0
    assert b.get_logs() == []
