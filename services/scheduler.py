"""
services/scheduler.py
----------------------
Periodic driver for the recurring payment processor.

The scheduler lives on the bot's asyncio event loop. A timer task wakes
every ``interval_minutes`` and spawns a cycle task; the cycle itself runs
the (blocking) processor in a worker thread. ``stop()`` cancels only the
timer, so a cycle already in flight always finishes.

Only one cycle runs at a time per scheduler instance. The guard is a plain
flag checked and set on the event-loop thread; running several bot
processes against one database needs an external lease instead.
"""

import asyncio
from collections import deque
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from config import (
    SCHEDULER_BATCH_SIZE,
    SCHEDULER_ENABLED,
    SCHEDULER_INTERVAL_MINUTES,
    SCHEDULER_LOG_LEVEL,
    SCHEDULER_MAX_RETRIES,
    SCHEDULER_RETRY_DELAY_MINUTES,
)
from errors import ValidationError
from services.recurring_processor import ProcessingResult, RecurringPaymentProcessor
from utils.dates import utcnow
from utils.logger import LEVELS, get_logger
from utils.payment_monitor import PaymentMonitor

logger = get_logger(__name__)

MAX_LOG_ENTRIES = 1000
LOG_LEVEL_ORDER = ("debug", "info", "warn", "error")


@dataclass
class SchedulerConfig:
    enabled: bool = SCHEDULER_ENABLED
    interval_minutes: int = SCHEDULER_INTERVAL_MINUTES
    batch_size: int = SCHEDULER_BATCH_SIZE
    # Carried for operators; cycles are not retried, the next tick picks up leftovers.
    max_retries: int = SCHEDULER_MAX_RETRIES
    retry_delay_minutes: int = SCHEDULER_RETRY_DELAY_MINUTES
    log_level: str = SCHEDULER_LOG_LEVEL

    def validate(self) -> None:
        errors = []
        if self.interval_minutes <= 0:
            errors.append("interval_minutes must be positive")
        if self.batch_size <= 0:
            errors.append("batch_size must be positive")
        if self.max_retries < 0:
            errors.append("max_retries cannot be negative")
        if self.retry_delay_minutes < 0:
            errors.append("retry_delay_minutes cannot be negative")
        if self.log_level not in LOG_LEVEL_ORDER:
            errors.append(f"log_level must be one of {', '.join(LOG_LEVEL_ORDER)}")
        if errors:
            raise ValidationError("Invalid scheduler configuration", errors=errors)


@dataclass
class SchedulerStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    total_payments_processed: int = 0
    total_payments_created: int = 0
    total_errors: int = 0
    last_run_time: Optional[datetime] = None
    next_run_time: Optional[datetime] = None
    is_running: bool = False
    is_processing: bool = False


@dataclass
class SchedulerLogEntry:
    timestamp: datetime
    level: str
    message: str
    data: dict = field(default_factory=dict)


class RecurringPaymentScheduler:
    """
    Runs ``processor.process_all_due`` on a fixed interval.

    Lifecycle: ``start()`` → cycles every interval → ``stop()``. Both are
    called from the event loop (bot post-init hook or admin commands).
    """

    def __init__(self, processor: RecurringPaymentProcessor, config: Optional[SchedulerConfig] = None,
                 monitor: Optional[PaymentMonitor] = None, clock: Callable[[], datetime] = utcnow,
                 max_log_entries: int = MAX_LOG_ENTRIES):
        self.processor = processor
        self.config = config or SchedulerConfig()
        self.config.validate()
        self.monitor = monitor
        self.clock = clock
        self.is_processing = False
        self._stats = SchedulerStats()
        self._logs: deque[SchedulerLogEntry] = deque(maxlen=max_log_entries)
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    # ── LIFECYCLE ─────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def start(self, config: Optional[dict] = None) -> bool:
        """
        Start the timer: one cycle now, then one per interval.

        Args:
            config: Partial config overrides merged before starting.

        Returns:
            False (with a warning) if already running or disabled.
        """
        if self.is_running:
            self._log("warn", "Scheduler is already running")
            return False
        if config:
            self.config = self._merged(config)
        if not self.config.enabled:
            self._log("warn", "Scheduler is disabled; not starting")
            return False

        self._timer_task = asyncio.get_running_loop().create_task(
            self._tick_loop(run_immediately=True), name="recurring-scheduler-timer"
        )
        self._log("info", f"Scheduler started, interval {self.config.interval_minutes} min",
                  batch_size=self.config.batch_size)
        return True

    def stop(self) -> bool:
        """Cancel the timer. A cycle in flight is left to finish."""
        if not self.is_running:
            self._log("warn", "Scheduler is not running")
            return False
        self._timer_task.cancel()
        self._timer_task = None
        self._stats.next_run_time = None
        self._log("info", "Scheduler stopped")
        return True

    async def wait_idle(self) -> None:
        """Wait until no cycle is in flight (used on shutdown)."""
        await self._idle.wait()

    def update_config(self, **changes: Any) -> SchedulerConfig:
        """
        Hot-swap configuration values.

        A changed interval restarts only the timer; the next cycle is one
        full new interval away. Turning ``enabled`` off stops the timer.

        Raises:
            ValidationError: Unknown keys or invalid values. Nothing changes.
        """
        old = self.config
        new = self._merged(changes)
        self.config = new
        self._log("info", "Scheduler configuration updated", **{
            k: v for k, v in asdict(new).items() if asdict(old)[k] != v
        })

        if self.is_running and not new.enabled:
            self.stop()
        elif self.is_running and new.interval_minutes != old.interval_minutes:
            self._timer_task.cancel()
            self._timer_task = asyncio.get_running_loop().create_task(
                self._tick_loop(run_immediately=False), name="recurring-scheduler-timer"
            )
        return new

    # ── CYCLES ────────────────────────────────────────────

    async def run_cycle(self) -> Optional[ProcessingResult]:
        """
        Run one timer cycle unless another is in flight.

        Returns:
            The processing result, or None when skipped or failed.
        """
        if self.is_processing:
            self._stats.skipped_runs += 1
            self._log("warn", "Payment processing already in progress, skipping this run")
            return None
        self._enter()
        try:
            return await self._execute()
        except Exception:
            return None
        finally:
            self._leave()

    async def force_run(self) -> ProcessingResult:
        """
        Run one cycle now, after any in-flight cycle finishes.

        Raises:
            Exception: Whatever the processor raised, after it was recorded.
        """
        while self.is_processing:
            await self._idle.wait()
        self._enter()
        try:
            self._log("info", "Manual processing run requested")
            return await self._execute()
        finally:
            self._leave()

    async def _tick_loop(self, run_immediately: bool) -> None:
        interval = self.config.interval_minutes * 60
        if not run_immediately:
            self._stats.next_run_time = self.clock() + timedelta(seconds=interval)
            await asyncio.sleep(interval)
        while True:
            self._cycle_task = asyncio.get_running_loop().create_task(
                self.run_cycle(), name="recurring-scheduler-cycle"
            )
            interval = self.config.interval_minutes * 60
            self._stats.next_run_time = self.clock() + timedelta(seconds=interval)
            await asyncio.sleep(interval)

    def _enter(self) -> None:
        self.is_processing = True
        self._idle.clear()

    def _leave(self) -> None:
        self.is_processing = False
        self._idle.set()

    async def _execute(self) -> ProcessingResult:
        self._stats.total_runs += 1
        self._stats.last_run_time = self.clock()
        self._log("info", "Starting payment processing run")
        if self.monitor:
            self.monitor.log_scheduler("info", "Scheduler cycle started")

        try:
            result = await asyncio.to_thread(self.processor.process_all_due, self.config.batch_size)
        except Exception as e:
            self._stats.failed_runs += 1
            self._stats.total_errors += 1
            self._log("error", "Unexpected error during payment processing", exc_info=True,
                      error=str(e), type=type(e).__name__)
            if self.monitor:
                self.monitor.log_error("Scheduler cycle failed", e, category="scheduler")
            raise

        self._record(result)
        return result

    def _record(self, result: ProcessingResult) -> None:
        self._stats.total_payments_processed += result.processed_count
        self._stats.total_payments_created += len(result.created_records)
        self._stats.total_errors += len(result.errors)

        for record in result.created_records:
            self._log("debug", f"Payment processed: record {record['record_id']}",
                      obligation_id=record["obligation_id"], amount=str(record["amount"]))
        for error in result.errors:
            self._log("error", f"Payment failed: {error['obligation_id']} - {error['error']}",
                      code=error["code"])

        summary = {
            "processed": result.processed_count,
            "created": len(result.created_records),
            "errors": len(result.errors),
            "deactivated": result.deactivated_count,
            "duplicates": result.duplicate_count,
        }
        if result.success:
            self._stats.successful_runs += 1
            self._log("info", "Payment processing completed successfully", **summary)
        else:
            self._stats.failed_runs += 1
            self._log("error", "Payment processing completed with errors", **summary)
        if self.monitor:
            self.monitor.log_scheduler("info" if result.success else "warning",
                                       "Scheduler cycle completed", **summary)

    # ── CONFIG / STATS / LOGS ─────────────────────────────

    def _merged(self, changes: dict) -> SchedulerConfig:
        known = {f.name for f in fields(SchedulerConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValidationError(f"Unknown scheduler settings: {', '.join(unknown)}", errors=unknown)
        merged = replace(self.config, **changes)
        merged.validate()
        return merged

    def get_config(self) -> SchedulerConfig:
        return replace(self.config)

    def get_stats(self) -> SchedulerStats:
        return replace(self._stats, is_running=self.is_running, is_processing=self.is_processing)

    def reset_stats(self) -> None:
        next_run = self._stats.next_run_time
        self._stats = SchedulerStats(next_run_time=next_run)
        self._log("info", "Scheduler statistics reset")

    def time_until_next_run(self) -> Optional[timedelta]:
        if not self.is_running or self._stats.next_run_time is None:
            return None
        return max(timedelta(0), self._stats.next_run_time - self.clock())

    def get_logs(self, level: Optional[str] = None, limit: Optional[int] = None) -> list[SchedulerLogEntry]:
        """Entries at or above ``level``, oldest first, trimmed to the newest ``limit``."""
        entries = list(self._logs)
        if level:
            floor = LOG_LEVEL_ORDER.index(_normalize_level(level))
            entries = [e for e in entries if LOG_LEVEL_ORDER.index(e.level) >= floor]
        if limit:
            entries = entries[-limit:]
        return entries

    def clear_logs(self) -> None:
        self._logs.clear()
        self._log("info", "Scheduler logs cleared")

    def _log(self, level: str, message: str, exc_info: bool = False, **data: Any) -> None:
        entry = SchedulerLogEntry(timestamp=self.clock(), level=level, message=message, data=data)
        self._logs.append(entry)
        if LOG_LEVEL_ORDER.index(level) >= LOG_LEVEL_ORDER.index(self.config.log_level):
            suffix = f" {data}" if data else ""
            logger.log(LEVELS[level], f"{message}{suffix}", exc_info=exc_info)


def _normalize_level(level: str) -> str:
    level = level.lower()
    if level == "warning":
        return "warn"
    if level not in LOG_LEVEL_ORDER:
        raise ValidationError(f"Unknown log level: {level}")
    return level
