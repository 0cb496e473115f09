"""
utils/payment_monitor.py
------------------------
Structured event log and running metrics for billing activity.

One PaymentMonitor is built in main.py and shared by the processor,
scheduler, webhook reconciler and subscription service. Every event is
also mirrored to the standard logger.
"""

import itertools
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from utils.dates import utcnow
from utils.logger import format_fields, get_logger

logger = get_logger(__name__)

EVENT_TYPES = ("processing", "success", "error", "warning", "info")
CATEGORIES = ("recurring-payment", "scheduler", "webhook", "subscription", "system")

_LOG_METHOD = {
    "processing": "debug",
    "success": "info",
    "info": "info",
    "warning": "warning",
    "error": "error",
}


@dataclass
class MonitorEvent:
    id: int
    timestamp: datetime
    type: str
    category: str
    message: str
    user_id: Optional[int] = None
    obligation_id: Optional[int] = None
    record_id: Optional[int] = None
    error: Optional[dict] = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = asdict(self)
        out["timestamp"] = self.timestamp.isoformat()
        return out


@dataclass
class AlertConfig:
    enabled: bool = True
    error_threshold: int = 5
    window_minutes: int = 60


class PaymentMonitor:
    """
    Bounded in-memory event log with derived metrics.

    Metrics follow recurring-payment events only: ``processing`` counts an
    attempted item, ``success`` a booked record, ``error`` a failed item.
    """

    def __init__(self, max_events: int = 10000, alert_config: Optional[AlertConfig] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._events: deque[MonitorEvent] = deque(maxlen=max_events)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._clock = clock
        self.alert_config = alert_config or AlertConfig()
        self.alerts_sent = 0
        self._reset_metrics()

    def _reset_metrics(self) -> None:
        self._started_at = self._clock()
        self._total_processed = 0
        self._total_successful = 0
        self._total_failed = 0
        self._total_amount = Decimal("0")
        self._processing_ms_sum = 0.0
        self._processing_ms_count = 0
        self._last_processing_time: Optional[datetime] = None

    # ── RECORDING ─────────────────────────────────────────

    def log(self, type: str, category: str, message: str, **fields: Any) -> MonitorEvent:
        """Append an event, update metrics, check alert thresholds."""
        if type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {type!r}")
        if category not in CATEGORIES:
            raise ValueError(f"Unknown event category: {category!r}")

        data = dict(fields.pop("data", None) or {})
        with self._lock:
            event = MonitorEvent(
                id=next(self._ids),
                timestamp=self._clock(),
                type=type,
                category=category,
                message=message,
                user_id=fields.pop("user_id", None),
                obligation_id=fields.pop("obligation_id", None),
                record_id=fields.pop("record_id", None),
                error=fields.pop("error", None),
                data={**data, **fields},
            )
            self._events.append(event)
            self._update_metrics(event)
            alert = self._alert_due(event)

        getattr(logger, _LOG_METHOD[type])(
            f"[{category}] {message} {format_fields({'user': event.user_id, 'obligation': event.obligation_id})}".rstrip()
        )
        if alert:
            logger.warning(
                f"High error rate: {alert} errors in the last "
                f"{self.alert_config.window_minutes} minutes (latest: {message})"
            )
        return event

    def log_processing_start(self, message: str, **fields: Any) -> MonitorEvent:
        return self.log("processing", "recurring-payment", message, **fields)

    def log_success(self, message: str, amount=None, processing_ms: Optional[float] = None,
                    **fields: Any) -> MonitorEvent:
        data = dict(fields.pop("data", None) or {})
        if amount is not None:
            data["amount"] = Decimal(str(amount))
        if processing_ms is not None:
            data["processing_ms"] = processing_ms
        return self.log("success", fields.pop("category", "recurring-payment"), message, data=data, **fields)

    def log_error(self, message: str, error, **fields: Any) -> MonitorEvent:
        """Record a failure; ``error`` may be an exception or a plain string."""
        if isinstance(error, BaseException):
            info = {"code": getattr(error, "code", type(error).__name__), "message": str(error)}
        else:
            info = {"code": "UNKNOWN", "message": str(error)}
        return self.log("error", fields.pop("category", "recurring-payment"), message, error=info, **fields)

    def log_scheduler(self, type: str, message: str, **fields: Any) -> MonitorEvent:
        return self.log(type, "scheduler", message, **fields)

    def log_system(self, type: str, message: str, **fields: Any) -> MonitorEvent:
        return self.log(type, "system", message, **fields)

    # ── QUERIES ───────────────────────────────────────────

    def get_events(self, type: Optional[str] = None, category: Optional[str] = None,
                   user_id: Optional[int] = None, since: Optional[datetime] = None,
                   limit: Optional[int] = None) -> list[MonitorEvent]:
        """Matching events, newest first."""
        with self._lock:
            events = list(self._events)
        if type:
            events = [e for e in events if e.type == type]
        if category:
            events = [e for e in events if e.category == category]
        if user_id is not None:
            events = [e for e in events if e.user_id == user_id]
        if since is not None:
            events = [e for e in events if e.timestamp >= since]
        if limit:
            events = events[-limit:]
        return list(reversed(events))

    def get_recent_errors(self, window_minutes: Optional[int] = None) -> list[MonitorEvent]:
        window = window_minutes or self.alert_config.window_minutes
        return self.get_events(type="error", since=self._clock() - timedelta(minutes=window))

    def get_metrics(self) -> dict:
        with self._lock:
            finished = self._total_successful + self._total_failed
            return {
                "total_processed": self._total_processed,
                "total_successful": self._total_successful,
                "total_failed": self._total_failed,
                "total_amount": self._total_amount,
                "average_processing_ms": (
                    self._processing_ms_sum / self._processing_ms_count
                    if self._processing_ms_count else 0.0
                ),
                "last_processing_time": self._last_processing_time,
                "error_rate": (self._total_failed / finished * 100) if finished else 0.0,
                "uptime_seconds": (self._clock() - self._started_at).total_seconds(),
            }

    # ── MAINTENANCE ───────────────────────────────────────

    def clear_events(self) -> None:
        with self._lock:
            self._events.clear()
        self.log_system("info", "Payment monitor events cleared")

    def reset_metrics(self) -> None:
        with self._lock:
            self._reset_metrics()
        self.log_system("info", "Payment monitor metrics reset")

    def update_alert_config(self, **changes: Any) -> AlertConfig:
        for key, value in changes.items():
            if not hasattr(self.alert_config, key):
                raise ValueError(f"Unknown alert setting: {key}")
            setattr(self.alert_config, key, value)
        return self.alert_config

    # ── INTERNALS (called with the lock held) ─────────────

    def _update_metrics(self, event: MonitorEvent) -> None:
        if event.category != "recurring-payment":
            return
        if event.type == "processing":
            self._total_processed += 1
            self._last_processing_time = event.timestamp
        elif event.type == "success":
            self._total_successful += 1
            amount = event.data.get("amount")
            if amount is not None:
                self._total_amount += Decimal(str(amount))
            elapsed = event.data.get("processing_ms")
            if elapsed is not None:
                self._processing_ms_sum += float(elapsed)
                self._processing_ms_count += 1
        elif event.type == "error":
            self._total_failed += 1

    def _alert_due(self, event: MonitorEvent) -> Optional[int]:
        """Error count in the window when it reaches the threshold, else None."""
        if not self.alert_config.enabled or event.type != "error":
            return None
        cutoff = event.timestamp - timedelta(minutes=self.alert_config.window_minutes)
        recent = sum(1 for e in self._events if e.type == "error" and e.timestamp >= cutoff)
        if recent >= self.alert_config.error_threshold:
            self.alerts_sent += 1
            return recent
        return None
