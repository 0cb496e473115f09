"""
security/rate_limiter.py
-------------------------
Rate limiting for bot commands, webhook deliveries and manual scheduler runs.

Counting lives behind a small store interface so the in-process sliding
window can be swapped for the shared PostgreSQL table when several bot
processes serve the same users.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Optional

from telegram import Update
from telegram.ext import ContextTypes

from config import (
    FORCE_RUN_RATE_LIMIT,
    FORCE_RUN_RATE_WINDOW_SECONDS,
    RATE_LIMIT_MESSAGES,
    RATE_LIMIT_WINDOW_SECONDS,
    WEBHOOK_RATE_LIMIT,
    WEBHOOK_RATE_WINDOW_SECONDS,
)
from db.connection import db_cursor
from errors import RateLimitExceededError
from utils.logger import get_logger

logger = get_logger(__name__)

# operation -> (max hits, window seconds)
DEFAULT_LIMITS: dict[str, tuple[int, int]] = {
    "command": (RATE_LIMIT_MESSAGES, RATE_LIMIT_WINDOW_SECONDS),
    "webhook": (WEBHOOK_RATE_LIMIT, WEBHOOK_RATE_WINDOW_SECONDS),
    "force_run": (FORCE_RUN_RATE_LIMIT, FORCE_RUN_RATE_WINDOW_SECONDS),
}


class RateLimitStore(ABC):
    """Counts hits per key inside a sliding window."""

    @abstractmethod
    def increment(self, key: str, window_seconds: int) -> tuple[int, float]:
        """
        Record one hit for ``key``.

        Returns:
            (hits inside the window including this one, epoch time at which
            the oldest counted hit leaves the window)
        """

    @abstractmethod
    def reset(self, key: Optional[str] = None) -> None:
        """Forget the hits of ``key``, or of every key."""


class InMemoryRateLimitStore(RateLimitStore):
    """Per-process timestamps: {key: [t1, t2, ...]}."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._hits: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()
        self._clock = clock

    def increment(self, key: str, window_seconds: int) -> tuple[int, float]:
        now = self._clock()
        cutoff = now - window_seconds
        with self._lock:
            hits = [t for t in self._hits[key] if t > cutoff]
            hits.append(now)
            self._hits[key] = hits
            return len(hits), hits[0] + window_seconds

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


class PostgresRateLimitStore(RateLimitStore):
    """Hits stored in `rate_limit_hits`, shared by every process on the database."""

    def increment(self, key: str, window_seconds: int) -> tuple[int, float]:
        sql = """
            WITH pruned AS (
                DELETE FROM rate_limit_hits
                WHERE key = %(key)s AND hit_at <= NOW() - make_interval(secs => %(window)s)
            ), inserted AS (
                INSERT INTO rate_limit_hits (key) VALUES (%(key)s) RETURNING hit_at
            )
            SELECT COUNT(*) + 1,
                   EXTRACT(EPOCH FROM COALESCE(MIN(hit_at), (SELECT hit_at FROM inserted)))
            FROM rate_limit_hits
            WHERE key = %(key)s AND hit_at > NOW() - make_interval(secs => %(window)s);
        """
        with db_cursor("rate limit increment") as cur:
            cur.execute(sql, {"key": key, "window": window_seconds})
            count, oldest = cur.fetchone()
        return int(count), float(oldest) + window_seconds

    def reset(self, key: Optional[str] = None) -> None:
        with db_cursor("rate limit reset") as cur:
            if key is None:
                cur.execute("DELETE FROM rate_limit_hits;")
            else:
                cur.execute("DELETE FROM rate_limit_hits WHERE key = %s;", (key,))


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    retry_after: int = 0


class RateLimiter:
    """Checks ``{identifier}:{operation}`` keys against per-operation limits."""

    def __init__(self, store: Optional[RateLimitStore] = None,
                 limits: Optional[dict[str, tuple[int, int]]] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store or InMemoryRateLimitStore(clock)
        self.limits = {**DEFAULT_LIMITS, **(limits or {})}
        self._clock = clock

    def check(self, identifier, operation: str = "command") -> RateLimitResult:
        """Count one attempt and report whether it is within the limit."""
        if operation not in self.limits:
            raise ValueError(f"No rate limit configured for '{operation}'")
        limit, window = self.limits[operation]
        count, reset_time = self.store.increment(f"{identifier}:{operation}", window)
        allowed = count <= limit
        retry_after = 0 if allowed else max(1, int(reset_time - self._clock() + 0.999))
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_time=reset_time,
            retry_after=retry_after,
        )

    def enforce(self, identifier, operation: str = "command") -> RateLimitResult:
        """
        Raises:
            RateLimitExceededError: The attempt is over the limit.
        """
        result = self.check(identifier, operation)
        if not result.allowed:
            logger.warning(f"⚠️ Rate limit hit for {identifier} ({operation})")
            raise RateLimitExceededError(f"{identifier}:{operation}", result.retry_after)
        return result


def rate_limited(func: Callable = None, *, operation: str = "command"):
    """
    Decorator that enforces rate limiting per user.

    The limiter is taken from ``context.bot_data["rate_limiter"]``.

    Usage:
        @rate_limited
        async def handler(update, context): ...

        @rate_limited(operation="force_run")
        async def run_now(update, context): ...

    Behavior:
        - Counts each update per user and operation.
        - If exceeded, replies with a warning and blocks the handler.
    """
    def decorator(handler: Callable):
        @wraps(handler)
        async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE, *args, **kwargs):
            user = update.effective_user
            if not user:
                return

            limiter: RateLimiter = context.bot_data["rate_limiter"]
            result = limiter.check(user.id, operation)
            if not result.allowed:
                logger.warning(f"⚠️ Rate limit hit for user {user.id} ({operation})")
                await update.message.reply_text(
                    f"⚠️ Too many requests. Try again in {result.retry_after}s."
                )
                return

            return await handler(update, context, *args, **kwargs)

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
