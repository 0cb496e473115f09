"""
repositories/subscription_repo.py
----------------------------------
Data access layer for subscriptions.
Every update is conditional on the row's `version`, so two writers can
never silently overwrite each other.
"""

from datetime import datetime
from typing import Iterable, Optional

from psycopg2.extras import Json

from db.connection import db_cursor
from errors import StaleStateError
from models.subscription import ScheduledPlanChange, Subscription, SubscriptionStatus
from utils.logger import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "id, user_id, plan_id, gateway_subscription_id, status, billing_cycle, "
    "current_period_start, current_period_end, cancel_at_period_end, "
    "scheduled_plan_change, metadata, version, created_at, updated_at"
)

OPEN_STATUSES = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


class SubscriptionRepository:
    """Repository for the subscriptions table."""

    # ── CREATE / UPDATE ───────────────────────────────────

    def add(self, sub: Subscription) -> Subscription:
        sql = """
            INSERT INTO subscriptions
                (user_id, plan_id, gateway_subscription_id, status, billing_cycle,
                 current_period_start, current_period_end, cancel_at_period_end,
                 scheduled_plan_change, metadata, version)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 0)
            RETURNING id, created_at, updated_at;
        """
        with db_cursor("add subscription") as cur:
            cur.execute(sql, (
                sub.user_id, sub.plan_id, sub.gateway_subscription_id, sub.status.value,
                sub.billing_cycle, sub.current_period_start, sub.current_period_end,
                sub.cancel_at_period_end, self._plan_change_json(sub),
                Json(sub.metadata),
            ))
            sub.id, sub.created_at, sub.updated_at = cur.fetchone()
        sub.version = 0
        logger.info(f"Created subscription #{sub.id} for user {sub.user_id} (plan {sub.plan_id})")
        return sub

    def save(self, sub: Subscription) -> Subscription:
        """
        Persist every mutable field, guarded by the version the caller loaded.

        Raises:
            StaleStateError: Another writer saved the row first.
        """
        sql = """
            UPDATE subscriptions SET
                plan_id = %s, gateway_subscription_id = %s, status = %s, billing_cycle = %s,
                current_period_start = %s, current_period_end = %s,
                cancel_at_period_end = %s, scheduled_plan_change = %s, metadata = %s,
                version = version + 1, updated_at = NOW()
            WHERE id = %s AND version = %s
            RETURNING version, updated_at;
        """
        with db_cursor("save subscription") as cur:
            cur.execute(sql, (
                sub.plan_id, sub.gateway_subscription_id, sub.status.value, sub.billing_cycle,
                sub.current_period_start, sub.current_period_end, sub.cancel_at_period_end,
                self._plan_change_json(sub), Json(sub.metadata), sub.id, sub.version,
            ))
            row = cur.fetchone()
        if row is None:
            raise StaleStateError(
                f"Subscription #{sub.id} was modified concurrently",
                details={"subscription_id": sub.id, "version": sub.version},
            )
        sub.version, sub.updated_at = row
        return sub

    # ── READ ──────────────────────────────────────────────

    def get_by_id(self, subscription_id: int) -> Optional[Subscription]:
        with db_cursor("get subscription") as cur:
            cur.execute(f"SELECT {_COLUMNS} FROM subscriptions WHERE id = %s;", (subscription_id,))
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def get_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        sql = f"SELECT {_COLUMNS} FROM subscriptions WHERE gateway_subscription_id = %s;"
        with db_cursor("get subscription by gateway id") as cur:
            cur.execute(sql, (gateway_subscription_id,))
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def get_current_for_user(self, user_id: int,
                             statuses: Iterable[SubscriptionStatus] = OPEN_STATUSES) -> Optional[Subscription]:
        """Most recent subscription of the user in one of ``statuses``."""
        values = [SubscriptionStatus(s).value for s in statuses]
        sql = f"""
            SELECT {_COLUMNS} FROM subscriptions
            WHERE user_id = %s AND status = ANY(%s)
            ORDER BY created_at DESC, id DESC LIMIT 1;
        """
        with db_cursor("current subscription") as cur:
            cur.execute(sql, (user_id, values))
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def find_period_ended(self, now: datetime) -> list[Subscription]:
        """Active or past-due subscriptions whose period has ended."""
        sql = f"""
            SELECT {_COLUMNS} FROM subscriptions
            WHERE status IN ('active', 'past_due') AND current_period_end <= %s
            ORDER BY current_period_end ASC;
        """
        with db_cursor("period-ended subscriptions") as cur:
            cur.execute(sql, (now,))
            return [self._row_to_subscription(r) for r in cur.fetchall()]

    def find_expiring(self, now: datetime, until: datetime) -> list[Subscription]:
        """Active subscriptions whose period ends between ``now`` and ``until``."""
        sql = f"""
            SELECT {_COLUMNS} FROM subscriptions
            WHERE status = 'active' AND current_period_end > %s AND current_period_end <= %s
            ORDER BY current_period_end ASC;
        """
        with db_cursor("expiring subscriptions") as cur:
            cur.execute(sql, (now, until))
            return [self._row_to_subscription(r) for r in cur.fetchall()]

    # ── HELPERS ───────────────────────────────────────────

    @staticmethod
    def _plan_change_json(sub: Subscription):
        if sub.scheduled_plan_change is None:
            return None
        return Json(sub.scheduled_plan_change.to_dict())

    @staticmethod
    def _row_to_subscription(row: tuple) -> Subscription:
        return Subscription(
            id=row[0],
            user_id=row[1],
            plan_id=row[2],
            gateway_subscription_id=row[3],
            status=row[4],
            billing_cycle=row[5],
            current_period_start=row[6],
            current_period_end=row[7],
            cancel_at_period_end=row[8],
            scheduled_plan_change=ScheduledPlanChange.from_dict(row[9]),
            metadata=row[10] or {},
            version=row[11],
            created_at=row[12],
            updated_at=row[13],
        )
