"""
repositories/plan_repo.py
--------------------------
Data access layer for subscription plans.
"""

from decimal import Decimal
from typing import Optional

from psycopg2.extras import Json

from db.connection import db_cursor
from models.plan import Plan
from utils.logger import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "id, name, description, price_monthly, price_annual, currency, features, "
    "is_active, sort_order, gateway_plan_id, created_at"
)


class PlanRepository:
    """Repository for the plans table."""

    def add(self, plan: Plan) -> Plan:
        sql = """
            INSERT INTO plans
                (name, description, price_monthly, price_annual, currency, features,
                 is_active, sort_order, gateway_plan_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, created_at;
        """
        with db_cursor("add plan") as cur:
            cur.execute(sql, (
                plan.name, plan.description, plan.price_monthly, plan.price_annual,
                plan.currency, Json(plan.features), plan.is_active, plan.sort_order,
                plan.gateway_plan_id,
            ))
            plan.id, plan.created_at = cur.fetchone()
        logger.info(f"Added plan '{plan.name}' #{plan.id}")
        return plan

    def get_by_id(self, plan_id: int) -> Optional[Plan]:
        with db_cursor("get plan") as cur:
            cur.execute(f"SELECT {_COLUMNS} FROM plans WHERE id = %s;", (plan_id,))
            row = cur.fetchone()
        return self._row_to_plan(row) if row else None

    def get_all_active(self) -> list[Plan]:
        """Active plans in display order."""
        sql = f"SELECT {_COLUMNS} FROM plans WHERE is_active = TRUE ORDER BY sort_order ASC, id ASC;"
        with db_cursor("list plans") as cur:
            cur.execute(sql)
            return [self._row_to_plan(r) for r in cur.fetchall()]

    @staticmethod
    def _row_to_plan(row: tuple) -> Plan:
        return Plan(
            id=row[0],
            name=row[1],
            description=row[2] or "",
            price_monthly=Decimal(row[3]),
            price_annual=Decimal(row[4]),
            currency=row[5],
            features=row[6] or {},
            is_active=row[7],
            sort_order=row[8],
            gateway_plan_id=row[9],
            created_at=row[10],
        )
