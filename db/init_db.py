"""
db/init_db.py
-------------
Creates the database schema (tables) if they do not already exist.
Run this module directly to initialize a fresh database:
    python -m db.init_db
"""

from db.connection import db_cursor
from utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
-- Recurring obligations: income/expense definitions processed on a schedule
CREATE TABLE IF NOT EXISTS recurring_payments (
    id              SERIAL PRIMARY KEY,
    user_id         BIGINT NOT NULL,
    kind            VARCHAR(10) NOT NULL CHECK (kind IN ('income', 'expense')),
    amount          NUMERIC(12,2) NOT NULL CHECK (amount > 0),
    currency        VARCHAR(5) DEFAULT 'GHS',
    frequency       VARCHAR(20) NOT NULL CHECK (frequency IN ('daily', 'weekly', 'monthly', 'yearly')),
    description     TEXT NOT NULL DEFAULT '',
    category        VARCHAR(50),
    vendor          VARCHAR(100),
    start_date      DATE,
    next_due_date   DATE NOT NULL,
    end_date        DATE,
    is_active       BOOLEAN DEFAULT TRUE,
    deleted_at      TIMESTAMPTZ,
    created_at      TIMESTAMPTZ DEFAULT NOW()
);

-- Ledger records: one realized income/expense per obligation and due cycle
CREATE TABLE IF NOT EXISTS ledger_records (
    id                   SERIAL PRIMARY KEY,
    user_id              BIGINT NOT NULL,
    kind                 VARCHAR(10) NOT NULL CHECK (kind IN ('income', 'expense')),
    amount               NUMERIC(12,2) NOT NULL,
    currency             VARCHAR(5) DEFAULT 'GHS',
    description          TEXT,
    date                 DATE NOT NULL,
    due_date             DATE NOT NULL,
    category             VARCHAR(50),
    vendor               VARCHAR(100),
    is_recurring         BOOLEAN DEFAULT TRUE,
    recurring_payment_id INT REFERENCES recurring_payments(id) ON DELETE RESTRICT,
    created_at           TIMESTAMPTZ DEFAULT NOW(),
    CONSTRAINT uq_ledger_cycle UNIQUE (recurring_payment_id, due_date)
);

-- Plans: purchasable subscription tiers
CREATE TABLE IF NOT EXISTS plans (
    id              SERIAL PRIMARY KEY,
    name            VARCHAR(100) NOT NULL,
    description     TEXT DEFAULT '',
    price_monthly   NUMERIC(12,2) NOT NULL,
    price_annual    NUMERIC(12,2) NOT NULL,
    currency        VARCHAR(5) DEFAULT 'GHS',
    features        JSONB DEFAULT '{}'::jsonb,
    is_active       BOOLEAN DEFAULT TRUE,
    sort_order      INT DEFAULT 0,
    gateway_plan_id VARCHAR(100),
    created_at      TIMESTAMPTZ DEFAULT NOW()
);

-- Subscriptions: status owned by the subscription state machine
CREATE TABLE IF NOT EXISTS subscriptions (
    id                      SERIAL PRIMARY KEY,
    user_id                 BIGINT NOT NULL,
    plan_id                 INT NOT NULL REFERENCES plans(id),
    gateway_subscription_id VARCHAR(100) UNIQUE,
    status                  VARCHAR(20) NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'active', 'past_due', 'cancelled', 'expired')),
    billing_cycle           VARCHAR(10) NOT NULL DEFAULT 'monthly'
                            CHECK (billing_cycle IN ('monthly', 'annual')),
    current_period_start    TIMESTAMPTZ NOT NULL,
    current_period_end      TIMESTAMPTZ NOT NULL,
    cancel_at_period_end    BOOLEAN DEFAULT FALSE,
    scheduled_plan_change   JSONB,
    metadata                JSONB DEFAULT '{}'::jsonb,
    version                 INT NOT NULL DEFAULT 0,
    created_at              TIMESTAMPTZ DEFAULT NOW(),
    updated_at              TIMESTAMPTZ DEFAULT NOW(),
    CONSTRAINT ck_period_order CHECK (current_period_end > current_period_start)
);

-- Transactions: gateway charges; gateway_reference is the idempotency key
CREATE TABLE IF NOT EXISTS transactions (
    id                      SERIAL PRIMARY KEY,
    user_id                 BIGINT NOT NULL,
    subscription_id         INT REFERENCES subscriptions(id) ON DELETE SET NULL,
    gateway_transaction_id  VARCHAR(100) NOT NULL,
    gateway_reference       VARCHAR(150) NOT NULL,
    amount                  NUMERIC(12,2) NOT NULL,
    currency                VARCHAR(5) NOT NULL,
    status                  VARCHAR(20) NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'successful', 'failed', 'refunded')),
    type                    VARCHAR(20) NOT NULL
                            CHECK (type IN ('subscription', 'upgrade', 'downgrade', 'renewal')),
    description             TEXT DEFAULT '',
    customer_email          VARCHAR(255),
    processed_at            TIMESTAMPTZ,
    metadata                JSONB DEFAULT '{}'::jsonb,
    created_at              TIMESTAMPTZ DEFAULT NOW(),
    CONSTRAINT uq_transactions_reference UNIQUE (gateway_reference)
);

-- Rate limiting hits for the shared-store limiter
CREATE TABLE IF NOT EXISTS rate_limit_hits (
    id              BIGSERIAL PRIMARY KEY,
    key             VARCHAR(200) NOT NULL,
    hit_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Indexes for faster queries
CREATE INDEX IF NOT EXISTS idx_recurring_due ON recurring_payments(next_due_date) WHERE is_active = TRUE;
CREATE INDEX IF NOT EXISTS idx_recurring_user ON recurring_payments(user_id, is_active);
CREATE INDEX IF NOT EXISTS idx_ledger_user_date ON ledger_records(user_id, date);
CREATE INDEX IF NOT EXISTS idx_subscriptions_user_status ON subscriptions(user_id, status);
CREATE INDEX IF NOT EXISTS idx_subscriptions_period_end ON subscriptions(status, current_period_end);
CREATE UNIQUE INDEX IF NOT EXISTS uq_subscriptions_one_active
    ON subscriptions(user_id) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_transactions_gateway_id ON transactions(gateway_transaction_id);
CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_rate_limit_key_time ON rate_limit_hits(key, hit_at);
"""


def create_tables() -> None:
    """
    Execute the schema SQL to create all tables.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    with db_cursor("schema initialization") as cur:
        cur.execute(SCHEMA_SQL)
    logger.info("Database schema initialized successfully.")


if __name__ == "__main__":
    from db.connection import init_pool
    init_pool()
    create_tables()
    print("✅ Database schema created successfully.")
