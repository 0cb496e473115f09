"""
config.py
---------
Central configuration module. Loads all environment variables
from the .env file and exposes them as typed constants.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── Telegram ──────────────────────────────────────────────
TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

# ── PostgreSQL ────────────────────────────────────────────
DB_HOST: str = os.getenv("DB_HOST", "localhost")
DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
DB_NAME: str = os.getenv("DB_NAME", "bot_billing")
DB_USER: str = os.getenv("DB_USER", "botbilling_user")
DB_PASS: str = os.getenv("DB_PASS", "")
DB_POOL_MIN: int = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX: int = int(os.getenv("DB_POOL_MAX", "5"))

DATABASE_URL: str = (
    f"postgresql://{DB_USER}:{DB_PASS}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
)

# ── Security ──────────────────────────────────────────────
_raw_ids = os.getenv("ALLOWED_USER_IDS", "")
ALLOWED_USER_IDS: list[int] = (
    [int(uid.strip()) for uid in _raw_ids.split(",") if uid.strip()]
    if _raw_ids
    else []
)

# ── Rate Limiting ─────────────────────────────────────────
RATE_LIMIT_MESSAGES: int = int(os.getenv("RATE_LIMIT_MESSAGES", "30"))
RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
WEBHOOK_RATE_LIMIT: int = int(os.getenv("WEBHOOK_RATE_LIMIT", "100"))
WEBHOOK_RATE_WINDOW_SECONDS: int = int(os.getenv("WEBHOOK_RATE_WINDOW_SECONDS", "60"))
FORCE_RUN_RATE_LIMIT: int = int(os.getenv("FORCE_RUN_RATE_LIMIT", "5"))
FORCE_RUN_RATE_WINDOW_SECONDS: int = int(os.getenv("FORCE_RUN_RATE_WINDOW_SECONDS", "300"))
# "memory" (per process) or "postgres" (shared rate_limit_hits table)
RATE_LIMIT_BACKEND: str = os.getenv("RATE_LIMIT_BACKEND", "memory").strip().lower()

# ── Recurring Payment Scheduler ───────────────────────────
SCHEDULER_ENABLED: bool = _env_bool("SCHEDULER_ENABLED", "true")
SCHEDULER_INTERVAL_MINUTES: int = int(os.getenv("SCHEDULER_INTERVAL_MINUTES", "60"))
SCHEDULER_BATCH_SIZE: int = int(os.getenv("SCHEDULER_BATCH_SIZE", "50"))
SCHEDULER_MAX_RETRIES: int = int(os.getenv("SCHEDULER_MAX_RETRIES", "3"))
SCHEDULER_RETRY_DELAY_MINUTES: int = int(os.getenv("SCHEDULER_RETRY_DELAY_MINUTES", "5"))
SCHEDULER_LOG_LEVEL: str = os.getenv("SCHEDULER_LOG_LEVEL", "info")

# Period-end sweep for subscriptions (cancel-at-period-end, expiry)
SUBSCRIPTION_SWEEP_MINUTES: int = int(os.getenv("SUBSCRIPTION_SWEEP_MINUTES", "30"))

# Daily reminder to renew subscriptions whose period ends soon
RENEWAL_REMINDER_DAYS: int = int(os.getenv("RENEWAL_REMINDER_DAYS", "3"))
RENEWAL_REMINDER_HOUR: int = int(os.getenv("RENEWAL_REMINDER_HOUR", "9"))

# ── Flutterwave ───────────────────────────────────────────
FLUTTERWAVE_PUBLIC_KEY: str = os.getenv("FLUTTERWAVE_PUBLIC_KEY", "")
FLUTTERWAVE_SECRET_KEY: str = os.getenv("FLUTTERWAVE_SECRET_KEY", "")
FLUTTERWAVE_SECRET_HASH: str = os.getenv("FLUTTERWAVE_SECRET_HASH", "")
FLUTTERWAVE_BASE_URL: str = os.getenv("FLUTTERWAVE_BASE_URL", "https://api.flutterwave.com/v3")
FLUTTERWAVE_TIMEOUT_SECONDS: float = float(os.getenv("FLUTTERWAVE_TIMEOUT_SECONDS", "30"))
APP_BASE_URL: str = os.getenv("APP_BASE_URL", "http://localhost:8000")

# ── Billing ───────────────────────────────────────────────
DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "GHS")
PRORATION_PERIOD_DAYS: int = int(os.getenv("PRORATION_PERIOD_DAYS", "30"))
REFERENCE_PREFIX: str = os.getenv("REFERENCE_PREFIX", "BOTBILL")

# ── Logging ───────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
