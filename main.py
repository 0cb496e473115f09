"""
main.py
-------
Entry point for the BotBilling Telegram bot.

Responsibilities:
    - Initialize the database connection pool and schema.
    - Build the repositories, services and scheduler and share them
      with handlers through ``Application.bot_data``.
    - Register the operator commands.
    - Start the recurring payment scheduler, the subscription period-end
      sweep and the daily renewal reminders; stop the scheduler on shutdown.
"""

import asyncio
from datetime import time as dt_time, timedelta

from telegram import BotCommand
from telegram.ext import Application, CommandHandler

from config import (
    ALLOWED_USER_IDS,
    RATE_LIMIT_BACKEND,
    RENEWAL_REMINDER_HOUR,
    SUBSCRIPTION_SWEEP_MINUTES,
    TELEGRAM_BOT_TOKEN,
)
from db.connection import close_pool, init_pool
from db.init_db import create_tables
from handlers.admin_handler import (
    run_recurring_command,
    scheduler_interval_command,
    scheduler_logs_command,
    scheduler_start_command,
    scheduler_status_command,
    scheduler_stop_command,
)
from handlers.recurring_handler import (
    add_recurring_command,
    delete_recurring_command,
    pause_recurring_command,
    process_mine_command,
    recurring_command,
    resume_recurring_command,
    upcoming_command,
)
from handlers.start_handler import help_command, myid_command, start_command
from handlers.subscription_handler import (
    cancel_subscription_command,
    change_plan_command,
    feature_command,
    payments_command,
    renew_command,
    retry_payment_command,
    send_renewal_reminders,
    subscribe_command,
    subscription_command,
    verify_payment_command,
)
from repositories.ledger_repo import LedgerRepository
from repositories.plan_repo import PlanRepository
from repositories.recurring_repo import RecurringRepository
from repositories.subscription_repo import SubscriptionRepository
from repositories.transaction_repo import TransactionRepository
from security.rate_limiter import InMemoryRateLimitStore, PostgresRateLimitStore, RateLimiter
from services.gateway import FlutterwaveGateway
from services.payment_service import PaymentService
from services.recurring_processor import RecurringPaymentProcessor
from services.recurring_service import RecurringService
from services.scheduler import RecurringPaymentScheduler
from services.subscription_service import SubscriptionService
from services.webhook_reconciler import WebhookReconciler
from utils.logger import get_logger
from utils.payment_monitor import PaymentMonitor

logger = get_logger(__name__)

COMMANDS = [
    ("start", "🚀 Start the bot", start_command),
    ("help", "📖 Show help", help_command),
    ("myid", "🆔 Your Telegram ID", myid_command),
    ("recurring", "🔁 Recurring entries", recurring_command),
    ("add_recurring", "➕ Add a recurring entry", add_recurring_command),
    ("delete_recurring", "❌ Delete a recurring entry", delete_recurring_command),
    ("pause_recurring", "⏸️ Pause a recurring entry", pause_recurring_command),
    ("resume_recurring", "▶️ Resume a recurring entry", resume_recurring_command),
    ("upcoming", "📅 Upcoming due dates", upcoming_command),
    ("process_mine", "⚡ Book my due entries", process_mine_command),
    ("subscription", "💳 My subscription", subscription_command),
    ("subscribe", "🛒 Plans and checkout", subscribe_command),
    ("change_plan", "🔀 Change plan", change_plan_command),
    ("renew", "🔄 Renew subscription", renew_command),
    ("cancel_subscription", "🛑 Cancel subscription", cancel_subscription_command),
    ("verify_payment", "✅ Confirm a payment", verify_payment_command),
    ("retry_payment", "🔁 Retry a failed payment", retry_payment_command),
    ("payments", "🧾 Payment history", payments_command),
    ("feature", "✨ Check a feature", feature_command),
    ("scheduler_status", "⚙️ Scheduler status", scheduler_status_command),
    ("scheduler_start", "▶️ Start scheduler", scheduler_start_command),
    ("scheduler_stop", "⏹️ Stop scheduler", scheduler_stop_command),
    ("run_recurring", "⚡ Process all due entries", run_recurring_command),
    ("scheduler_logs", "📜 Scheduler log", scheduler_logs_command),
    ("scheduler_interval", "🔄 Scheduler interval", scheduler_interval_command),
]


def build_services() -> dict:
    """Wire repositories and services; the result becomes ``bot_data``."""
    monitor = PaymentMonitor()
    store = PostgresRateLimitStore() if RATE_LIMIT_BACKEND == "postgres" else InMemoryRateLimitStore()
    rate_limiter = RateLimiter(store)

    recurring_repo = RecurringRepository()
    transaction_repo = TransactionRepository()
    processor = RecurringPaymentProcessor(recurring_repo, LedgerRepository(), monitor=monitor)
    gateway = FlutterwaveGateway()
    subscription_service = SubscriptionService(
        SubscriptionRepository(), PlanRepository(), transaction_repo, gateway, monitor=monitor,
    )
    payment_service = PaymentService(transaction_repo, subscription_service, gateway, monitor=monitor)

    return {
        "monitor": monitor,
        "rate_limiter": rate_limiter,
        "allowed_user_ids": ALLOWED_USER_IDS,
        "recurring_service": RecurringService(recurring_repo),
        "processor": processor,
        "scheduler": RecurringPaymentScheduler(processor, monitor=monitor),
        "gateway": gateway,
        "subscription_service": subscription_service,
        "payment_service": payment_service,
        "webhook_reconciler": WebhookReconciler(
            gateway, transaction_repo, payment_service, subscription_service,
            rate_limiter=rate_limiter, monitor=monitor,
        ),
    }


async def sweep_period_ends(context) -> None:
    """
    Scheduled job: cancel or expire subscriptions whose period ended.
    Runs every SUBSCRIPTION_SWEEP_MINUTES.
    """
    service: SubscriptionService = context.bot_data["subscription_service"]
    try:
        summary = await asyncio.to_thread(service.process_period_ends)
    except Exception as e:
        logger.error(f"Subscription sweep failed: {e}")
        return
    if summary["cancelled"] or summary["expired"] or summary["errors"]:
        logger.info(f"Subscription sweep: {summary}")


async def on_startup(application: Application) -> None:
    """Register the commands menu and start the scheduler."""
    commands = [BotCommand(name, description) for name, description, _ in COMMANDS]
    await application.bot.set_my_commands(commands)
    logger.info("Bot commands menu registered successfully.")

    scheduler: RecurringPaymentScheduler = application.bot_data["scheduler"]
    if scheduler.start():
        logger.info(f"Recurring payment scheduler started (every {scheduler.config.interval_minutes} min)")
    application.bot_data["monitor"].log_system("info", "BotBilling started")


async def on_shutdown(application: Application) -> None:
    """Stop the scheduler, let an in-flight cycle finish, release resources."""
    scheduler: RecurringPaymentScheduler = application.bot_data["scheduler"]
    scheduler.stop()
    await scheduler.wait_idle()
    application.bot_data["gateway"].close()
    close_pool()
    logger.info("BotBilling stopped.")


def main() -> None:
    """Initialize and run the bot."""

    # ── 1. Database setup ─────────────────────────────────
    logger.info("Initializing database...")
    init_pool()
    create_tables()

    # ── 2. Build the Telegram application ─────────────────
    logger.info("Starting Telegram bot...")
    app = (
        Application.builder()
        .token(TELEGRAM_BOT_TOKEN)
        .post_init(on_startup)
        .post_shutdown(on_shutdown)
        .build()
    )
    app.bot_data.update(build_services())

    # ── 3. Register command handlers ──────────────────────
    for name, _, callback in COMMANDS:
        app.add_handler(CommandHandler(name, callback))

    # ── 4. Schedule jobs ──────────────────────────────────
    job_queue = app.job_queue
    if job_queue:
        job_queue.run_repeating(
            sweep_period_ends,
            interval=timedelta(minutes=SUBSCRIPTION_SWEEP_MINUTES),
            first=timedelta(seconds=30),
            name="subscription_period_sweep",
        )
        logger.info(f"Scheduled subscription sweep every {SUBSCRIPTION_SWEEP_MINUTES} min")
        job_queue.run_daily(
            send_renewal_reminders,
            time=dt_time(hour=RENEWAL_REMINDER_HOUR, minute=0),
            name="renewal_reminders",
        )
        logger.info(f"Scheduled renewal reminders daily at {RENEWAL_REMINDER_HOUR:02d}:00")

    # ── 5. Start polling ──────────────────────────────────
    logger.info("🚀 BotBilling is running! Press Ctrl+C to stop.")
    app.run_polling(drop_pending_updates=True, allowed_updates=["message"])


if __name__ == "__main__":
    main()
