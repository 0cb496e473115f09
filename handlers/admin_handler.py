"""
handlers/admin_handler.py
--------------------------
Operator commands for the recurring payment scheduler.
"""

from telegram import Update
from telegram.ext import ContextTypes

from errors import BillingError
from handlers.replies import format_error, parse_int
from security.auth import authorized_only
from security.rate_limiter import rate_limited
from services.scheduler import RecurringPaymentScheduler
from utils.logger import get_logger

logger = get_logger(__name__)

MAX_LOG_LINES = 50


def _scheduler(context: ContextTypes.DEFAULT_TYPE) -> RecurringPaymentScheduler:
    return context.bot_data["scheduler"]


def _fmt_time(moment) -> str:
    return f"{moment:%Y-%m-%d %H:%M:%S} UTC" if moment else "-"


@authorized_only
@rate_limited
async def scheduler_status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /scheduler_status - stats, config and next run."""
    scheduler = _scheduler(context)
    stats = scheduler.get_stats()
    config = scheduler.get_config()
    remaining = scheduler.time_until_next_run()

    state = "🟢 running" if stats.is_running else "🔴 stopped"
    if stats.is_processing:
        state += " (processing)"
    lines = [
        f"⚙️ Scheduler: {state}",
        f"Interval: {config.interval_minutes} min | batch: {config.batch_size}",
        f"Last run: {_fmt_time(stats.last_run_time)}",
        f"Next run: {_fmt_time(stats.next_run_time)}"
        + (f" (in {int(remaining.total_seconds() // 60)} min)" if remaining is not None else ""),
        "",
        f"Runs: {stats.total_runs} (✅ {stats.successful_runs} / ❌ {stats.failed_runs} / ⏭️ {stats.skipped_runs})",
        f"Processed: {stats.total_payments_processed} | created: {stats.total_payments_created}"
        f" | errors: {stats.total_errors}",
    ]
    monitor = context.bot_data.get("monitor")
    if monitor:
        metrics = monitor.get_metrics()
        lines.append(
            f"Booked total: {metrics['total_amount']:.2f} | error rate: {metrics['error_rate']:.1f}%"
        )
    await update.message.reply_text("\n".join(lines))


@authorized_only
@rate_limited
async def scheduler_start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /scheduler_start."""
    scheduler = _scheduler(context)
    if scheduler.start():
        await update.message.reply_text(
            f"▶️ Scheduler started (every {scheduler.config.interval_minutes} min)."
        )
    elif scheduler.is_running:
        await update.message.reply_text("ℹ️ Scheduler is already running.")
    else:
        await update.message.reply_text("⚠️ Scheduler is disabled in the configuration.")


@authorized_only
@rate_limited
async def scheduler_stop_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /scheduler_stop. A cycle already running is left to finish."""
    if _scheduler(context).stop():
        await update.message.reply_text("⏹️ Scheduler stopped.")
    else:
        await update.message.reply_text("ℹ️ Scheduler is not running.")


@authorized_only
@rate_limited(operation="force_run")
async def run_recurring_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /run_recurring - process every due entry now."""
    scheduler = _scheduler(context)
    if scheduler.is_processing:
        await update.message.reply_text("⏳ A cycle is running; yours starts right after it.")
    try:
        result = await scheduler.force_run()
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return
    except Exception as e:
        logger.exception("Manual processing run failed")
        await update.message.reply_text(f"❌ Processing failed: {e}")
        return

    icon = "✅" if result.success else "⚠️"
    lines = [
        f"{icon} Processing finished",
        f"Processed: {result.processed_count} | created: {len(result.created_records)}"
        f" | duplicates: {result.duplicate_count} | deactivated: {result.deactivated_count}",
        f"Total booked: {result.total_amount:.2f}",
    ]
    for error in result.errors[:10]:
        lines.append(f"  ❌ #{error['obligation_id']}: {error['error']}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
@rate_limited
async def scheduler_logs_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """
    Handle /scheduler_logs [level] [limit].

    Examples:
        /scheduler_logs
        /scheduler_logs error 20
    """
    args = context.args or []
    level = None
    limit = 15
    for arg in args:
        number = parse_int(arg)
        if number is not None:
            limit = max(1, min(number, MAX_LOG_LINES))
        else:
            level = arg

    try:
        entries = _scheduler(context).get_logs(level=level, limit=limit)
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return
    if not entries:
        await update.message.reply_text("📭 No scheduler log entries.")
        return
    lines = [f"{e.timestamp:%H:%M:%S} {e.level.upper():5} {e.message}" for e in entries]
    await update.message.reply_text("\n".join(lines))


@authorized_only
@rate_limited
async def scheduler_interval_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /scheduler_interval <minutes>."""
    minutes = parse_int(context.args[0]) if context.args else None
    if minutes is None:
        await update.message.reply_text("⚠️ Usage: /scheduler_interval <minutes>")
        return
    try:
        config = _scheduler(context).update_config(interval_minutes=minutes)
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return
    await update.message.reply_text(f"🔄 Interval set to {config.interval_minutes} min.")
