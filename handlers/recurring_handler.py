"""
handlers/recurring_handler.py
------------------------------
Handles recurring income/expense commands.
"""

import asyncio
import re
from datetime import date
from typing import Optional

from telegram import Update
from telegram.ext import ContextTypes

from errors import BillingError
from handlers.replies import format_error, parse_int
from security.auth import authorized_only
from security.rate_limiter import rate_limited
from services.recurring_processor import RecurringPaymentProcessor
from services.recurring_service import RecurringService
from utils.logger import get_logger

logger = get_logger(__name__)

MAX_DAYS_AHEAD = 365

USAGE = (
    "📝 *Add a recurring entry*\n\n"
    "*Format:*\n"
    "`/add_recurring name | amount | frequency | kind | category [| start] [| end] [| vendor]`\n\n"
    "*Examples:*\n"
    "• `/add_recurring Salary | 3000 | monthly | income | salary`\n"
    "• `/add_recurring Rent | 800 | monthly | expense | housing | 2026-03-01`\n"
    "• `/add_recurring Netflix | 15 | monthly | expense | fun | 2026-03-05 | | Netflix`\n\n"
    "*Frequency:* daily, weekly, monthly, yearly\n"
    "*Dates:* YYYY-MM-DD, start defaults to today"
)


def _service(context: ContextTypes.DEFAULT_TYPE) -> RecurringService:
    return context.bot_data["recurring_service"]


def _processor(context: ContextTypes.DEFAULT_TYPE) -> RecurringPaymentProcessor:
    return context.bot_data["processor"]


def _optional(parts: list[str], index: int) -> Optional[str]:
    if len(parts) > index and parts[index]:
        return parts[index]
    return None


def parse_recurring_args(text: str, today: date) -> dict:
    """
    Parse ``name | amount | frequency | kind | category [| start] [| end] [| vendor]``.

    Raises:
        ValueError: Too few fields, or an unreadable amount or date.
    """
    parts = [p.strip() for p in text.split("|")]
    if len(parts) < 4:
        raise ValueError("Expected at least: name | amount | frequency | kind")

    amount = re.sub(r"[^\d.]", "", parts[1])
    if not amount:
        raise ValueError(f"Invalid amount: {parts[1]!r}")

    start = _optional(parts, 5)
    end = _optional(parts, 6)
    return {
        "description": parts[0],
        "amount": amount,
        "frequency": parts[2].lower(),
        "kind": parts[3].lower(),
        "category": _optional(parts, 4),
        "start_date": date.fromisoformat(start) if start else today,
        "end_date": date.fromisoformat(end) if end else None,
        "vendor": _optional(parts, 7),
    }


@authorized_only
@rate_limited
async def recurring_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /recurring command - list all active recurring entries."""
    user = update.effective_user
    msg = _service(context).list_active(user.id)
    await update.message.reply_text(msg)


@authorized_only
@rate_limited
async def add_recurring_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /add_recurring - add a new recurring income or expense."""
    user = update.effective_user

    if not context.args:
        await update.message.reply_text(USAGE, parse_mode="Markdown")
        return

    try:
        fields = parse_recurring_args(" ".join(context.args), _processor(context).today())
    except ValueError as e:
        await update.message.reply_text(f"⚠️ {e}\n\nSend /add_recurring for the format.")
        return

    try:
        obligation = _service(context).add_obligation(user_id=user.id, **fields)
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return

    logger.info(f"User {user.id} added recurring entry #{obligation.id}")
    await update.message.reply_text(RecurringService.format_created(obligation))


@authorized_only
@rate_limited
async def delete_recurring_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """
    Handle /delete_recurring <id> - delete a recurring entry.
    Usage: /delete_recurring 3
    """
    user = update.effective_user
    obligation_id = parse_int(context.args[0]) if context.args else None
    if obligation_id is None:
        await update.message.reply_text(
            "⚠️ Usage: /delete_recurring <id>\n"
            "Example: /delete_recurring 3"
        )
        return

    msg = _service(context).delete_obligation(obligation_id, user.id)
    await update.message.reply_text(msg)


async def _toggle(update: Update, context: ContextTypes.DEFAULT_TYPE, active: bool) -> None:
    user = update.effective_user
    obligation_id = parse_int(context.args[0]) if context.args else None
    if obligation_id is None:
        command = "resume_recurring" if active else "pause_recurring"
        await update.message.reply_text(f"⚠️ Usage: /{command} <id>")
        return

    msg = _service(context).toggle_obligation(obligation_id, user.id, active)
    await update.message.reply_text(msg)


@authorized_only
@rate_limited
async def pause_recurring_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /pause_recurring <id> - stop booking an entry until resumed."""
    await _toggle(update, context, active=False)


@authorized_only
@rate_limited
async def resume_recurring_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /resume_recurring <id> - book a paused entry again."""
    await _toggle(update, context, active=True)


@authorized_only
@rate_limited
async def upcoming_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /upcoming [days] - overdue and upcoming cycles."""
    user = update.effective_user
    days = parse_int(context.args[0]) if context.args else None
    days = max(1, min(days or 30, MAX_DAYS_AHEAD))

    processor = _processor(context)
    items = processor.get_upcoming_schedule(user.id, days_ahead=days)
    await update.message.reply_text(RecurringService.format_schedule(items, days))


@authorized_only
@rate_limited(operation="force_run")
async def process_mine_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /process_mine - book the caller's due entries now."""
    user = update.effective_user
    result = await asyncio.to_thread(_processor(context).process_user, user.id)

    if not result.processed_count and not result.errors and not result.deactivated_count:
        await update.message.reply_text("📭 Nothing is due right now.")
        return

    lines = [f"✅ Booked {len(result.created_records)} entries, total {result.total_amount:.2f}"]
    if result.deactivated_count:
        lines.append(f"⏹️ {result.deactivated_count} ended entries deactivated")
    for error in result.errors:
        lines.append(f"❌ #{error['obligation_id']}: {error['error']}")
    await update.message.reply_text("\n".join(lines))
