"""
handlers/start_handler.py
--------------------------
Handles /start, /help and /myid.
"""

from telegram import Update
from telegram.ext import ContextTypes

from security.auth import authorized_only
from security.rate_limiter import rate_limited
from utils.logger import get_logger

logger = get_logger(__name__)

HELP_TEXT = """
🤖 *BotBilling*
Recurring income/expenses and plan subscriptions 💳

*🔁 Recurring entries:*
/recurring - list active entries
/add\\_recurring - add an entry
/delete\\_recurring - delete an entry
/pause\\_recurring, /resume\\_recurring - pause or resume an entry
/upcoming - what is due soon
/process\\_mine - book your due entries now

*💳 Subscription:*
/subscription - your current plan
/subscribe - list plans or subscribe
/change\\_plan - switch plan
/renew - pay for the next period
/cancel\\_subscription - cancel
/verify\\_payment - confirm a payment
/retry\\_payment - retry a failed payment
/payments - payment history
/feature - check a feature

*⚙️ Scheduler (admins):*
/scheduler\\_status, /scheduler\\_start, /scheduler\\_stop
/run\\_recurring - process all due entries now
/scheduler\\_logs - recent scheduler log
/scheduler\\_interval - change the interval

/myid - show your Telegram ID
"""


@authorized_only
@rate_limited
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command - show welcome message."""
    user = update.effective_user
    logger.info(f"User {user.id} ({user.first_name}) started the bot.")

    await update.message.reply_text(
        f"Hi {user.first_name}! 👋\n"
        f"I book your recurring income and expenses and manage your subscription.\n\n"
        f"Type /help to see every command.",
    )


@authorized_only
@rate_limited
async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help command - show all available commands."""
    await update.message.reply_text(HELP_TEXT, parse_mode="Markdown")


@authorized_only
async def myid_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /myid command - show user's Telegram ID for whitelisting."""
    user = update.effective_user
    await update.message.reply_text(
        f"🆔 Your ID: `{user.id}`\n"
        f"Add it to `ALLOWED_USER_IDS` in `.env` to lock the bot down.",
        parse_mode="Markdown",
    )
