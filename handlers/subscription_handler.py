"""
handlers/subscription_handler.py
---------------------------------
Plan subscription commands: checkout, plan changes, renewals,
cancellation, payment verification and feature checks, plus the daily
renewal reminder job.

Calls that reach the payment gateway run in a worker thread so the
bot's event loop keeps serving other updates.
"""

import asyncio

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from config import REFERENCE_PREFIX, RENEWAL_REMINDER_DAYS
from errors import BillingError
from handlers.replies import format_error, parse_int
from models.webhook import Customer
from security.auth import authorized_only
from security.rate_limiter import rate_limited
from services.payment_service import PaymentService
from services.subscription_service import CheckoutResult, SubscriptionService
from utils.dates import BILLING_CYCLES
from utils.logger import get_logger

logger = get_logger(__name__)


def _subscriptions(context: ContextTypes.DEFAULT_TYPE) -> SubscriptionService:
    return context.bot_data["subscription_service"]


def _payments(context: ContextTypes.DEFAULT_TYPE) -> PaymentService:
    return context.bot_data["payment_service"]


def format_plans(plans) -> str:
    if not plans:
        return "📭 No plans are available right now."
    lines = ["💳 Available plans:\n"]
    for plan in plans:
        lines.append(f"  #{plan.id} {plan}")
        if plan.description:
            lines.append(f"      {plan.description}")
    lines.append("\nSubscribe with: /subscribe <plan_id> [monthly|annual] <email>")
    return "\n".join(lines)


def format_checkout(result: CheckoutResult) -> str:
    sub = result.subscription
    lines = []
    if result.proration is not None:
        p = result.proration
        lines.append(
            f"🧮 Credit {p.current_plan_credit:.2f}, new plan {p.new_plan_charge:.2f} "
            f"→ {p.prorated_amount:+.2f} {p.currency}"
        )
    if result.requires_payment:
        txn = result.transaction
        lines.append(f"💳 Pay {txn.amount:.2f} {txn.currency} here:\n{result.payment_link}")
        lines.append(f"\nThen confirm with: /verify_payment {txn.gateway_reference}")
    elif sub is not None:
        lines.append(f"✅ Subscription #{sub.id} is now on plan #{sub.plan_id}.")
    return "\n".join(lines)


@authorized_only
@rate_limited
async def subscription_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /subscription - show the current subscription and its features."""
    user = update.effective_user
    service = _subscriptions(context)
    sub = service.get_subscription(user.id)
    if sub is None:
        await update.message.reply_text(
            "📭 You have no subscription.\n\n" + format_plans(service.get_plans())
        )
        return

    lines = [f"💳 Subscription {sub}"]
    if sub.scheduled_plan_change:
        change = sub.scheduled_plan_change
        lines.append(
            f"🔜 {change.change_type} to plan #{change.target_plan_id} on {change.effective_date:%Y-%m-%d}"
        )
    limits = service.get_feature_limits(user.id)
    if limits:
        lines.append("\n✨ Features:")
        for name, limit in sorted(limits.items()):
            lines.append(f"  • {name}: {'unlimited' if limit is None else limit}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
@rate_limited
async def subscribe_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """
    Handle /subscribe - list plans, or start a subscription.

    Examples:
        /subscribe
        /subscribe 2 you@example.com
        /subscribe 2 annual you@example.com
    """
    user = update.effective_user
    service = _subscriptions(context)
    args = context.args or []
    if not args:
        await update.message.reply_text(format_plans(service.get_plans()))
        return

    plan_id = parse_int(args[0])
    cycle = args[1].lower() if len(args) > 2 else "monthly"
    email = args[-1] if len(args) > 1 else None
    if plan_id is None or not email or "@" not in email or cycle not in BILLING_CYCLES:
        await update.message.reply_text("⚠️ Usage: /subscribe <plan_id> [monthly|annual] <email>")
        return

    customer = Customer(email=email, name=user.full_name)
    try:
        result = await asyncio.to_thread(service.create_subscription, user.id, plan_id, cycle, customer)
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return

    logger.info(f"User {user.id} started subscription #{result.subscription.id}")
    await update.message.reply_text(format_checkout(result))


@authorized_only
@rate_limited
async def change_plan_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /change_plan <plan_id> [later] - prorated now, or at period end."""
    user = update.effective_user
    service = _subscriptions(context)
    args = context.args or []
    plan_id = parse_int(args[0]) if args else None
    if plan_id is None:
        await update.message.reply_text("⚠️ Usage: /change_plan <plan_id> [later]")
        return
    immediate = not (len(args) > 1 and args[1].lower() == "later")

    sub = service.get_subscription(user.id)
    if sub is None:
        await update.message.reply_text("📭 You have no subscription. Use /subscribe first.")
        return

    try:
        result = await asyncio.to_thread(service.update_subscription, sub.id, plan_id, immediate)
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return

    if not immediate:
        await update.message.reply_text(
            f"🔜 Plan #{plan_id} starts on {result.subscription.current_period_end:%Y-%m-%d}."
        )
        return
    await update.message.reply_text(format_checkout(result))


@authorized_only
@rate_limited
async def cancel_subscription_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel_subscription [now] - cancel at period end, or immediately."""
    user = update.effective_user
    service = _subscriptions(context)
    immediate = bool(context.args) and context.args[0].lower() == "now"

    sub = service.get_subscription(user.id)
    if sub is None:
        await update.message.reply_text("📭 You have no subscription.")
        return

    try:
        sub = await asyncio.to_thread(service.cancel_subscription, sub.id, immediate, "requested via bot")
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return

    if immediate:
        await update.message.reply_text(f"🛑 Subscription #{sub.id} cancelled.")
    else:
        await update.message.reply_text(
            f"⏹️ Subscription #{sub.id} ends on {sub.current_period_end:%Y-%m-%d}."
        )


@authorized_only
@rate_limited
async def verify_payment_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /verify_payment <reference | gateway transaction id>."""
    user = update.effective_user
    if not context.args:
        await update.message.reply_text("⚠️ Usage: /verify_payment <reference>")
        return
    key = context.args[0]
    payments = _payments(context)
    by_reference = key.startswith(REFERENCE_PREFIX) or key.startswith("retry_")

    try:
        verify = payments.verify_reference if by_reference else payments.verify_payment
        txn = await asyncio.to_thread(verify, key)
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return

    if txn.user_id != user.id:
        logger.warning(f"User {user.id} tried to verify transaction #{txn.id} of another user")
        await update.message.reply_text("⚠️ Transaction not found.")
        return

    icons = {"successful": "✅", "failed": "❌", "pending": "⏳"}
    msg = f"{icons.get(txn.status.value, 'ℹ️')} Payment {txn}"
    if txn.metadata.get("refund_required"):
        msg += "\n⚠️ This payment could not be applied to your subscription and will be refunded."
    await update.message.reply_text(msg)


@authorized_only
@rate_limited
async def retry_payment_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /retry_payment <transaction_id> - new charge for a failed payment."""
    user = update.effective_user
    txn_id = parse_int(context.args[0]) if context.args else None
    if txn_id is None:
        await update.message.reply_text("⚠️ Usage: /retry_payment <transaction_id>")
        return

    payments = _payments(context)
    history = payments.get_transaction_history(user.id, limit=100)
    if not any(t.id == txn_id for t in history):
        await update.message.reply_text("⚠️ Transaction not found.")
        return

    try:
        result = await asyncio.to_thread(payments.retry_failed_payment, txn_id)
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return
    await update.message.reply_text(format_checkout(result))


@authorized_only
@rate_limited
async def payments_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /payments - recent payment history."""
    user = update.effective_user
    history = _payments(context).get_transaction_history(user.id, limit=10)
    if not history:
        await update.message.reply_text("📭 No payments yet.")
        return
    lines = ["🧾 Recent payments:\n"]
    for txn in history:
        when = f"{txn.created_at:%Y-%m-%d}" if txn.created_at else "-"
        lines.append(f"  {when} {txn}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
@rate_limited
async def feature_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /feature <name> - is the feature in the caller's plan."""
    user = update.effective_user
    if not context.args:
        await update.message.reply_text("⚠️ Usage: /feature <name>")
        return
    feature = context.args[0]
    service = _subscriptions(context)
    if not service.check_feature_access(user.id, feature):
        await update.message.reply_text(f"🔒 '{feature}' is not included in your plan.")
        return
    limit = service.get_feature_limits(user.id).get(feature)
    await update.message.reply_text(
        f"✅ '{feature}' is available ({'unlimited' if limit is None else f'limit {limit}'})."
    )


@authorized_only
@rate_limited
async def renew_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """
    Handle /renew [email] - pay for the next period now.

    The email defaults to the one used at checkout.
    """
    user = update.effective_user
    service = _subscriptions(context)
    email = context.args[0] if context.args else None
    if email is not None and "@" not in email:
        await update.message.reply_text("⚠️ Usage: /renew [email]")
        return

    sub = service.get_subscription(user.id)
    if sub is None:
        await update.message.reply_text("📭 You have no subscription. Use /subscribe first.")
        return

    customer = Customer(email=email, name=user.full_name) if email else None
    try:
        result = await asyncio.to_thread(service.start_renewal, sub.id, customer)
    except BillingError as e:
        await update.message.reply_text(format_error(e))
        return

    logger.info(f"User {user.id} started renewal of subscription #{sub.id}")
    await update.message.reply_text(format_checkout(result))


async def send_renewal_reminders(context: ContextTypes.DEFAULT_TYPE) -> None:
    """
    Scheduled job: remind users whose period ends soon to /renew.
    Runs daily at RENEWAL_REMINDER_HOUR.
    """
    service = _subscriptions(context)
    expiring = await asyncio.to_thread(service.get_expiring_subscriptions, RENEWAL_REMINDER_DAYS)

    for sub in expiring:
        if sub.cancel_at_period_end:
            continue
        try:
            await context.bot.send_message(
                chat_id=sub.user_id,
                text=(
                    f"⏰ Your subscription #{sub.id} ends on {sub.current_period_end:%Y-%m-%d}.\n"
                    f"Send /renew to pay for the next period."
                ),
            )
            logger.info(f"Sent renewal reminder for subscription #{sub.id} to user {sub.user_id}")
        except TelegramError as e:
            logger.error(f"Failed to send renewal reminder to {sub.user_id}: {e}")
