"""
security/auth.py
-----------------
Authorization for the Telegram operator surface.
Blocks any user not in the ALLOWED_USER_IDS whitelist.
"""

from functools import wraps
from typing import Callable, Iterable, Optional

from telegram import Update
from telegram.ext import ContextTypes

from config import ALLOWED_USER_IDS
from utils.logger import get_logger

logger = get_logger(__name__)


def is_authorized(user_id: int, allowed: Optional[Iterable[int]] = None) -> bool:
    """An empty whitelist allows everyone (dev mode)."""
    allowed = ALLOWED_USER_IDS if allowed is None else list(allowed)
    return not allowed or user_id in allowed


def authorized_only(func: Callable):
    """
    Decorator that restricts a handler to whitelisted users only.

    Usage:
        @authorized_only
        async def my_handler(update, context):
            ...

    Behavior:
        - If ALLOWED_USER_IDS is empty, ALL users are allowed (dev mode).
        - If the list is set, only those users can use the bot.
        - Unauthorized attempts are logged.
    """
    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE, *args, **kwargs):
        user = update.effective_user
        if not user:
            return

        allowed = context.bot_data.get("allowed_user_ids") if context.bot_data else None
        if not is_authorized(user.id, allowed):
            logger.warning(
                f"🚫 Unauthorized access attempt: user_id={user.id}, "
                f"username={user.username}, command={func.__name__}"
            )
            await update.message.reply_text("⛔ This bot is private. Access denied.")
            return

        return await func(update, context, *args, **kwargs)

    return wrapper
