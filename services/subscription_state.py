"""
services/subscription_state.py
-------------------------------
The subscription lifecycle as an explicit transition table.

    pending  → active, expired
    active   → active, past_due, cancelled, expired
    past_due → active, cancelled, expired
    cancelled, expired: terminal

A pending subscription expires when a newer checkout replaces it.
Reactivating a cancelled or expired subscription means creating a new one.
"""

from typing import Optional

from errors import InvalidTransitionError
from models.subscription import Subscription, SubscriptionStatus
from utils.logger import get_logger

logger = get_logger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset] = {
    S.PENDING: frozenset({S.ACTIVE, S.EXPIRED}),
    S.ACTIVE: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELLED, S.EXPIRED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return SubscriptionStatus(target) in ALLOWED_TRANSITIONS[SubscriptionStatus(current)]


def transition(subscription: Subscription, target: SubscriptionStatus,
               reason: Optional[str] = None) -> Subscription:
    """
    Move ``subscription`` to ``target`` in place.

    Raises:
        InvalidTransitionError: The move is not in ALLOWED_TRANSITIONS; the
            subscription is left untouched.
    """
    target = SubscriptionStatus(target)
    current = subscription.status
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value, subscription.id)
    subscription.status = target
    if current != target:
        logger.info(
            f"Subscription #{subscription.id}: {current.value} -> {target.value}"
            + (f" ({reason})" if reason else "")
        )
    return subscription
