"""
Effective-tier resolution from a raw subscription record.

The subscription row is written by an external billing sync and can lag
reality, so "pro" is only honored when status and period end agree.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .models import SubscriptionStatus, Tier
from .tables import Subscription

logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = 7

InconsistencySink = Callable[[str, dict], None]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from the store as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_effective_tier(
    subscription: Optional[Subscription],
    now: Optional[datetime] = None,
    *,
    grace_period_days: int = GRACE_PERIOD_DAYS,
    on_inconsistency: Optional[InconsistencySink] = None,
) -> Tier:
    """
    Rules, first match wins:

    1. no subscription -> free
    2. pro + active/trialing -> free if the period end has passed, else pro
    3. pro + past_due -> pro until period end + grace period, then free
    4. anything else -> free
    """
    if subscription is None:
        return Tier.FREE

    now = as_utc(now) or datetime.now(timezone.utc)
    period_end = as_utc(subscription.current_period_end)

    if subscription.tier != Tier.PRO.value:
        return Tier.FREE

    if subscription.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
        if period_end is not None and period_end < now:
            payload = {
                "user_id": subscription.user_id,
                "status": subscription.status,
                "current_period_end": period_end.isoformat(),
            }
            logger.warning("Subscription marked %s but period has ended", subscription.status, extra=payload)
            if on_inconsistency is not None:
                on_inconsistency("subscription.stale_active_period", payload)
            return Tier.FREE
        return Tier.PRO

    if subscription.status == SubscriptionStatus.PAST_DUE.value:
        if period_end is None:
            return Tier.PRO
        grace_end = period_end + timedelta(days=grace_period_days)
        if now > grace_end:
            logger.info(
                "Past-due grace period expired",
                extra={"user_id": subscription.user_id, "grace_end": grace_end.isoformat()},
            )
            return Tier.FREE
        return Tier.PRO

    return Tier.FREE


def trial_days_remaining(subscription: Optional[Subscription], now: Optional[datetime] = None) -> Optional[int]:
    if subscription is None or subscription.status != SubscriptionStatus.TRIALING.value:
        return None
    trial_end = as_utc(subscription.trial_end)
    if trial_end is None:
        return None
    now = as_utc(now) or datetime.now(timezone.utc)
    days = math.ceil((trial_end - now) / timedelta(days=1))
    return max(0, days)


def is_trial(subscription: Optional[Subscription]) -> bool:
    return subscription is not None and subscription.status == SubscriptionStatus.TRIALING.value


def cancel_at_period_end(subscription: Optional[Subscription]) -> bool:
    return (
        subscription is not None
        and subscription.cancelled_at is not None
        and subscription.status == SubscriptionStatus.ACTIVE.value
    )
