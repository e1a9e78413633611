from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from entitlements.models import Ok
from entitlements.service import EntitlementService

logger = logging.getLogger(__name__)


@dataclass
class ResetStats:
    started_at: str
    completed_at: Optional[str] = None
    users_scanned: int = 0
    users_reset: int = 0
    errors: int = 0


def run_monthly_reset_cycle(
    service: Optional[EntitlementService] = None,
    *,
    stale_after_days: int = 31,
) -> ResetStats:
    """Scheduled reset of monthly counters for users no renewal event has reset.

    Responsibilities:
    - find balances whose last reset is older than ``stale_after_days``
    - reset each one in its own transaction (and drop its cached snapshot)
    """

    svc = service or EntitlementService.from_settings()
    stats = ResetStats(started_at=datetime.now(timezone.utc).isoformat())

    try:
        due = svc.users_due_for_monthly_reset(stale_after_days=stale_after_days)
    except Exception:
        logger.exception("Monthly reset scan failed")
        stats.errors += 1
        due = []

    stats.users_scanned = len(due)
    for user_id in due:
        outcome = svc.reset_monthly_usage(user_id)
        if isinstance(outcome, Ok):
            stats.users_reset += 1
        else:
            stats.errors += 1
            logger.warning("Monthly reset failed", extra={"user_id": user_id, "outcome": outcome.kind})

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info(
        "Monthly reset cycle complete",
        extra={"users_scanned": stats.users_scanned, "users_reset": stats.users_reset, "errors": stats.errors},
    )
    return stats


def run_forever(interval_seconds: int = 3600) -> None:
    service = EntitlementService.from_settings()
    while True:
        run_monthly_reset_cycle(service)
        time.sleep(interval_seconds)
