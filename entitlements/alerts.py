"""
Alerts for ledger inconsistencies and repeated denials.
"""

import logging
import time
from collections import defaultdict
from threading import Lock
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DENY_THRESHOLD_PER_MIN = 10

AlertSink = Callable[[str, dict], None]


class LedgerAlerts:
    """
    Routes inconsistency and denial-burst alerts to a sink.

    The sink defaults to a no-op; production wires it to the paging/support channel.
    """

    def __init__(self, sink: Optional[AlertSink] = None, deny_threshold_per_min: int = DENY_THRESHOLD_PER_MIN) -> None:
        self._sink = sink or (lambda code, payload: None)
        self._deny_threshold = deny_threshold_per_min
        self._deny_times: Dict[str, List[float]] = defaultdict(list)
        self._lock = Lock()

    def inconsistency(self, code: str, payload: dict) -> None:
        logger.error("Entitlement ledger inconsistency", extra={"alert_code": code, **payload})
        self._sink(code, payload)

    def record_denial(self, user_id: str, feature: str, reason: str) -> None:
        """Count a denial; alert when one user is denied too often within a minute."""
        now = time.time()
        cutoff = now - 60
        with self._lock:
            recent = [t for t in self._deny_times[user_id] if t > cutoff]
            recent.append(now)
            self._deny_times[user_id] = recent
            count = len(recent)
        if count >= self._deny_threshold:
            payload = {"user_id": user_id, "feature": feature, "reason": reason, "count_per_min": count}
            logger.warning("Repeated entitlement denials", extra=payload)
            self._sink("entitlements.repeated_denials", payload)
