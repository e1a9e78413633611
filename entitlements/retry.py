from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar, Union

from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from .errors import TransientStoreError
from .models import Transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_SQLSTATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "55P03",  # lock_not_available
        "57014",  # query_canceled (statement_timeout)
    }
)
_TRANSIENT_SQLITE_MESSAGES = ("database is locked", "database table is locked", "database is busy")


@dataclass
class RetryConfig:
    """Configuration for retrying transient store failures."""

    max_attempts: int = 3
    initial_delay_seconds: float = 0.05
    max_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1  # 10% random jitter

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay before the next attempt.

        Args:
            attempt: Attempt that just failed (0-indexed)

        Returns:
            Delay in seconds
        """
        base_delay = self.initial_delay_seconds * (self.backoff_multiplier ** attempt)
        jitter = random.uniform(0, base_delay * self.jitter_factor)
        return min(base_delay + jitter, self.max_delay_seconds)


def is_transient(exc: BaseException) -> bool:
    """Lock timeouts, serialization conflicts, deadlocks and dropped connections.

    Anything else, including schema or configuration errors surfaced as
    OperationalError, is not retried.
    """
    if isinstance(exc, (TransientStoreError, PoolTimeoutError, DisconnectionError)):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True

    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return True
    if isinstance(exc, OperationalError):
        message = str(orig).lower()
        return any(fragment in message for fragment in _TRANSIENT_SQLITE_MESSAGES)
    return False


def run_with_retry(
    operation: Callable[[], T],
    *,
    config: RetryConfig,
    operation_name: str,
    sleep: Callable[[float], None] = time.sleep,
) -> Union[T, Transient]:
    """Run ``operation``; transient failures are retried, then reported as ``Transient``."""
    attempts = max(1, config.max_attempts)
    last_error: BaseException = TransientStoreError("no attempts made")

    for attempt in range(attempts):
        try:
            return operation()
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_error = exc
            logger.warning(
                "Transient store failure",
                extra={"operation": operation_name, "attempt": attempt + 1, "error": str(exc)},
            )
            if attempt + 1 < attempts:
                sleep(config.calculate_delay(attempt))

    logger.error(
        "Store retries exhausted",
        extra={"operation": operation_name, "attempts": attempts, "error": str(last_error)},
    )
    return Transient(detail=f"{operation_name} failed: {last_error}", attempts=attempts)
