"""
Environment-driven settings for the entitlement engine.

Environment variables:
    DATABASE_URL                      SQLAlchemy URL of the durable store
    REDIS_URL                         optional; enables the shared read cache
    ENTITLEMENTS_CACHE_TTL_SECONDS    read cache TTL (default 60)
    ENTITLEMENTS_TX_TIMEOUT_MS        per-transaction lock/statement timeout (default 5000)
    ENTITLEMENTS_RETRY_ATTEMPTS       attempts for transient store failures (default 3)
    ENTITLEMENTS_GRACE_PERIOD_DAYS    past_due grace window (default 7)
    ENTITLEMENTS_TIER_CONFIG          optional JSON file overriding tier limits
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite:///./entitlements.db"
DEFAULT_CACHE_TTL_SECONDS = 60
DEFAULT_TX_TIMEOUT_MS = 5000
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_GRACE_PERIOD_DAYS = 7


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


@dataclass(frozen=True)
class EntitlementSettings:
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    tx_timeout_ms: int = DEFAULT_TX_TIMEOUT_MS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    tier_config_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EntitlementSettings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            redis_url=os.getenv("REDIS_URL") or None,
            cache_ttl_seconds=_int_env("ENTITLEMENTS_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS),
            tx_timeout_ms=_int_env("ENTITLEMENTS_TX_TIMEOUT_MS", DEFAULT_TX_TIMEOUT_MS),
            retry_attempts=max(1, _int_env("ENTITLEMENTS_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS)),
            grace_period_days=_int_env("ENTITLEMENTS_GRACE_PERIOD_DAYS", DEFAULT_GRACE_PERIOD_DAYS),
            tier_config_path=os.getenv("ENTITLEMENTS_TIER_CONFIG") or None,
        )
