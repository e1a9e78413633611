from __future__ import annotations

import json
import logging
import os
import re
import time
from datetime import datetime
from threading import Lock
from typing import Dict, Optional, Tuple, Union

import redis

from .models import (
    Entitlements,
    FeatureLimits,
    SubscriptionStatus,
    Tier,
    TokenBalances,
    UsageSnapshot,
)

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1
DEFAULT_TTL_SECONDS = 60
DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_SWEEP_INTERVAL_SECONDS = 300
KEY_NAMESPACE = f"entitlements:v{CACHE_SCHEMA_VERSION}"
_GENERATION_SLOTS = 1024

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class EntitlementCache:
    """Short-TTL entitlements snapshot cache: Redis when configured, in-process dict otherwise.

    Read path only. Write paths never consult it; they invalidate it.

    The in-process dict holds at most ``max_entries`` snapshots, evicting the
    oldest write first, and drops expired entries every ``sweep_interval_seconds``.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._sweep_interval_seconds = sweep_interval_seconds
        self._redis = None
        # insertion ordered: the first key is the oldest write
        self._mem: Dict[str, Tuple[float, dict]] = {}
        self._mem_lock = Lock()
        self._last_sweep = time.monotonic()
        # bumped by invalidate(); users share slots by hash
        self._generations = [0] * _GENERATION_SLOTS
        self._generation_lock = Lock()
        redis_url = redis_url or os.getenv("REDIS_URL")

        if redis_url:
            try:
                self._redis = redis.from_url(redis_url, decode_responses=True)
                self._redis.ping()
            except Exception as e:
                logger.warning("Redis unavailable, using in-memory entitlements cache: %s", e)
                self._redis = None

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    @staticmethod
    def _require_user_id(user_id: str) -> str:
        normalized = str(user_id).strip()
        if not normalized:
            raise ValueError("user_id is required")
        return normalized

    @staticmethod
    def prefix(user_id: str) -> str:
        return f"{KEY_NAMESPACE}:{user_id}:"

    @classmethod
    def _key(cls, user_id: str) -> str:
        return f"{cls.prefix(user_id)}snapshot"

    def get(self, user_id: str) -> Optional[Entitlements]:
        key = self._key(self._require_user_id(user_id))

        if self._redis is not None:
            try:
                raw = self._redis.get(key)
            except Exception as e:
                logger.warning("Entitlements cache get failed: %s", e)
                return None
            if not raw:
                return None
            return self._decode_or_drop(key, raw)

        with self._mem_lock:
            data = self._mem.get(key)
            if not data:
                return None
            cached_at, payload = data
            if time.monotonic() - cached_at > self._ttl_seconds:
                self._mem.pop(key, None)
                return None
        return self._decode_or_drop(key, payload)

    def generation(self, user_id: str) -> int:
        """Invalidation counter for the user. Read it before building a snapshot to cache."""
        slot = hash(self._require_user_id(user_id)) % _GENERATION_SLOTS
        with self._generation_lock:
            return self._generations[slot]

    def set(
        self,
        entitlements: Entitlements,
        *,
        ttl_seconds: Optional[int] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """Store the snapshot. With ``generation``, skip it if the user was invalidated since."""
        user_id = self._require_user_id(entitlements.user_id)
        if generation is not None and self.generation(user_id) != generation:
            logger.debug("Skipping stale entitlements snapshot", extra={"user_id": user_id})
            return False
        key = self._key(user_id)
        ttl = ttl_seconds or self._ttl_seconds
        payload = _encode_entitlements(entitlements)

        if self._redis is not None:
            try:
                self._redis.setex(key, ttl, json.dumps(payload))
            except Exception as e:
                logger.warning("Entitlements cache set failed: %s", e)
                return False
            return True

        with self._mem_lock:
            now = time.monotonic()
            if now - self._last_sweep >= self._sweep_interval_seconds:
                self._sweep_expired_locked(now)
            self._mem.pop(key, None)
            while len(self._mem) >= self._max_entries:
                self._mem.pop(next(iter(self._mem)))
            self._mem[key] = (now, payload)
        return True

    def _sweep_expired_locked(self, now: float) -> None:
        expired = [k for k, (cached_at, _) in self._mem.items() if now - cached_at > self._ttl_seconds]
        for key in expired:
            del self._mem[key]
        self._last_sweep = now
        if expired:
            logger.debug("Swept expired entitlements cache entries", extra={"count": len(expired)})

    def invalidate(self, user_id: str) -> int:
        """Drop every key under the user's prefix. Returns the number removed."""
        user_id = self._require_user_id(user_id)
        prefix = self.prefix(user_id)
        removed = 0
        with self._generation_lock:
            self._generations[hash(user_id) % _GENERATION_SLOTS] += 1

        if self._redis is not None:
            pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"
            try:
                for key in self._redis.scan_iter(match=pattern):
                    removed += int(self._redis.delete(key) or 0)
            except Exception as e:
                logger.warning("Entitlements cache delete failed: %s", e)

        with self._mem_lock:
            for key in [k for k in self._mem if k.startswith(prefix)]:
                self._mem.pop(key, None)
                removed += 1
        return removed

    def _decode_or_drop(self, key: str, payload: Union[str, dict]) -> Optional[Entitlements]:
        try:
            if isinstance(payload, str):
                payload = json.loads(payload)
            return _decode_entitlements(payload)
        except (AttributeError, KeyError, ValueError, TypeError) as e:
            logger.warning("Discarding unreadable entitlements cache entry: %s", e, extra={"cache_key": key})
            if self._redis is not None:
                try:
                    self._redis.delete(key)
                except Exception as exc:
                    logger.warning("Entitlements cache delete failed: %s", exc)
            with self._mem_lock:
                self._mem.pop(key, None)
            return None


def _encode_entitlements(entitlements: Entitlements) -> dict:
    payload = entitlements.to_dict()
    payload["schema_version"] = CACHE_SCHEMA_VERSION
    return payload


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _decode_entitlements(raw: dict) -> Entitlements:
    if int(raw.get("schema_version", CACHE_SCHEMA_VERSION)) != CACHE_SCHEMA_VERSION:
        raise ValueError("Unsupported entitlements cache schema version")

    status = raw.get("subscription_status")
    return Entitlements(
        user_id=raw["user_id"],
        tier=Tier(raw["tier"]),
        limits=FeatureLimits(**raw["limits"]),
        usage=UsageSnapshot(**raw["usage"]),
        tokens=TokenBalances(**raw["tokens"]),
        is_trial=bool(raw.get("is_trial", False)),
        trial_days_remaining=raw.get("trial_days_remaining"),
        subscription_status=SubscriptionStatus(status) if status else None,
        current_period_end=_parse_datetime(raw.get("current_period_end")),
        cancel_at_period_end=bool(raw.get("cancel_at_period_end", False)),
        resolved_at=datetime.fromisoformat(raw["resolved_at"]),
    )
