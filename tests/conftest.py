from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitlements.alerts import LedgerAlerts
from entitlements.cache import EntitlementCache
from entitlements.database import build_engine, build_session_factory, create_schema, transaction
from entitlements.models import FeatureType, SubscriptionStatus, Tier, TokenKind, TokenSource
from entitlements.retry import RetryConfig
from entitlements.service import EntitlementService
from entitlements.tables import Subscription
from entitlements.usage import usage_day

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class RecordingSink:
    def __init__(self):
        self.events = []

    def __call__(self, code, payload):
        self.events.append((code, payload))

    def codes(self):
        return [code for code, _ in self.events]


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'entitlements.db'}", tx_timeout_ms=30000)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def alert_sink():
    return RecordingSink()


@pytest.fixture
def make_service(session_factory, alert_sink):
    def _make(**kwargs):
        kwargs.setdefault("cache", EntitlementCache(ttl_seconds=60))
        kwargs.setdefault("clock", lambda: NOW)
        kwargs.setdefault("retry_config", RetryConfig(max_attempts=5, initial_delay_seconds=0.01))
        kwargs.setdefault("alerts", LedgerAlerts(sink=alert_sink))
        return EntitlementService(session_factory=session_factory, **kwargs)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


def seed_subscription(session_factory, user_id, *, tier=Tier.PRO, status=SubscriptionStatus.ACTIVE, period_end=None, **fields):
    with transaction(session_factory) as session:
        session.add(
            Subscription(
                user_id=user_id,
                tier=Tier(tier).value,
                status=SubscriptionStatus(status).value,
                current_period_start=fields.pop("period_start", NOW - timedelta(days=10)),
                current_period_end=period_end if period_end is not None else NOW + timedelta(days=20),
                **fields,
            )
        )


def seed_usage(service, session_factory, user_id, feature, quantity, *, day=None):
    with transaction(session_factory) as session:
        service.usage_store.record_usage(session, user_id, FeatureType(feature), day or usage_day(NOW), quantity)


def seed_tokens(service, user_id, kind, amount, reference="seed"):
    outcome = service.add_tokens(user_id, TokenKind(kind), amount, TokenSource.REWARD, reference=reference)
    assert outcome.ok
    return outcome.value
