from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from conftest import NOW, seed_subscription, seed_tokens, seed_usage
from entitlements.api import require_feature, router
from entitlements.database import transaction
from entitlements.errors import UnknownProductError
from entitlements.events import (
    handle_invoice_paid,
    handle_payment_failed,
    handle_purchase_completed,
    handle_subscription_deleted,
    handle_subscription_updated,
)
from entitlements.models import (
    Denied,
    FeatureType,
    Ok,
    SubscriptionStatus,
    SubscriptionUpdate,
    Tier,
    TokenKind,
)
from workers.monthly_reset_job import run_monthly_reset_cycle


# =============================================================================
# Billing events
# =============================================================================


def test_purchase_redelivery_credits_once(service):
    first = handle_purchase_completed(service, "user-1", "ai_tokens_5", "cs_test_1")
    replay = handle_purchase_completed(service, "user-1", "ai_tokens_5", "cs_test_1")

    assert first["generation_tokens"].value.balance == 5
    assert replay["generation_tokens"].value.duplicate is True
    assert service.get_entitlements("user-1", skip_cache=True).tokens.generation_tokens == 5
    assert len(service.list_transactions("user-1")) == 1


def test_purchase_of_unknown_product_is_rejected(service):
    with pytest.raises(UnknownProductError):
        handle_purchase_completed(service, "user-1", "gold_bars", "cs_test_2")


def test_renewal_resets_monthly_counters(service, session_factory):
    start = NOW - timedelta(days=10)
    update = SubscriptionUpdate(
        user_id="pro-user",
        tier=Tier.PRO,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=start,
        current_period_end=start + timedelta(days=30),
    )
    assert handle_subscription_updated(service, update) == Ok(False)
    service.consume("pro-user", FeatureType.PDF_EXPORT)
    service.use_streak_shield("pro-user")

    renewal = SubscriptionUpdate(
        user_id="pro-user",
        tier=Tier.PRO,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=start + timedelta(days=30),
        current_period_end=start + timedelta(days=60),
    )
    assert handle_subscription_updated(service, renewal) == Ok(True)

    ents = service.get_entitlements("pro-user")
    assert ents.usage.pdf_exports_this_month == 0
    assert ents.usage.streak_shields_this_month == 0


def test_same_period_update_does_not_reset(service):
    start = NOW - timedelta(days=10)
    update = SubscriptionUpdate(
        user_id="pro-user",
        tier=Tier.PRO,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=start,
        current_period_end=start + timedelta(days=30),
    )
    handle_subscription_updated(service, update)
    service.consume("pro-user", FeatureType.PDF_EXPORT)

    assert handle_subscription_updated(service, update) == Ok(False)
    assert service.get_entitlements("pro-user").usage.pdf_exports_this_month == 1


def test_payment_failure_and_recovery_transitions(service, session_factory):
    seed_subscription(session_factory, "user-1", period_end=NOW - timedelta(days=1))

    assert handle_payment_failed(service, "user-1") == Ok(True)
    assert service.get_entitlements("user-1").tier is Tier.PRO
    assert handle_invoice_paid(service, "user-1") == Ok(True)
    assert handle_invoice_paid(service, "user-1") == Ok(False)


def test_subscription_deleted_keeps_row_as_free_cancelled(service, session_factory):
    seed_subscription(session_factory, "user-1")

    assert handle_subscription_deleted(service, "user-1") == Ok(True)

    ents = service.get_entitlements("user-1")
    assert ents.tier is Tier.FREE
    assert ents.subscription_status is SubscriptionStatus.CANCELLED
    assert isinstance(handle_subscription_deleted(service, "nobody"), Denied)


def test_cancel_and_reactivate(service, session_factory):
    seed_subscription(session_factory, "user-1")

    assert isinstance(service.cancel_subscription("user-1"), Ok)
    assert service.get_entitlements("user-1").cancel_at_period_end is True
    assert service.reactivate_subscription("user-1") == Ok(True)
    assert service.get_entitlements("user-1").cancel_at_period_end is False


# =============================================================================
# Monthly reset worker
# =============================================================================


def test_reset_worker_resets_stale_balances_once(service):
    seed_tokens(service, "user-1", TokenKind.GENERATION, 1)
    seed_tokens(service, "user-2", TokenKind.EXPORT, 1)

    stats = run_monthly_reset_cycle(service)
    again = run_monthly_reset_cycle(service)

    assert (stats.users_scanned, stats.users_reset, stats.errors) == (2, 2, 0)
    assert again.users_scanned == 0
    assert stats.completed_at is not None


# =============================================================================
# HTTP routes
# =============================================================================


@pytest.fixture
def client(service):
    app = FastAPI()
    app.include_router(router)
    app.state.entitlement_service = service

    @app.middleware("http")
    async def fake_auth(request: Request, call_next):
        request.state.user_id = request.headers.get("X-User-Id")
        return await call_next(request)

    @app.post("/recipes/suggest")
    def suggest(receipt=Depends(require_feature(FeatureType.AI_RECIPE, consume=True))):
        return {"source": receipt.source}

    return TestClient(app)


def _as(user_id):
    return {"X-User-Id": user_id}


def test_routes_require_authenticated_user(client):
    assert client.get("/entitlements").status_code == 401


def test_get_entitlements_route(client):
    response = client.get("/entitlements", headers=_as("user-1"))

    assert response.status_code == 200
    body = response.json()
    assert body["tier"] == "free"
    assert body["limits"]["ai_recipe_suggestions_per_month"] == 2


def test_check_route_and_unknown_feature(client):
    ok = client.get("/features/barcode_scan/check", headers=_as("user-1"))
    unknown = client.get("/features/teleport/check", headers=_as("user-1"))

    assert ok.status_code == 200
    assert ok.json()["allowed"] is True
    assert ok.json()["remaining"] == 10
    assert unknown.status_code == 400
    assert unknown.json()["detail"]["error"] == "UNKNOWN_FEATURE"


def test_consume_route_denial_is_402_with_upsell(client, service, session_factory):
    seed_usage(service, session_factory, "user-1", FeatureType.AI_RECIPE, 2)

    response = client.post("/features/consume", json={"feature": "ai_recipe"}, headers=_as("user-1"))

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["reason"] == "ai_recipe_limit_reached"
    assert detail["upsell"] == "pro_or_tokens"
    assert {option["id"] for option in detail["upsell_options"]} == {"ai_tokens_5", "ai_tokens_15", "ai_tokens_50"}


def test_consume_route_success(client):
    response = client.post(
        "/features/consume",
        json={"feature": "barcode_scan", "quantity": 2},
        headers=_as("user-1"),
    )

    assert response.status_code == 200
    assert response.json()["remaining"] == 8


def test_consume_route_validates_quantity(client):
    response = client.post("/features/consume", json={"feature": "ai_recipe", "quantity": 0}, headers=_as("user-1"))
    assert response.status_code == 422


def test_use_shield_route(client, service):
    denied = client.post("/tokens/use-shield", headers=_as("user-1"))
    seed_tokens(service, "user-1", TokenKind.STREAK_SHIELD, 3)
    used = client.post("/tokens/use-shield", headers=_as("user-1"))

    assert denied.status_code == 402
    assert denied.json()["detail"]["remaining"] == 0
    assert [o["id"] for o in denied.json()["detail"]["upsell_options"]] == ["streak_shields_3", "streak_shields_10"]
    assert used.status_code == 200
    assert used.json() == {"success": True, "source": "tokens", "remaining": 2}


def test_transactions_route_lists_newest_first(client, service):
    seed_tokens(service, "user-1", TokenKind.EXPORT, 2, reference="r_1")
    client.post("/features/consume", json={"feature": "pdf_export"}, headers=_as("user-1"))

    response = client.get("/tokens/transactions", headers=_as("user-1"))

    assert response.status_code == 200
    amounts = sorted(row["amount"] for row in response.json()["transactions"])
    assert amounts == [-1, 2]


def test_require_feature_dependency_consumes(client, service):
    first = client.post("/recipes/suggest", headers=_as("user-1"))
    second = client.post("/recipes/suggest", headers=_as("user-1"))
    third = client.post("/recipes/suggest", headers=_as("user-1"))

    assert first.json() == {"source": "allowance"}
    assert second.status_code == 200
    assert third.status_code == 402
    with transaction(service._session_factory) as session:
        assert service.usage_store.used_this_month(session, "user-1", FeatureType.AI_RECIPE, NOW.date()) == 2
