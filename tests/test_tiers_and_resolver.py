from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from entitlements.errors import TierConfigError
from entitlements.loader import TierConfigLoader, load_tier_table
from entitlements.models import UNLIMITED, FeatureLimits, Tier
from entitlements.resolver import (
    cancel_at_period_end,
    resolve_effective_tier,
    trial_days_remaining,
)
from entitlements.tables import Subscription
from entitlements.tiers import DEFAULT_TIER_TABLE, FREE_LIMITS, TierPolicyTable, get_tier_limits

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _sub(tier="pro", status="active", period_end=None, **fields):
    return Subscription(user_id="user-1", tier=tier, status=status, current_period_end=period_end, **fields)


# =============================================================================
# Tier policy table
# =============================================================================


def test_every_tier_has_limits():
    for tier in Tier:
        assert isinstance(get_tier_limits(tier), FeatureLimits)


def test_default_limits_match_product_tiers():
    free = get_tier_limits(Tier.FREE)
    pro = get_tier_limits(Tier.PRO)

    assert free.ai_recipe_suggestions_per_month == 2
    assert free.barcode_scans_per_day == 10
    assert free.pdf_exports_included == 0
    assert pro.barcode_scans_per_day == UNLIMITED
    assert pro.pdf_exports_included == 5
    assert pro.monthly_streak_shields == 2


def test_table_missing_a_tier_is_rejected():
    with pytest.raises(ValueError, match="missing tiers: pro"):
        TierPolicyTable({Tier.FREE: FREE_LIMITS})


def test_limits_reject_values_below_unlimited_sentinel():
    with pytest.raises(ValueError, match="barcode_scans_per_day"):
        FeatureLimits(
            ai_meal_plans_per_month=1,
            ai_recipe_suggestions_per_month=1,
            barcode_scans_per_day=-2,
            pdf_exports_included=0,
            monthly_streak_shields=0,
            achievements_available=1,
            history_retention_days=1,
        )


def test_with_overrides_leaves_default_table_untouched():
    table = DEFAULT_TIER_TABLE.with_overrides(Tier.FREE, ai_recipe_suggestions_per_month=3)

    assert table.get(Tier.FREE).ai_recipe_suggestions_per_month == 3
    assert DEFAULT_TIER_TABLE.get(Tier.FREE).ai_recipe_suggestions_per_month == 2


def test_loader_merges_partial_overrides(tmp_path):
    config_file = tmp_path / "tiers.json"
    config_file.write_text(
        json.dumps({"tiers": {"free": {"barcode_scans_per_day": 25}, " pro ": {}}}),
        encoding="utf-8",
    )

    table = load_tier_table(str(config_file))

    assert table.get(Tier.FREE).barcode_scans_per_day == 25
    assert table.get(Tier.FREE).ai_meal_plans_per_month == 2
    assert table.get(Tier.PRO) == get_tier_limits(Tier.PRO)


def test_loader_requires_every_tier(tmp_path):
    config_file = tmp_path / "tiers.json"
    config_file.write_text('{"tiers": {"free": {}}}', encoding="utf-8")

    with pytest.raises(TierConfigError, match="missing tiers"):
        TierConfigLoader(str(config_file))


def test_loader_rejects_unknown_limit_keys(tmp_path):
    config_file = tmp_path / "tiers.json"
    config_file.write_text('{"tiers": {"free": {"teleports": 1}, "pro": {}}}', encoding="utf-8")

    with pytest.raises(TierConfigError, match="unknown limit keys: teleports"):
        TierConfigLoader(str(config_file))


def test_loader_reload_picks_up_changes(tmp_path):
    config_file = tmp_path / "tiers.json"
    config_file.write_text('{"tiers": {"free": {}, "pro": {}}}', encoding="utf-8")
    loader = TierConfigLoader(str(config_file))

    config_file.write_text('{"tiers": {"free": {"ai_meal_plans_per_month": 4}, "pro": {}}}', encoding="utf-8")
    loader.reload()

    assert loader.table.get(Tier.FREE).ai_meal_plans_per_month == 4


# =============================================================================
# Subscription resolver
# =============================================================================


def test_no_subscription_is_free():
    assert resolve_effective_tier(None, NOW) is Tier.FREE


def test_active_pro_within_period_is_pro():
    assert resolve_effective_tier(_sub(period_end=NOW + timedelta(days=3)), NOW) is Tier.PRO


def test_active_pro_with_expired_period_is_free_and_reported():
    reported = []

    tier = resolve_effective_tier(
        _sub(status="trialing", period_end=NOW - timedelta(seconds=1)),
        NOW,
        on_inconsistency=lambda code, payload: reported.append(code),
    )

    assert tier is Tier.FREE
    assert reported == ["subscription.stale_active_period"]


def test_naive_period_end_is_read_as_utc():
    naive_future = (NOW + timedelta(hours=1)).replace(tzinfo=None)
    assert resolve_effective_tier(_sub(period_end=naive_future), NOW) is Tier.PRO


def test_past_due_six_days_after_period_end_is_still_pro():
    assert resolve_effective_tier(_sub(status="past_due", period_end=NOW - timedelta(days=6)), NOW) is Tier.PRO


def test_past_due_eight_days_after_period_end_is_free():
    assert resolve_effective_tier(_sub(status="past_due", period_end=NOW - timedelta(days=8)), NOW) is Tier.FREE


def test_past_due_grace_period_is_configurable():
    sub = _sub(status="past_due", period_end=NOW - timedelta(days=2))
    assert resolve_effective_tier(sub, NOW, grace_period_days=1) is Tier.FREE


def test_cancelled_or_free_rows_are_free():
    assert resolve_effective_tier(_sub(status="cancelled", period_end=NOW + timedelta(days=3)), NOW) is Tier.FREE
    assert resolve_effective_tier(_sub(tier="free", status="active"), NOW) is Tier.FREE


def test_trial_days_remaining_rounds_up_and_floors_at_zero():
    sub = _sub(status="trialing", trial_end=NOW + timedelta(days=2, hours=1))
    assert trial_days_remaining(sub, NOW) == 3

    expired = _sub(status="trialing", trial_end=NOW - timedelta(days=1))
    assert trial_days_remaining(expired, NOW) == 0


def test_trial_days_only_for_trialing():
    assert trial_days_remaining(_sub(status="active", trial_end=NOW + timedelta(days=5)), NOW) is None
    assert trial_days_remaining(_sub(status="trialing"), NOW) is None
    assert trial_days_remaining(None, NOW) is None


def test_cancel_at_period_end_requires_active_status():
    assert cancel_at_period_end(_sub(cancelled_at=NOW)) is True
    assert cancel_at_period_end(_sub(status="past_due", cancelled_at=NOW)) is False
    assert cancel_at_period_end(_sub()) is False
