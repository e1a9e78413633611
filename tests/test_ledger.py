from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from entitlements.database import transaction
from entitlements.ledger import TokenLedger
from entitlements.models import FeatureType, TokenKind, TokenSource
from entitlements.tables import TokenBalance, TokenTransaction
from entitlements.usage import UsageCounterStore, month_start, usage_day


def _count(session_factory, model, **filters):
    with transaction(session_factory) as session:
        query = select(func.count()).select_from(model)
        for name, value in filters.items():
            query = query.where(getattr(model, name) == value)
        return session.execute(query).scalar_one()


# =============================================================================
# Balance rows
# =============================================================================


def test_get_or_create_is_idempotent(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        first = ledger.get_or_create(session, "user-1")
        second = ledger.get_or_create(session, "user-1", lock=True)
        assert first.id == second.id
        assert (first.generation_tokens, first.export_tokens, first.streak_shields) == (0, 0, 0)

    assert _count(session_factory, TokenBalance, user_id="user-1") == 1


def test_add_tokens_records_resulting_balance(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        ledger.add_tokens(session, "user-1", TokenKind.GENERATION, 5, TokenSource.PURCHASE, reference="cs_1")
        receipt = ledger.add_tokens(session, "user-1", TokenKind.GENERATION, 3, TokenSource.REWARD, reference="r_1")

    assert receipt.balance == 8
    assert receipt.duplicate is False
    with transaction(session_factory) as session:
        rows = ledger.list_transactions(session, "user-1")
        assert sorted(row.balance_after for row in rows) == [5, 8]
        assert {row.source for row in rows} == {"purchase", "reward"}


def test_add_tokens_same_reference_credits_once(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        ledger.add_tokens(session, "user-1", TokenKind.EXPORT, 5, TokenSource.PURCHASE, reference="cs_dup")
    with transaction(session_factory) as session:
        replay = ledger.add_tokens(session, "user-1", TokenKind.EXPORT, 5, TokenSource.PURCHASE, reference="cs_dup")

    assert replay.duplicate is True
    assert replay.balance == 5
    with transaction(session_factory) as session:
        assert ledger.balance_of(session, "user-1", TokenKind.EXPORT) == 5
    assert _count(session_factory, TokenTransaction, user_id="user-1") == 1


def test_same_reference_for_different_token_kinds_is_not_a_duplicate(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        ledger.add_tokens(session, "user-1", TokenKind.EXPORT, 1, TokenSource.PURCHASE, reference="cs_bundle")
        receipt = ledger.add_tokens(session, "user-1", TokenKind.STREAK_SHIELD, 3, TokenSource.PURCHASE, reference="cs_bundle")

    assert receipt.duplicate is False
    assert receipt.balance == 3


def test_add_tokens_rejects_usage_source_and_bad_amounts(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        with pytest.raises(ValueError, match="usage"):
            ledger.add_tokens(session, "user-1", TokenKind.GENERATION, 1, TokenSource.USAGE)
        with pytest.raises(ValueError, match="positive"):
            ledger.add_tokens(session, "user-1", TokenKind.GENERATION, 0, TokenSource.REWARD)


def test_deduct_tokens_insufficient_writes_nothing(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        ledger.add_tokens(session, "user-1", TokenKind.GENERATION, 2, TokenSource.REWARD, reference="r_1")

    with transaction(session_factory) as session:
        result = ledger.deduct_tokens(session, "user-1", TokenKind.GENERATION, 3)

    assert result.success is False
    assert result.balance == 2
    assert _count(session_factory, TokenTransaction, user_id="user-1", source="usage") == 0


def test_deduct_tokens_for_unknown_user_does_not_create_rows(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        result = ledger.deduct_tokens(session, "ghost", TokenKind.EXPORT, 1)

    assert (result.success, result.balance) == (False, 0)
    assert _count(session_factory, TokenBalance, user_id="ghost") == 0


def test_deduct_tokens_appends_usage_transaction(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        ledger.add_tokens(session, "user-1", TokenKind.GENERATION, 4, TokenSource.REWARD, reference="r_1")
        result = ledger.deduct_tokens(session, "user-1", TokenKind.GENERATION, 3)

    assert (result.success, result.balance) == (True, 1)
    with transaction(session_factory) as session:
        debit = session.execute(
            select(TokenTransaction).where(TokenTransaction.source == "usage")
        ).scalar_one()
        balance = ledger.get_or_create(session, "user-1")
        assert (debit.amount, debit.balance_after) == (-3, 1)
        assert balance.generation_tokens_monthly_used == 3


def test_increment_monthly_used_respects_cap(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        ledger.get_or_create(session, "user-1")
        assert ledger.increment_monthly_used(session, "user-1", "streak_shields_monthly_used", cap=2) is True
        assert ledger.increment_monthly_used(session, "user-1", "streak_shields_monthly_used", cap=2) is True
        assert ledger.increment_monthly_used(session, "user-1", "streak_shields_monthly_used", cap=2) is False

    with pytest.raises(ValueError, match="not a monthly counter"):
        with transaction(session_factory) as session:
            ledger.increment_monthly_used(session, "user-1", "streak_shields", cap=10)


def test_reset_monthly_usage_zeroes_counters_and_stamps_date(session_factory):
    ledger = TokenLedger()
    with transaction(session_factory) as session:
        ledger.get_or_create(session, "user-1")
        ledger.increment_monthly_used(session, "user-1", "exports_monthly_used", cap=5, quantity=3)
        ledger.reset_monthly_usage(session, "user-1", date(2026, 4, 1))

    with transaction(session_factory) as session:
        balance = ledger.get_or_create(session, "user-1")
        assert balance.exports_monthly_used == 0
        assert balance.monthly_reset_date == date(2026, 4, 1)


# =============================================================================
# Usage counters
# =============================================================================


def test_record_usage_is_additive_per_day(session_factory):
    store = UsageCounterStore()
    day = date(2026, 3, 15)
    with transaction(session_factory) as session:
        store.record_usage(session, "user-1", FeatureType.BARCODE_SCAN, day, 2)
        store.record_usage(session, "user-1", FeatureType.BARCODE_SCAN, day, 3)

    with transaction(session_factory) as session:
        assert store.used_today(session, "user-1", FeatureType.BARCODE_SCAN, day) == 5


def test_sum_usage_covers_month_to_date_only(session_factory):
    store = UsageCounterStore()
    with transaction(session_factory) as session:
        store.record_usage(session, "user-1", FeatureType.AI_RECIPE, date(2026, 2, 28), 4)
        store.record_usage(session, "user-1", FeatureType.AI_RECIPE, date(2026, 3, 1), 1)
        store.record_usage(session, "user-1", FeatureType.AI_RECIPE, date(2026, 3, 14), 2)
        store.record_usage(session, "user-1", FeatureType.AI_MEAL_PLAN, date(2026, 3, 14), 7)

    with transaction(session_factory) as session:
        assert store.used_this_month(session, "user-1", FeatureType.AI_RECIPE, date(2026, 3, 15)) == 3
        assert store.used_this_month(session, "user-2", FeatureType.AI_RECIPE, date(2026, 3, 15)) == 0


def test_calendar_helpers_use_utc():
    assert month_start(date(2026, 3, 31)) == date(2026, 3, 1)
    late_evening_west = datetime(2026, 3, 31, 22, 0, tzinfo=timezone(timedelta(hours=-5)))
    assert usage_day(late_evening_west) == date(2026, 4, 1)
