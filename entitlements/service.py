from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from .alerts import LedgerAlerts
from .cache import EntitlementCache
from .config import EntitlementSettings
from .database import build_engine, build_session_factory, transaction
from .errors import LedgerInvariantError, TransientStoreError
from .ledger import TokenLedger
from .loader import load_tier_table
from .models import (
    UNLIMITED,
    ConsumeReceipt,
    CreditReceipt,
    DeductResult,
    Denied,
    Entitlements,
    FeatureType,
    Invariant,
    Ok,
    Outcome,
    ShieldReceipt,
    SubscriptionStatus,
    SubscriptionUpdate,
    Tier,
    TokenBalances,
    TokenKind,
    TokenSource,
    Transient,
    UsageDecision,
    UsageSnapshot,
)
from .policy import UNKNOWN_FEATURE_REASON, decide, policy_for, validate_quantity
from .resolver import (
    GRACE_PERIOD_DAYS,
    as_utc,
    cancel_at_period_end,
    is_trial,
    resolve_effective_tier,
    trial_days_remaining,
)
from .retry import RetryConfig, run_with_retry
from .tables import Subscription, TokenBalance, TokenTransaction
from .tiers import DEFAULT_TIER_TABLE, TierPolicyTable
from .usage import UsageCounterStore, usage_day

logger = logging.getLogger(__name__)

NO_STREAK_SHIELDS_REASON = "no_streak_shields"
NO_SUBSCRIPTION_REASON = "no_subscription"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementService:
    """
    Read path (cached snapshot, allowance checks) and transactional write path
    (consume, shields, credits, resets, subscription sync) for one store.

    Every write locks the user's balance row, re-derives state from the store,
    and invalidates the user's cache entries after commit.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        cache: Optional[EntitlementCache] = None,
        tier_table: Optional[TierPolicyTable] = None,
        ledger: Optional[TokenLedger] = None,
        usage_store: Optional[UsageCounterStore] = None,
        retry_config: Optional[RetryConfig] = None,
        alerts: Optional[LedgerAlerts] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tx_timeout_ms: Optional[int] = None,
        grace_period_days: int = GRACE_PERIOD_DAYS,
    ) -> None:
        self._session_factory = session_factory
        self.cache = cache or EntitlementCache()
        self.tier_table = tier_table or DEFAULT_TIER_TABLE
        self.ledger = ledger or TokenLedger()
        self.usage_store = usage_store or UsageCounterStore()
        self._retry_config = retry_config or RetryConfig()
        self.alerts = alerts or LedgerAlerts()
        self._clock = clock or _utcnow
        self._tx_timeout_ms = tx_timeout_ms
        self._grace_period_days = grace_period_days

    @classmethod
    def from_settings(cls, settings: Optional[EntitlementSettings] = None, **kwargs) -> "EntitlementService":
        settings = settings or EntitlementSettings.from_env()
        engine = build_engine(settings.database_url, tx_timeout_ms=settings.tx_timeout_ms)
        tier_table = load_tier_table(settings.tier_config_path) if settings.tier_config_path else None
        kwargs.setdefault("cache", EntitlementCache(settings.redis_url, ttl_seconds=settings.cache_ttl_seconds))
        kwargs.setdefault("tier_table", tier_table)
        kwargs.setdefault("retry_config", RetryConfig(max_attempts=settings.retry_attempts))
        kwargs.setdefault("tx_timeout_ms", settings.tx_timeout_ms)
        kwargs.setdefault("grace_period_days", settings.grace_period_days)
        return cls(session_factory=build_session_factory(engine), **kwargs)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def build_entitlements(self, session: Session, user_id: str, now: Optional[datetime] = None) -> Entitlements:
        """Project the user's entitlements from the store using ``session``."""
        now = now or self._clock()
        today = usage_day(now)

        subscription = session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        balance = session.execute(
            select(TokenBalance)
            .where(TokenBalance.user_id == user_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        meal_plans = self.usage_store.used_this_month(session, user_id, FeatureType.AI_MEAL_PLAN, today)
        recipes = self.usage_store.used_this_month(session, user_id, FeatureType.AI_RECIPE, today)
        scans = self.usage_store.used_today(session, user_id, FeatureType.BARCODE_SCAN, today)

        tier = resolve_effective_tier(
            subscription,
            now,
            grace_period_days=self._grace_period_days,
            on_inconsistency=self.alerts.inconsistency,
        )
        return Entitlements(
            user_id=user_id,
            tier=tier,
            limits=self.tier_table.get(tier),
            usage=UsageSnapshot(
                ai_meal_plans_this_month=meal_plans,
                ai_recipes_this_month=recipes,
                barcode_scans_today=scans,
                pdf_exports_this_month=balance.exports_monthly_used if balance else 0,
                streak_shields_this_month=balance.streak_shields_monthly_used if balance else 0,
            ),
            tokens=TokenBalances(
                generation_tokens=balance.generation_tokens if balance else 0,
                export_tokens=balance.export_tokens if balance else 0,
                streak_shields=balance.streak_shields if balance else 0,
            ),
            is_trial=is_trial(subscription),
            trial_days_remaining=trial_days_remaining(subscription, now),
            subscription_status=subscription.status if subscription else None,
            current_period_end=as_utc(subscription.current_period_end) if subscription else None,
            cancel_at_period_end=cancel_at_period_end(subscription),
            resolved_at=now,
        )

    def get_entitlements(self, user_id: str, *, skip_cache: bool = False) -> Entitlements:
        """Cached snapshot, or a fresh one from the store. Raises TransientStoreError when the store is down."""
        user_id = _require_user_id(user_id)
        if not skip_cache:
            cached = self.cache.get(user_id)
            if cached is not None:
                return cached
        generation = self.cache.generation(user_id)

        def load() -> Entitlements:
            with transaction(self._session_factory, timeout_ms=self._tx_timeout_ms) as session:
                return self.build_entitlements(session, user_id)

        result = run_with_retry(load, config=self._retry_config, operation_name="get_entitlements")
        if isinstance(result, Transient):
            raise TransientStoreError(result.detail, user_id=user_id, details={"attempts": result.attempts})
        self.cache.set(result, generation=generation)
        return result

    def can_use(self, user_id: str, feature: Union[str, FeatureType], quantity: int = 1) -> UsageDecision:
        """Pre-flight check. May be answered from the cache; never a substitute for ``consume``."""
        validate_quantity(quantity)
        return decide(self.get_entitlements(user_id), feature, quantity)

    def list_transactions(self, user_id: str, *, limit: int = 50) -> List[TokenTransaction]:
        user_id = _require_user_id(user_id)

        def load() -> List[TokenTransaction]:
            with transaction(self._session_factory, timeout_ms=self._tx_timeout_ms) as session:
                return self.ledger.list_transactions(session, user_id, limit=limit)

        result = run_with_retry(load, config=self._retry_config, operation_name="list_transactions")
        if isinstance(result, Transient):
            raise TransientStoreError(result.detail, user_id=user_id, details={"attempts": result.attempts})
        return result

    def invalidate(self, user_id: str) -> None:
        self.cache.invalidate(user_id)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def consume(
        self,
        user_id: str,
        feature: Union[str, FeatureType],
        quantity: int = 1,
        *,
        use_tokens: bool = False,
    ) -> Outcome[ConsumeReceipt]:
        """
        Check and record ``quantity`` units of ``feature`` in one transaction.

        The usage counter is incremented first; when the decision says tokens
        pay for it, the deduction follows in the same transaction and a failed
        deduction rolls both back.
        """
        user_id = _require_user_id(user_id)
        validate_quantity(quantity)
        policy = policy_for(feature)
        if policy is None:
            logger.warning("Consume requested for feature without policy", extra={"user_id": user_id, "feature": str(feature)})
            self.alerts.record_denial(user_id, str(feature), UNKNOWN_FEATURE_REASON)
            return Denied(reason=UNKNOWN_FEATURE_REASON)

        def work(session: Session) -> Outcome[ConsumeReceipt]:
            now = self._clock()
            self.ledger.lock_balance(session, user_id)
            entitlements = self.build_entitlements(session, user_id, now)
            decision = decide(entitlements, policy.feature, quantity, prefer_tokens=use_tokens)
            if not decision.allowed:
                session.rollback()
                return self._deny(user_id, policy.feature.value, decision)

            self.usage_store.record_usage(session, user_id, policy.feature, usage_day(now), quantity)

            if decision.source == "tokens":
                result = self.ledger.deduct_tokens(session, user_id, policy.token_kind, quantity)
                if not result.success:
                    raise LedgerInvariantError(
                        "Token deduction failed under row lock after allowance check passed",
                        user_id=user_id,
                        details={
                            "feature": policy.feature.value,
                            "token_type": policy.token_kind.value,
                            "quantity": quantity,
                            "balance": result.balance,
                        },
                    )
                receipt = ConsumeReceipt(
                    feature=policy.feature,
                    quantity=quantity,
                    source="tokens",
                    tokens_used=quantity,
                    token_balance=result.balance,
                    remaining=result.balance,
                )
            elif decision.source == "allowance":
                if policy.period == "included":
                    cap = getattr(entitlements.limits, policy.limit_field)
                    if not self.ledger.increment_monthly_used(session, user_id, "exports_monthly_used", cap, quantity):
                        raise LedgerInvariantError(
                            "Included allowance exhausted under row lock after allowance check passed",
                            user_id=user_id,
                            details={"feature": policy.feature.value, "cap": cap, "quantity": quantity},
                        )
                receipt = ConsumeReceipt(
                    feature=policy.feature,
                    quantity=quantity,
                    source="allowance",
                    remaining=decision.remaining - quantity,
                )
            else:
                receipt = ConsumeReceipt(
                    feature=policy.feature,
                    quantity=quantity,
                    source="unlimited",
                    remaining=UNLIMITED,
                )

            logger.info(
                "Feature consumed",
                extra={
                    "user_id": user_id,
                    "feature": policy.feature.value,
                    "quantity": quantity,
                    "source": receipt.source,
                    "tokens_used": receipt.tokens_used,
                },
            )
            return Ok(receipt)

        return self._execute("consume", user_id, work)

    def use_streak_shield(self, user_id: str) -> Outcome[ShieldReceipt]:
        """Spend one shield: the tier's monthly allowance first, then purchased shields."""
        user_id = _require_user_id(user_id)

        def work(session: Session) -> Outcome[ShieldReceipt]:
            balance = self.ledger.lock_balance(session, user_id)
            entitlements = self.build_entitlements(session, user_id)
            cap = entitlements.limits.monthly_streak_shields
            monthly_used = balance.streak_shields_monthly_used
            purchased = balance.streak_shields

            if monthly_used < cap:
                if not self.ledger.increment_monthly_used(session, user_id, "streak_shields_monthly_used", cap):
                    raise LedgerInvariantError(
                        "Monthly shield allowance changed under row lock",
                        user_id=user_id,
                        details={"cap": cap, "monthly_used": monthly_used},
                    )
                remaining = cap - monthly_used - 1 + purchased
                logger.info("Streak shield used from monthly allowance", extra={"user_id": user_id, "remaining": remaining})
                return Ok(ShieldReceipt(source="allowance", remaining=remaining))

            result = self.ledger.deduct_tokens(session, user_id, TokenKind.STREAK_SHIELD, 1, "Used 1 streak shield")
            if result.success:
                logger.info("Purchased streak shield used", extra={"user_id": user_id, "remaining": result.balance})
                return Ok(ShieldReceipt(source="tokens", remaining=result.balance))

            session.rollback()
            return self._deny(
                user_id,
                "streak_shield",
                UsageDecision(
                    allowed=False,
                    remaining=0,
                    source="none",
                    reason=NO_STREAK_SHIELDS_REASON,
                    upsell="streak_shields",
                ),
            )

        return self._execute("use_streak_shield", user_id, work)

    def add_tokens(
        self,
        user_id: str,
        kind: TokenKind,
        amount: int,
        source: TokenSource,
        reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Outcome[CreditReceipt]:
        user_id = _require_user_id(user_id)

        def work(session: Session) -> Outcome[CreditReceipt]:
            return Ok(self.ledger.add_tokens(session, user_id, kind, amount, source, reference, description))

        return self._execute("add_tokens", user_id, work)

    def deduct_tokens(self, user_id: str, kind: TokenKind, amount: int) -> Outcome[DeductResult]:
        """Direct debit outside of a feature consume, e.g. support corrections."""
        user_id = _require_user_id(user_id)

        def work(session: Session) -> Outcome[DeductResult]:
            self.ledger.lock_balance(session, user_id)
            result = self.ledger.deduct_tokens(session, user_id, kind, amount)
            if not result.success:
                session.rollback()
                return Denied(reason="insufficient_tokens", remaining=result.balance)
            return Ok(result)

        return self._execute("deduct_tokens", user_id, work)

    def reset_monthly_usage(self, user_id: str) -> Outcome[date]:
        user_id = _require_user_id(user_id)

        def work(session: Session) -> Outcome[date]:
            today = usage_day(self._clock())
            self.ledger.reset_monthly_usage(session, user_id, today)
            return Ok(today)

        return self._execute("reset_monthly_usage", user_id, work)

    def users_due_for_monthly_reset(self, *, stale_after_days: int = 31) -> List[str]:
        """Users whose monthly counters have not been reset within ``stale_after_days``."""
        cutoff = usage_day(self._clock()) - timedelta(days=stale_after_days)

        def load() -> List[str]:
            with transaction(self._session_factory, timeout_ms=self._tx_timeout_ms) as session:
                return list(
                    session.execute(
                        select(TokenBalance.user_id)
                        .where(or_(TokenBalance.monthly_reset_date.is_(None), TokenBalance.monthly_reset_date <= cutoff))
                        .order_by(TokenBalance.user_id)
                    ).scalars()
                )

        result = run_with_retry(load, config=self._retry_config, operation_name="users_due_for_monthly_reset")
        if isinstance(result, Transient):
            raise TransientStoreError(result.detail)
        return result

    # ------------------------------------------------------------------
    # Subscription sync
    # ------------------------------------------------------------------

    def sync_subscription(self, update: SubscriptionUpdate) -> Outcome[bool]:
        """
        Upsert the user's subscription from the billing sync.

        Returns Ok(True) when the update is a renewal, which also resets the
        monthly counters.
        """

        def work(session: Session) -> Outcome[bool]:
            self.ledger.lock_balance(session, update.user_id)
            subscription = self._subscription_for_update(session, update.user_id)
            renewed = False
            if subscription is None:
                subscription = Subscription(user_id=update.user_id)
                session.add(subscription)
            else:
                previous_start = as_utc(subscription.current_period_start)
                new_start = as_utc(update.current_period_start)
                renewed = (
                    previous_start is not None
                    and new_start is not None
                    and new_start > previous_start
                    and update.status is SubscriptionStatus.ACTIVE
                )

            subscription.tier = update.tier.value
            subscription.status = update.status.value
            subscription.current_period_start = update.current_period_start
            subscription.current_period_end = update.current_period_end
            subscription.trial_start = update.trial_start
            subscription.trial_end = update.trial_end
            subscription.cancelled_at = update.cancelled_at
            if update.billing_period is not None:
                subscription.billing_period = update.billing_period.value
            if update.processor_customer_id is not None:
                subscription.processor_customer_id = update.processor_customer_id
            if update.processor_subscription_id is not None:
                subscription.processor_subscription_id = update.processor_subscription_id
            session.flush()

            if renewed:
                self.ledger.reset_monthly_usage(session, update.user_id, usage_day(self._clock()))
            logger.info(
                "Subscription synced",
                extra={
                    "user_id": update.user_id,
                    "tier": update.tier.value,
                    "status": update.status.value,
                    "renewed": renewed,
                },
            )
            return Ok(renewed)

        return self._execute("sync_subscription", update.user_id, work)

    def cancel_subscription(self, user_id: str) -> Outcome[datetime]:
        """Mark the subscription as not renewing. Access continues until period end."""
        user_id = _require_user_id(user_id)

        def work(session: Session) -> Outcome[datetime]:
            subscription = self._subscription_for_update(session, user_id)
            if subscription is None:
                session.rollback()
                return Denied(reason=NO_SUBSCRIPTION_REASON)
            if subscription.cancelled_at is None:
                subscription.cancelled_at = self._clock()
            return Ok(as_utc(subscription.cancelled_at))

        return self._execute("cancel_subscription", user_id, work)

    def reactivate_subscription(self, user_id: str) -> Outcome[bool]:
        user_id = _require_user_id(user_id)

        def work(session: Session) -> Outcome[bool]:
            subscription = self._subscription_for_update(session, user_id)
            if subscription is None:
                session.rollback()
                return Denied(reason=NO_SUBSCRIPTION_REASON)
            was_cancelled = subscription.cancelled_at is not None
            subscription.cancelled_at = None
            return Ok(was_cancelled)

        return self._execute("reactivate_subscription", user_id, work)

    def update_subscription_status(
        self,
        user_id: str,
        status: SubscriptionStatus,
        *,
        only_from: Optional[SubscriptionStatus] = None,
    ) -> Outcome[bool]:
        """
        Set the subscription status. With ``only_from`` the change applies only
        when the current status matches; Ok(False) means it was skipped.
        """
        user_id = _require_user_id(user_id)
        status = SubscriptionStatus(status)

        def work(session: Session) -> Outcome[bool]:
            subscription = self._subscription_for_update(session, user_id)
            if subscription is None:
                session.rollback()
                return Denied(reason=NO_SUBSCRIPTION_REASON)
            if only_from is not None and subscription.status != SubscriptionStatus(only_from).value:
                return Ok(False)
            subscription.status = status.value
            logger.info("Subscription status changed", extra={"user_id": user_id, "status": status.value})
            return Ok(True)

        return self._execute("update_subscription_status", user_id, work)

    def expire_subscription(self, user_id: str) -> Outcome[bool]:
        """Transition a lapsed subscription to free/cancelled. The row is kept."""
        user_id = _require_user_id(user_id)

        def work(session: Session) -> Outcome[bool]:
            subscription = self._subscription_for_update(session, user_id)
            if subscription is None:
                session.rollback()
                return Denied(reason=NO_SUBSCRIPTION_REASON)
            subscription.tier = Tier.FREE.value
            subscription.status = SubscriptionStatus.CANCELLED.value
            if subscription.cancelled_at is None:
                subscription.cancelled_at = self._clock()
            return Ok(True)

        return self._execute("expire_subscription", user_id, work)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _subscription_for_update(session: Session, user_id: str) -> Optional[Subscription]:
        return session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _deny(self, user_id: str, feature: str, decision: UsageDecision) -> Denied:
        logger.info(
            "Feature use denied",
            extra={"user_id": user_id, "feature": feature, "reason": decision.reason, "upsell": decision.upsell},
        )
        self.alerts.record_denial(user_id, feature, decision.reason or "denied")
        return Denied(reason=decision.reason or "denied", upsell=decision.upsell, remaining=decision.remaining)

    def _execute(self, name: str, user_id: str, work: Callable[[Session], Outcome]) -> Outcome:
        """Run ``work`` in its own transaction with bounded retries; invalidate the cache on success."""

        def attempt() -> Outcome:
            try:
                with transaction(self._session_factory, timeout_ms=self._tx_timeout_ms) as session:
                    return work(session)
            except LedgerInvariantError as exc:
                self.alerts.inconsistency(
                    exc.error_code,
                    {"user_id": user_id, "operation": name, "detail": exc.message, **exc.details},
                )
                return Invariant(detail=exc.message)

        outcome = run_with_retry(attempt, config=self._retry_config, operation_name=name)
        if isinstance(outcome, Ok):
            self.invalidate(user_id)
        return outcome


def _require_user_id(user_id: str) -> str:
    normalized = str(user_id).strip()
    if not normalized:
        raise ValueError("user_id is required")
    return normalized
