from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, Literal, Optional, TypeVar, Union

UNLIMITED = -1

DecisionSource = Literal["allowance", "tokens", "unlimited", "none"]
FoodDatabaseTier = Literal["basic", "premium"]

T = TypeVar("T")


class Tier(str, enum.Enum):
    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class BillingPeriod(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class FeatureType(str, enum.Enum):
    """Metered features. Every member must have a policy in ``policy.FEATURE_POLICIES``."""

    AI_MEAL_PLAN = "ai_meal_plan"
    AI_RECIPE = "ai_recipe"
    BARCODE_SCAN = "barcode_scan"
    PDF_EXPORT = "pdf_export"


class TokenKind(str, enum.Enum):
    """Purchasable token kinds. Values double as balance column names."""

    GENERATION = "generation_tokens"
    EXPORT = "export_tokens"
    STREAK_SHIELD = "streak_shields"


class TokenSource(str, enum.Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    REWARD = "reward"
    USAGE = "usage"
    REFUND = "refund"


@dataclass(frozen=True)
class FeatureLimits:
    """Numeric limits for a tier. ``UNLIMITED`` (-1) disables a cap."""

    ai_meal_plans_per_month: int
    ai_recipe_suggestions_per_month: int
    barcode_scans_per_day: int
    pdf_exports_included: int
    monthly_streak_shields: int
    achievements_available: int
    history_retention_days: int
    food_database_tier: FoodDatabaseTier = "basic"
    data_export_enabled: bool = False
    family_sharing_slots: int = 0

    def __post_init__(self) -> None:
        for name in (
            "ai_meal_plans_per_month",
            "ai_recipe_suggestions_per_month",
            "barcode_scans_per_day",
            "pdf_exports_included",
            "monthly_streak_shields",
            "achievements_available",
            "history_retention_days",
            "family_sharing_slots",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
            if value < UNLIMITED:
                raise ValueError(f"{name} must be >= -1, got {value}")
        if self.food_database_tier not in ("basic", "premium"):
            raise ValueError("food_database_tier must be one of: basic, premium")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UsageSnapshot:
    ai_meal_plans_this_month: int = 0
    ai_recipes_this_month: int = 0
    barcode_scans_today: int = 0
    pdf_exports_this_month: int = 0
    streak_shields_this_month: int = 0


@dataclass(frozen=True)
class TokenBalances:
    generation_tokens: int = 0
    export_tokens: int = 0
    streak_shields: int = 0

    def balance_for(self, kind: TokenKind) -> int:
        return int(getattr(self, TokenKind(kind).value))


@dataclass(frozen=True)
class Entitlements:
    """Point-in-time projection of a user's tier, limits, usage and balances."""

    user_id: str
    tier: Tier
    limits: FeatureLimits
    usage: UsageSnapshot = field(default_factory=UsageSnapshot)
    tokens: TokenBalances = field(default_factory=TokenBalances)
    is_trial: bool = False
    trial_days_remaining: Optional[int] = None
    subscription_status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "tier", Tier(self.tier))
        if self.subscription_status is not None:
            object.__setattr__(self, "subscription_status", SubscriptionStatus(self.subscription_status))

    @property
    def is_pro(self) -> bool:
        return self.tier is Tier.PRO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "is_trial": self.is_trial,
            "trial_days_remaining": self.trial_days_remaining,
            "subscription_status": self.subscription_status.value if self.subscription_status else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "limits": self.limits.to_dict(),
            "usage": asdict(self.usage),
            "tokens": asdict(self.tokens),
            "resolved_at": self.resolved_at.isoformat(),
        }


@dataclass(frozen=True)
class SubscriptionUpdate:
    """Normalized subscription state delivered by the billing sync."""

    user_id: str
    tier: Tier
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    billing_period: Optional[BillingPeriod] = None
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "tier", Tier(self.tier))
        object.__setattr__(self, "status", SubscriptionStatus(self.status))
        if self.billing_period is not None:
            object.__setattr__(self, "billing_period", BillingPeriod(self.billing_period))


@dataclass(frozen=True)
class UsageDecision:
    """Answer to "may this user use ``quantity`` units of a feature right now"."""

    allowed: bool
    remaining: int
    source: DecisionSource
    reason: Optional[str] = None
    upsell: Optional[str] = None


@dataclass(frozen=True)
class ConsumeReceipt:
    feature: FeatureType
    quantity: int
    source: DecisionSource
    tokens_used: int = 0
    token_balance: Optional[int] = None
    remaining: int = 0


@dataclass(frozen=True)
class ShieldReceipt:
    source: DecisionSource
    remaining: int


@dataclass(frozen=True)
class CreditReceipt:
    kind: TokenKind
    amount: int
    balance: int
    duplicate: bool = False


@dataclass(frozen=True)
class DeductResult:
    success: bool
    balance: int


# Operation outcomes. Callers branch on ``kind`` (or isinstance) and must
# handle all four; a Transient is never a denial.


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    kind: Literal["ok"] = "ok"

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    reason: str
    upsell: Optional[str] = None
    remaining: int = 0
    kind: Literal["denied"] = "denied"

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class Transient:
    detail: str
    attempts: int = 1
    kind: Literal["transient"] = "transient"

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class Invariant:
    detail: str
    kind: Literal["invariant"] = "invariant"

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Ok[T], Denied, Transient, Invariant]
