"""
Per-feature allowance policies and the pure allow/deny decision.

Every ``FeatureType`` has an explicit ``FeaturePolicy``. A feature without one
is denied.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal, Mapping, Optional, Union

from .errors import UnknownFeatureError
from .models import UNLIMITED, Entitlements, FeatureType, Tier, TokenKind, UsageDecision

logger = logging.getLogger(__name__)

QuotaPeriod = Literal["monthly", "daily", "included"]

UNKNOWN_FEATURE_REASON = "unknown_feature"
INSUFFICIENT_TOKENS_REASON = "insufficient_tokens"


@dataclass(frozen=True)
class FeaturePolicy:
    """
    How one feature is metered.

    ``limit_field`` names the FeatureLimits attribute holding the allowance and
    ``usage_field`` the UsageSnapshot attribute holding what has been used in
    the current period. ``token_kind`` is the purchasable fallback, if any.
    """

    feature: FeatureType
    period: QuotaPeriod
    limit_field: str
    usage_field: str
    token_kind: Optional[TokenKind]
    denial_reason: str
    free_upsell: Optional[str]
    pro_upsell: Optional[str]

    def upsell_for(self, tier: Tier) -> Optional[str]:
        return self.free_upsell if tier is Tier.FREE else self.pro_upsell


FEATURE_POLICIES: Mapping[FeatureType, FeaturePolicy] = MappingProxyType(
    {
        FeatureType.AI_MEAL_PLAN: FeaturePolicy(
            feature=FeatureType.AI_MEAL_PLAN,
            period="monthly",
            limit_field="ai_meal_plans_per_month",
            usage_field="ai_meal_plans_this_month",
            token_kind=TokenKind.GENERATION,
            denial_reason="ai_meal_plan_limit_reached",
            free_upsell="pro_or_tokens",
            pro_upsell="tokens",
        ),
        FeatureType.AI_RECIPE: FeaturePolicy(
            feature=FeatureType.AI_RECIPE,
            period="monthly",
            limit_field="ai_recipe_suggestions_per_month",
            usage_field="ai_recipes_this_month",
            token_kind=TokenKind.GENERATION,
            denial_reason="ai_recipe_limit_reached",
            free_upsell="pro_or_tokens",
            pro_upsell="tokens",
        ),
        FeatureType.BARCODE_SCAN: FeaturePolicy(
            feature=FeatureType.BARCODE_SCAN,
            period="daily",
            limit_field="barcode_scans_per_day",
            usage_field="barcode_scans_today",
            token_kind=None,
            denial_reason="barcode_scan_limit_reached",
            free_upsell="pro",
            pro_upsell="pro",
        ),
        FeatureType.PDF_EXPORT: FeaturePolicy(
            feature=FeatureType.PDF_EXPORT,
            period="included",
            limit_field="pdf_exports_included",
            usage_field="pdf_exports_this_month",
            token_kind=TokenKind.EXPORT,
            denial_reason="no_export_tokens",
            free_upsell="pro_or_export_tokens",
            pro_upsell="export_tokens",
        ),
    }
)


def parse_feature(value: Union[str, FeatureType]) -> FeatureType:
    try:
        return FeatureType(value)
    except ValueError:
        raise UnknownFeatureError(str(value)) from None


def validate_quantity(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer, got {quantity!r}")
    return quantity


def policy_for(feature: Union[str, FeatureType]) -> Optional[FeaturePolicy]:
    try:
        return FEATURE_POLICIES.get(FeatureType(feature))
    except ValueError:
        return None


def decide(
    entitlements: Entitlements,
    feature: Union[str, FeatureType],
    quantity: int = 1,
    *,
    prefer_tokens: bool = False,
) -> UsageDecision:
    """
    Allowance first, then the feature's token balance.

    With ``prefer_tokens`` the request is paid from tokens only, for callers
    that explicitly asked to spend tokens.
    """
    validate_quantity(quantity)
    policy = policy_for(feature)
    if policy is None:
        logger.warning(
            "No policy for feature, denying",
            extra={"user_id": entitlements.user_id, "feature": str(feature)},
        )
        return UsageDecision(allowed=False, remaining=0, source="none", reason=UNKNOWN_FEATURE_REASON)

    if prefer_tokens and policy.token_kind is not None:
        balance = entitlements.tokens.balance_for(policy.token_kind)
        if balance >= quantity:
            return UsageDecision(allowed=True, remaining=balance, source="tokens")
        return UsageDecision(
            allowed=False,
            remaining=0,
            source="none",
            reason=INSUFFICIENT_TOKENS_REASON,
            upsell=policy.upsell_for(entitlements.tier),
        )

    limit = getattr(entitlements.limits, policy.limit_field)
    if limit == UNLIMITED:
        return UsageDecision(allowed=True, remaining=UNLIMITED, source="unlimited")

    used = getattr(entitlements.usage, policy.usage_field)
    remaining = max(0, limit - used)
    if remaining >= quantity:
        return UsageDecision(allowed=True, remaining=remaining, source="allowance")

    if policy.token_kind is not None:
        balance = entitlements.tokens.balance_for(policy.token_kind)
        if balance >= quantity:
            return UsageDecision(allowed=True, remaining=balance, source="tokens")

    return UsageDecision(
        allowed=False,
        remaining=0,
        source="none",
        reason=policy.denial_reason,
        upsell=policy.upsell_for(entitlements.tier),
    )


def check_allowance(
    entitlements: Entitlements, feature: Union[str, FeatureType], quantity: int = 1
) -> UsageDecision:
    return decide(entitlements, feature, quantity)
