"""Feature entitlements and token ledger."""

from .models import (
    ConsumeReceipt,
    CreditReceipt,
    Denied,
    Entitlements,
    FeatureLimits,
    FeatureType,
    Invariant,
    Ok,
    Outcome,
    ShieldReceipt,
    SubscriptionStatus,
    SubscriptionUpdate,
    Tier,
    TokenKind,
    TokenSource,
    Transient,
    UsageDecision,
)
from .service import EntitlementService

__all__ = [
    "ConsumeReceipt",
    "CreditReceipt",
    "Denied",
    "EntitlementService",
    "Entitlements",
    "FeatureLimits",
    "FeatureType",
    "Invariant",
    "Ok",
    "Outcome",
    "ShieldReceipt",
    "SubscriptionStatus",
    "SubscriptionUpdate",
    "Tier",
    "TokenKind",
    "TokenSource",
    "Transient",
    "UsageDecision",
]
