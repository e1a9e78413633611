from __future__ import annotations

from dataclasses import replace
from types import MappingProxyType
from typing import Mapping, Optional

from .models import UNLIMITED, FeatureLimits, Tier

FREE_LIMITS = FeatureLimits(
    ai_meal_plans_per_month=2,
    ai_recipe_suggestions_per_month=2,
    barcode_scans_per_day=10,
    pdf_exports_included=0,
    monthly_streak_shields=0,
    achievements_available=5,
    history_retention_days=14,
    food_database_tier="basic",
    data_export_enabled=False,
    family_sharing_slots=0,
)

PRO_LIMITS = FeatureLimits(
    ai_meal_plans_per_month=30,
    ai_recipe_suggestions_per_month=100,
    barcode_scans_per_day=UNLIMITED,
    pdf_exports_included=5,
    monthly_streak_shields=2,
    achievements_available=UNLIMITED,
    history_retention_days=UNLIMITED,
    food_database_tier="premium",
    data_export_enabled=True,
    family_sharing_slots=3,
)


class TierPolicyTable:
    """Tier -> FeatureLimits lookup. Construction fails unless every tier is covered."""

    def __init__(self, limits: Optional[Mapping[Tier, FeatureLimits]] = None) -> None:
        raw = dict(limits) if limits is not None else {Tier.FREE: FREE_LIMITS, Tier.PRO: PRO_LIMITS}
        normalized = {Tier(key): value for key, value in raw.items()}
        missing = [tier.value for tier in Tier if tier not in normalized]
        if missing:
            raise ValueError(f"tier policy table is missing tiers: {', '.join(missing)}")
        for tier, value in normalized.items():
            if not isinstance(value, FeatureLimits):
                raise ValueError(f"limits for tier '{tier.value}' must be FeatureLimits")
        self._limits: Mapping[Tier, FeatureLimits] = MappingProxyType(normalized)

    def get(self, tier: Tier) -> FeatureLimits:
        return self._limits[Tier(tier)]

    def with_overrides(self, tier: Tier, **changes) -> "TierPolicyTable":
        """Copy of the table with some limits of one tier replaced."""
        updated = dict(self._limits)
        updated[Tier(tier)] = replace(updated[Tier(tier)], **changes)
        return TierPolicyTable(updated)

    def as_mapping(self) -> Mapping[Tier, FeatureLimits]:
        return self._limits


DEFAULT_TIER_TABLE = TierPolicyTable()


def get_tier_limits(tier: Tier, table: Optional[TierPolicyTable] = None) -> FeatureLimits:
    return (table or DEFAULT_TIER_TABLE).get(tier)
