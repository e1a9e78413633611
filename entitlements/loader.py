from __future__ import annotations

import json
from dataclasses import fields, replace
from pathlib import Path
from threading import RLock
from typing import Dict

from .errors import TierConfigError
from .models import FeatureLimits, Tier
from .tiers import DEFAULT_TIER_TABLE, TierPolicyTable

_LIMIT_FIELDS = frozenset(f.name for f in fields(FeatureLimits))


class TierConfigLoader:
    """Loads tier limit overrides from a JSON file with reload support.

    File shape::

        {"tiers": {"free": {"ai_recipe_suggestions_per_month": 3}, "pro": {}}}

    Every tier must be present. Fields left out keep their built-in value.
    """

    def __init__(self, config_path: str) -> None:
        self._config_path = Path(config_path)
        self._lock = RLock()
        self._table: TierPolicyTable
        self.reload()

    def reload(self) -> None:
        raw = self._read_config_file()
        parsed = self._parse_config(raw)
        with self._lock:
            self._table = parsed

    @property
    def table(self) -> TierPolicyTable:
        with self._lock:
            return self._table

    def _read_config_file(self) -> dict:
        try:
            with self._config_path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except json.JSONDecodeError as exc:
            raise TierConfigError(f"{self._config_path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise TierConfigError(f"{self._config_path} must contain a top-level object")
        return raw

    @staticmethod
    def _parse_config(raw: dict) -> TierPolicyTable:
        tiers_raw = raw.get("tiers")
        if not isinstance(tiers_raw, dict):
            raise TierConfigError("tier config must include an object field named 'tiers'")

        limits: Dict[Tier, FeatureLimits] = {}
        for tier_key, tier_data in tiers_raw.items():
            normalized_key = str(tier_key).strip()
            try:
                tier = Tier(normalized_key)
            except ValueError:
                raise TierConfigError(f"unknown tier: {tier_key!r}") from None
            if not isinstance(tier_data, dict):
                raise TierConfigError(f"tier '{normalized_key}' must be an object")

            unknown = set(tier_data) - _LIMIT_FIELDS
            if unknown:
                raise TierConfigError(
                    f"tier '{normalized_key}' has unknown limit keys: {', '.join(sorted(unknown))}"
                )
            try:
                limits[tier] = replace(DEFAULT_TIER_TABLE.get(tier), **tier_data)
            except ValueError as exc:
                raise TierConfigError(f"tier '{normalized_key}': {exc}") from exc

        missing = [tier.value for tier in Tier if tier not in limits]
        if missing:
            raise TierConfigError(f"tier config is missing tiers: {', '.join(missing)}")

        return TierPolicyTable(limits)


def load_tier_table(path: str) -> TierPolicyTable:
    """One-shot read of a tier config file."""
    return TierConfigLoader(path).table
