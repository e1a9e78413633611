"""
Entitlement and ledger errors.

Denials are not errors: they are returned as ``Denied`` outcomes. The classes
here cover the failures that abort an operation.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """Base class for entitlement engine errors."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str, *, user_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.user_id is not None:
            payload["user_id"] = self.user_id
        if self.details:
            payload["details"] = self.details
        return payload


class UnknownFeatureError(EntitlementError):
    """Raised when a feature name does not map to a known feature kind."""

    error_code = "UNKNOWN_FEATURE"

    def __init__(self, feature: str):
        super().__init__(f"Unknown feature: {feature!r}", details={"feature": feature})
        self.feature = feature


class UnknownProductError(EntitlementError):
    error_code = "UNKNOWN_PRODUCT"

    def __init__(self, product_id: str):
        super().__init__(f"Unknown token product: {product_id!r}", details={"product_id": product_id})
        self.product_id = product_id


class TransientStoreError(EntitlementError):
    """The store could not complete the operation; safe to retry."""

    error_code = "ENTITLEMENTS_STORE_UNAVAILABLE"


class LedgerInvariantError(EntitlementError):
    """
    A should-not-happen ledger state was observed inside a transaction.

    Raising it aborts the surrounding transaction. It is never clamped or
    silently corrected.
    """

    error_code = "LEDGER_INVARIANT_VIOLATION"


class TierConfigError(EntitlementError, ValueError):
    error_code = "TIER_CONFIG_INVALID"
