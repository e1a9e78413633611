"""
HTTP surface for entitlements, token use and allowance checks.

The authenticated user id is read from ``request.state.user_id``, set by the
auth middleware. The service instance lives on ``app.state.entitlement_service``.
Denials map to 402, transient store failures to 503.
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from .catalog import products_granting
from .errors import TransientStoreError, UnknownFeatureError
from .models import Denied, FeatureType, Invariant, Ok, Outcome, TokenKind, Transient, UsageDecision
from .policy import parse_feature, policy_for
from .service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["entitlements"])


class ConsumeRequest(BaseModel):
    feature: str
    quantity: int = Field(default=1, gt=0)
    use_tokens: bool = False


def get_entitlement_service(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "ENTITLEMENTS_NOT_CONFIGURED", "message": "Entitlement service unavailable"},
        )
    return service


def get_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user_id


def _feature_or_400(feature: str) -> FeatureType:
    try:
        return parse_feature(feature)
    except UnknownFeatureError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict()) from e


def _upsell_options(kind: Optional[TokenKind]) -> list:
    if kind is None:
        return []
    return [product.to_dict() for product in products_granting(kind)]


def _unwrap(outcome: Outcome, *, user_id: str, feature: str, upsell_kind: Optional[TokenKind] = None):
    """Return the Ok value or raise the HTTP error for the outcome."""
    if isinstance(outcome, Ok):
        return outcome.value
    if isinstance(outcome, Denied):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "FEATURE_DENIED",
                "reason": outcome.reason,
                "upsell": outcome.upsell,
                "remaining": outcome.remaining,
                "feature": feature,
                "upsell_options": _upsell_options(upsell_kind),
            },
        )
    if isinstance(outcome, Transient):
        logger.warning("Entitlement operation unavailable", extra={"user_id": user_id, "feature": feature})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "ENTITLEMENTS_UNAVAILABLE", "message": "Please try again", "attempts": outcome.attempts},
        )
    if isinstance(outcome, Invariant):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "LEDGER_INCONSISTENT", "message": "Operation aborted"},
        )
    raise TypeError(f"unexpected outcome: {outcome!r}")


def _decision_dict(decision: UsageDecision) -> dict:
    return {
        "allowed": decision.allowed,
        "remaining": decision.remaining,
        "source": decision.source,
        "reason": decision.reason,
        "upsell": decision.upsell,
    }


@router.get("/entitlements", response_model=dict)
def read_entitlements(
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> dict:
    """Current snapshot. May be up to the cache TTL stale; writes re-check."""
    try:
        return service.get_entitlements(user_id).to_dict()
    except TransientStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e


@router.get("/features/{feature}/check", response_model=dict)
def check_feature(
    feature: str,
    quantity: int = Query(default=1, gt=0),
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> dict:
    feature_type = _feature_or_400(feature)
    try:
        decision = service.can_use(user_id, feature_type, quantity)
    except TransientStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e
    return {"feature": feature_type.value, **_decision_dict(decision)}


@router.post("/features/consume", response_model=dict)
def consume_feature(
    body: ConsumeRequest,
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> dict:
    feature_type = _feature_or_400(body.feature)
    outcome = service.consume(user_id, feature_type, body.quantity, use_tokens=body.use_tokens)
    receipt = _unwrap(
        outcome,
        user_id=user_id,
        feature=feature_type.value,
        upsell_kind=policy_for(feature_type).token_kind,
    )
    return {
        "success": True,
        "feature": receipt.feature.value,
        "quantity": receipt.quantity,
        "source": receipt.source,
        "tokens_used": receipt.tokens_used,
        "token_balance": receipt.token_balance,
        "remaining": receipt.remaining,
    }


@router.post("/tokens/use-shield", response_model=dict)
def use_streak_shield(
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> dict:
    receipt = _unwrap(
        service.use_streak_shield(user_id),
        user_id=user_id,
        feature="streak_shield",
        upsell_kind=TokenKind.STREAK_SHIELD,
    )
    return {"success": True, "source": receipt.source, "remaining": receipt.remaining}


@router.get("/tokens/transactions", response_model=dict)
def list_token_transactions(
    limit: int = Query(default=50, gt=0, le=200),
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> dict:
    try:
        rows = service.list_transactions(user_id, limit=limit)
    except TransientStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e
    return {
        "transactions": [
            {
                "id": row.id,
                "token_type": row.token_type,
                "amount": row.amount,
                "balance_after": row.balance_after,
                "source": row.source,
                "source_reference": row.source_reference,
                "description": row.description,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]
    }


def require_feature(feature: FeatureType, *, consume: bool = False, use_tokens: bool = False) -> Callable:
    """
    Dependency factory gating a route on a metered feature.

    Use on a route: Depends(require_feature(FeatureType.AI_RECIPE, consume=True))
    Without ``consume`` it is a pre-flight check only; the route must consume itself.
    """
    feature = FeatureType(feature)
    policy = policy_for(feature)
    upsell_kind = policy.token_kind if policy else None

    def check_feature_access(
        user_id: str = Depends(get_user_id),
        service: EntitlementService = Depends(get_entitlement_service),
    ):
        if consume:
            return _unwrap(
                service.consume(user_id, feature, 1, use_tokens=use_tokens),
                user_id=user_id,
                feature=feature.value,
                upsell_kind=upsell_kind,
            )
        try:
            decision = service.can_use(user_id, feature)
        except TransientStoreError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e
        if not decision.allowed:
            logger.info(
                "Feature access denied",
                extra={"user_id": user_id, "feature": feature.value, "reason": decision.reason},
            )
            _unwrap(
                Denied(reason=decision.reason or "denied", upsell=decision.upsell, remaining=decision.remaining),
                user_id=user_id,
                feature=feature.value,
                upsell_kind=upsell_kind,
            )
        return decision

    return check_feature_access
