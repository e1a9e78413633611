"""
Handlers for billing events delivered by the payment processor.

Signature verification and payload parsing happen upstream; these functions
receive already-normalized values. Every handler is safe to call more than
once for the same event.
"""

import logging
from typing import Dict

from .catalog import get_product
from .models import CreditReceipt, Denied, Ok, Outcome, SubscriptionStatus, SubscriptionUpdate, TokenSource
from .service import EntitlementService

logger = logging.getLogger(__name__)


def handle_purchase_completed(
    service: EntitlementService,
    user_id: str,
    product_id: str,
    reference: str,
) -> Dict[str, Outcome[CreditReceipt]]:
    """
    Credit every token kind in the purchased pack.

    ``reference`` is the processor's checkout/session id. A redelivered event
    with the same reference credits nothing.
    """
    if not str(reference).strip():
        raise ValueError("reference is required for purchase credits")
    product = get_product(product_id)

    results: Dict[str, Outcome[CreditReceipt]] = {}
    for kind, amount in product.tokens.items():
        outcome = service.add_tokens(
            user_id,
            kind,
            amount,
            TokenSource.PURCHASE,
            reference=reference,
            description=f"Purchased {product.name}",
        )
        results[kind.value] = outcome
        if isinstance(outcome, Ok) and outcome.value.duplicate:
            logger.info(
                "Duplicate purchase event ignored",
                extra={"user_id": user_id, "product_id": product.product_id, "reference": reference},
            )
        elif not isinstance(outcome, Ok):
            logger.error(
                "Purchase credit failed",
                extra={"user_id": user_id, "product_id": product.product_id, "outcome": outcome.kind},
            )
    return results


def handle_subscription_updated(service: EntitlementService, update: SubscriptionUpdate) -> Outcome[bool]:
    """Created/updated subscription. A renewal also resets the monthly counters."""
    return service.sync_subscription(update)


def handle_subscription_deleted(service: EntitlementService, user_id: str) -> Outcome[bool]:
    outcome = service.expire_subscription(user_id)
    if isinstance(outcome, Denied):
        logger.warning("Subscription deleted for unknown user", extra={"user_id": user_id})
    return outcome


def handle_payment_failed(service: EntitlementService, user_id: str) -> Outcome[bool]:
    """Failed renewal: the grace period starts counting from the period end."""
    return service.update_subscription_status(user_id, SubscriptionStatus.PAST_DUE)


def handle_invoice_paid(service: EntitlementService, user_id: str) -> Outcome[bool]:
    """Recovered payment returns a past_due subscription to active."""
    return service.update_subscription_status(
        user_id,
        SubscriptionStatus.ACTIVE,
        only_from=SubscriptionStatus.PAST_DUE,
    )
