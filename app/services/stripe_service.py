"""
Stripe Service
Thin wrappers over the Stripe SDK for deposits and refunds
"""

import logging
from typing import Optional

import stripe

from ..config import STRIPE_MAX_NETWORK_RETRIES, STRIPE_SECRET_KEY, STRIPE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY
stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES
stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)


def worst_case_call_seconds() -> int:
    """Longest a single wrapper call can block, retries included"""
    return STRIPE_TIMEOUT_SECONDS * (STRIPE_MAX_NETWORK_RETRIES + 1)


def create_payment_intent(
    amount_cents: int, currency: str, metadata: dict, idempotency_key: str
) -> tuple[str, Optional[str]]:
    """Create a PaymentIntent for a booking deposit. Returns (intent id, client secret)."""
    intent = stripe.PaymentIntent.create(
        amount=amount_cents,
        currency=currency.lower(),
        metadata=metadata,
        automatic_payment_methods={"enabled": True},
        idempotency_key=idempotency_key,
    )
    logger.info(f"💰 PaymentIntent {intent.id} created for {amount_cents} {currency}")
    return intent.id, intent.client_secret


def cancel_payment_intent(payment_intent_id: str, idempotency_key: str) -> str:
    """Cancel an uncaptured PaymentIntent so it can never succeed later. Returns its new status."""
    intent = stripe.PaymentIntent.cancel(
        payment_intent_id,
        cancellation_reason="abandoned",
        idempotency_key=idempotency_key,
    )
    logger.info(f"🚫 PaymentIntent {payment_intent_id} cancelled ({intent.status})")
    return intent.status


def create_refund(
    payment_intent_id: str, amount_cents: int, metadata: dict, idempotency_key: str
) -> str:
    """Refund a captured PaymentIntent. Stripe errors propagate to the caller."""
    refund = stripe.Refund.create(
        payment_intent=payment_intent_id,
        amount=amount_cents,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )
    logger.info(f"💸 Refund {refund.id} created for PaymentIntent {payment_intent_id}")
    return refund.id


def find_existing_refund(payment_intent_id: str) -> Optional[str]:
    """Most recent refund already issued against a PaymentIntent, if any"""
    refunds = stripe.Refund.list(payment_intent=payment_intent_id, limit=1)
    data = refunds.data or []
    if not data:
        return None
    return data[0].id
