"""
Idempotent refunds.

Three independent guards keep a cancellation from refunding twice:
a stored refund id short-circuits, the Stripe idempotency key is derived
from the appointment id, and an "already refunded" error reuses the refund
Stripe already holds.
"""

import logging

import stripe

from ...models import Appointment, Payment
from ...services import stripe_service

logger = logging.getLogger(__name__)


class RefundError(Exception):
    """Refund failure carrying a message that is safe to show the customer"""

    def __init__(self, user_message: str):
        super().__init__(user_message)
        self.user_message = user_message


def refund_idempotency_key(appointment_id: int) -> str:
    return f"refund-{appointment_id}"


def _is_already_refunded(error: stripe.InvalidRequestError) -> bool:
    if getattr(error, "code", None) == "charge_already_refunded":
        return True
    return "already been refunded" in str(error).lower()


def issue_refund(appointment: Appointment, payment: Payment, reason: str = "customer_cancellation") -> str:
    """Refund the full captured amount and return the Stripe refund id"""
    if payment.stripe_refund_id:
        logger.info(
            f"↩️ Appointment {appointment.id} already refunded ({payment.stripe_refund_id}), reusing"
        )
        return payment.stripe_refund_id

    if not payment.stripe_payment_intent_id:
        raise RefundError("Payment intent not found")

    try:
        return stripe_service.create_refund(
            payment_intent_id=payment.stripe_payment_intent_id,
            amount_cents=payment.amount_cents,
            metadata={"appointmentId": str(appointment.id), "reason": reason},
            idempotency_key=refund_idempotency_key(appointment.id),
        )
    except stripe.InvalidRequestError as e:
        if _is_already_refunded(e):
            existing = stripe_service.find_existing_refund(payment.stripe_payment_intent_id)
            if existing:
                logger.info(f"↩️ Stripe reports appointment {appointment.id} refunded as {existing}")
                return existing
        logger.error(f"❌ Invalid refund request for appointment {appointment.id}: {e}")
        raise RefundError(f"Invalid refund request: {e.user_message or str(e)}") from e
    except stripe.RateLimitError as e:
        logger.warning(f"⚠️ Stripe rate limited refund for appointment {appointment.id}")
        raise RefundError("Too many requests. Please try again in a moment.") from e
    except stripe.CardError as e:
        logger.error(f"❌ Card refund failed for appointment {appointment.id}: {e}")
        raise RefundError("Card refund failed. Please contact support.") from e
    except stripe.StripeError as e:
        logger.error(f"❌ Refund failed for appointment {appointment.id}: {e}")
        raise RefundError(f"Refund failed: {e.user_message or str(e)}") from e
