"""
Booking creation

The one path that creates appointments, for direct bookings and for slots
won through slot recovery alike. The live shop policy is read here and only
here; it is snapshotted onto the appointment before anything else happens.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import APP_URL
from ...models import Appointment, CustomerScore, Payment, Shop
from ...services import stripe_service
from ..appointments.audit import record_event
from ..appointments.constants import (
    CANCELLED_BY_SYSTEM,
    EVENT_CREATED,
    INTENT_FAILED,
    INTENT_PROCESSING,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_UNPAID,
    SOURCE_WEB,
    STATUS_BOOKED,
    STATUS_CANCELLED,
    STATUS_PENDING,
)
from ..appointments.policy_snapshot import derive_payment_requirement, snapshot_policy
from ..no_show.service import NoShowService

logger = logging.getLogger(__name__)


class SlotTakenError(Exception):
    """Raised when another live appointment already holds the shop's time slot"""

    pass


class PaymentSetupError(Exception):
    """Raised when the deposit PaymentIntent could not be created"""

    pass


@dataclass
class BookingResult:
    appointment: Appointment
    payment: Optional[Payment]
    payment_required: bool
    amount_cents: int
    currency: str
    client_secret: Optional[str] = None


def payment_link(appointment_id: int) -> str:
    return f"{APP_URL.rstrip('/')}/pay/{appointment_id}"


def get_customer_tier(db: Session, customer_id: int, shop_id: int) -> Optional[str]:
    score = (
        db.query(CustomerScore)
        .filter(CustomerScore.customer_id == customer_id, CustomerScore.shop_id == shop_id)
        .first()
    )
    return score.tier if score else None


def create_appointment(
    db: Session,
    *,
    shop_id: int,
    customer_id: int,
    starts_at: datetime,
    ends_at: datetime,
    source: str = SOURCE_WEB,
    source_slot_opening_id: Optional[int] = None,
) -> BookingResult:
    """
    Create an appointment with its policy snapshot, audit event and (when a
    deposit is due) a payment row plus Stripe PaymentIntent.

    Raises:
        SlotTakenError: a pending/booked appointment already holds this slot
        PaymentSetupError: Stripe refused to create the PaymentIntent
    """
    tier = get_customer_tier(db, customer_id, shop_id)

    try:
        policy_version, pricing = snapshot_policy(db, shop_id, tier)
        payment_required, amount_cents = derive_payment_requirement(
            pricing.payment_mode, pricing.deposit_amount_cents
        )

        shop = db.get(Shop, shop_id)
        scored_at = datetime.utcnow()
        no_show_score, no_show_risk = NoShowService(db).score_booking(
            customer_id,
            shop_id,
            starts_at,
            shop.timezone if shop else "UTC",
            payment_required,
            now=scored_at,
        )

        appointment = Appointment(
            shop_id=shop_id,
            customer_id=customer_id,
            policy_version_id=policy_version.id,
            starts_at=starts_at,
            ends_at=ends_at,
            status=STATUS_PENDING if payment_required else STATUS_BOOKED,
            payment_required=payment_required,
            payment_status=PAYMENT_PENDING if payment_required else PAYMENT_UNPAID,
            source=source,
            source_slot_opening_id=source_slot_opening_id,
            no_show_score=no_show_score,
            no_show_risk=no_show_risk,
            no_show_computed_at=scored_at,
        )
        db.add(appointment)
        db.flush()

        payment = None
        if payment_required:
            payment = Payment(
                shop_id=shop_id,
                appointment_id=appointment.id,
                provider="stripe",
                amount_cents=amount_cents,
                currency=policy_version.currency,
                status=INTENT_PROCESSING,
                attempts=0,
            )
            db.add(payment)
            db.flush()

        record_event(
            db,
            appointment_id=appointment.id,
            shop_id=shop_id,
            event_type=EVENT_CREATED,
            meta={
                "policyVersionId": policy_version.id,
                "paymentRequired": payment_required,
                "amountCents": amount_cents,
                "source": source,
                "tier": pricing.applied_tier,
            },
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"⚠️ Slot {starts_at.isoformat()} already booked for shop {shop_id}")
        raise SlotTakenError("Slot is already taken") from e

    db.refresh(appointment)
    logger.info(
        f"✅ Appointment {appointment.id} created (shop={shop_id}, customer={customer_id}, "
        f"source={source}, payment_required={payment_required})"
    )

    result = BookingResult(
        appointment=appointment,
        payment=payment,
        payment_required=payment_required,
        amount_cents=amount_cents,
        currency=policy_version.currency,
    )
    if payment is not None:
        result.client_secret = _attach_payment_intent(db, appointment, payment, policy_version.id)
    return result


def _attach_payment_intent(
    db: Session, appointment: Appointment, payment: Payment, policy_version_id: int
) -> Optional[str]:
    try:
        intent_id, client_secret = stripe_service.create_payment_intent(
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            metadata={
                "appointmentId": str(appointment.id),
                "shopId": str(appointment.shop_id),
                "policyVersionId": str(policy_version_id),
            },
            idempotency_key=f"payment-intent-{appointment.id}",
        )
    except Exception as e:
        logger.error(f"❌ PaymentIntent creation failed for appointment {appointment.id}: {e}")
        payment.status = INTENT_FAILED
        appointment.payment_status = PAYMENT_FAILED
        appointment.status = STATUS_CANCELLED
        appointment.cancelled_at = datetime.utcnow()
        appointment.cancellation_source = CANCELLED_BY_SYSTEM
        db.commit()
        raise PaymentSetupError("Could not start payment") from e

    payment.stripe_payment_intent_id = intent_id
    payment.client_secret = client_secret
    db.commit()
    return client_secret


def void_payment_intent(appointment_id: int, payment_intent_id: Optional[str]) -> bool:
    """
    Cancel the deposit intent of an appointment the system gave up on, so a
    late card retry cannot capture money for a slot that is no longer held.
    Best effort: a capture that still slips through is refunded by the webhook.
    """
    if not payment_intent_id:
        return False
    try:
        stripe_service.cancel_payment_intent(
            payment_intent_id, idempotency_key=f"cancel-intent-{appointment_id}"
        )
    except stripe.StripeError as e:
        logger.warning(
            f"⚠️ Could not cancel PaymentIntent {payment_intent_id} for appointment {appointment_id}: {e}"
        )
        return False
    return True
