"""
Stripe Webhook Handler
Mirrors PaymentIntent status onto payments and appointments
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..config import STRIPE_WEBHOOK_SECRET
from ..database import get_db
from ..domain.bookings.service import void_payment_intent
from ..models import Appointment, Customer, Payment, Shop
from ..services import message_log, messages
from ..services.job_queue import trigger_offer_loop
from ..services.stripe_webhook_service import StripeWebhookService
from ..services.twilio_service import NotificationError
from ..webhook_security import verify_stripe_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["webhooks"])


async def send_booking_confirmation(db: Session, appointment_id: int) -> None:
    """Best-effort confirmation SMS once a deposit is captured, at most once per appointment"""
    row = (
        db.query(Appointment, Customer, Shop, Payment)
        .join(Customer, Customer.id == Appointment.customer_id)
        .join(Shop, Shop.id == Appointment.shop_id)
        .outerjoin(Payment, Payment.appointment_id == Appointment.id)
        .filter(Appointment.id == appointment_id)
        .first()
    )
    if not row:
        return
    appointment, customer, shop, payment = row
    if not customer.sms_opt_in or not customer.phone:
        logger.debug(f"Customer {customer.id} not opted in to SMS, skipping confirmation")
        return

    body = messages.booking_confirmation_message(
        shop.name,
        appointment.starts_at,
        shop.timezone,
        payment.amount_cents if payment else 0,
        payment.currency if payment else "USD",
    )
    try:
        await message_log.send_logged_sms(
            db,
            shop_id=appointment.shop_id,
            customer_id=customer.id,
            to_phone=customer.phone,
            body=body,
            purpose=message_log.PURPOSE_BOOKING_CONFIRMATION,
            appointment_id=appointment.id,
            once_key=message_log.dedup_key(message_log.PURPOSE_BOOKING_CONFIRMATION, appointment.id),
        )
    except NotificationError as e:
        logger.error(f"❌ Booking confirmation SMS failed for appointment {appointment_id}: {e}")


@router.post("")
async def handle_stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle Stripe PaymentIntent webhook events

    Events handled:
    - payment_intent.succeeded - deposit captured, appointment booked (or refunded
      when the system had already cancelled it)
    - payment_intent.payment_failed - deposit failed, recovered slot reopened and
      its intent cancelled
    - payment_intent.canceled - treated like a failure
    """
    event = await verify_stripe_webhook(request, STRIPE_WEBHOOK_SECRET)
    event_id = event.get("id")
    event_type = event.get("type", "")
    intent = (event.get("data") or {}).get("object") or {}

    logger.info(f"📥 Stripe webhook received: {event_type} ({event_id})")

    try:
        result = StripeWebhookService(db).process(event_id, event_type, intent)
    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error processing Stripe webhook {event_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e

    if result.void_payment_intent_id:
        await asyncio.to_thread(
            void_payment_intent, result.void_appointment_id, result.void_payment_intent_id
        )
    if result.confirm_appointment_id:
        await send_booking_confirmation(db, result.confirm_appointment_id)
    if result.reopened_slot_opening_id:
        await trigger_offer_loop(result.reopened_slot_opening_id)

    return {"received": True}
