"""
Stripe webhook processing

Each event is handled in one transaction that starts by recording the event
id; a redelivered event hits the primary key and becomes a no-op. Work that
talks to the outside world (SMS, queueing the next offer round, cancelling an
abandoned intent) is returned to the caller and runs only after the commit.
The one exception is refunding a capture that landed on a booking the system
already cancelled: that refund must succeed before the event is acknowledged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..domain.appointments.audit import record_event
from ..domain.appointments.constants import (
    CANCELLED_BY_SYSTEM,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_REFUND_ISSUED,
    INTENT_CANCELED,
    INTENT_FAILED,
    INTENT_SUCCEEDED,
    OUTCOME_REFUNDED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    REASON_SYSTEM_CANCELLED_REFUNDED,
    SOURCE_SLOT_RECOVERY,
    STATUS_BOOKED,
    STATUS_CANCELLED,
    STATUS_PENDING,
)
from ..domain.appointments.state_machine import resolve_outcome, transition
from ..domain.cancellation.refunds import issue_refund
from ..domain.slot_recovery.service import SlotRecoveryService
from ..models import Appointment, Payment
from ..models_stripe import ProcessedStripeEvent

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"
PAYMENT_FAILED_EVENT = "payment_intent.payment_failed"
PAYMENT_CANCELED_EVENT = "payment_intent.canceled"

HANDLED_EVENTS = {
    PAYMENT_SUCCEEDED_EVENT: INTENT_SUCCEEDED,
    PAYMENT_FAILED_EVENT: INTENT_FAILED,
    PAYMENT_CANCELED_EVENT: INTENT_CANCELED,
}


@dataclass
class WebhookResult:
    duplicate: bool = False
    confirm_appointment_id: Optional[int] = None
    reopened_slot_opening_id: Optional[int] = None
    void_appointment_id: Optional[int] = None
    void_payment_intent_id: Optional[str] = None


class StripeWebhookService:
    def __init__(self, db: Session):
        self.db = db

    def process(self, event_id: str, event_type: str, intent: dict) -> WebhookResult:
        self.db.add(ProcessedStripeEvent(id=event_id, type=event_type))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"⏭️ Stripe event {event_id} already processed")
            return WebhookResult(duplicate=True)

        result = WebhookResult()
        new_status = HANDLED_EVENTS.get(event_type)
        if new_status is None:
            logger.debug(f"Ignoring Stripe event type {event_type}")
            self.db.commit()
            return result

        intent_id = intent.get("id")
        payment = (
            self.db.query(Payment).filter(Payment.stripe_payment_intent_id == intent_id).first()
        )
        if not payment:
            logger.warning(f"⚠️ No payment found for PaymentIntent {intent_id} ({event_type})")
            self.db.commit()
            return result

        appointment = self.db.query(Appointment).filter(Appointment.id == payment.appointment_id).first()

        if new_status == INTENT_SUCCEEDED:
            self._handle_succeeded(payment, appointment, intent, result)
        else:
            self._handle_failed(payment, appointment, new_status, result)

        self.db.commit()
        return result

    def _handle_succeeded(self, payment: Payment, appointment: Appointment, intent: dict, result: WebhookResult):
        if payment.status == INTENT_SUCCEEDED:
            logger.info(f"⏭️ Payment {payment.id} already succeeded")
            return

        now = datetime.utcnow()
        self.db.query(Payment).filter(Payment.id == payment.id).update(
            {"status": INTENT_SUCCEEDED, "attempts": Payment.attempts + 1, "updated_at": now},
            synchronize_session=False,
        )
        record_event(
            self.db,
            appointment_id=appointment.id,
            shop_id=appointment.shop_id,
            event_type=EVENT_PAYMENT_SUCCEEDED,
            occurred_at=now,
            meta={
                "paymentId": payment.id,
                "paymentIntentId": payment.stripe_payment_intent_id,
                "amountCents": intent.get("amount_received") or payment.amount_cents,
            },
        )

        if appointment.status == STATUS_CANCELLED and appointment.cancellation_source == CANCELLED_BY_SYSTEM:
            self._refund_late_capture(payment, appointment, now)
            return

        booked = transition(
            self.db,
            appointment.id,
            expected_status=STATUS_PENDING,
            values={"status": STATUS_BOOKED, "payment_status": PAYMENT_PAID},
        )
        if not booked:
            # Already booked: record the capture, leave status alone
            self.db.query(Appointment).filter(Appointment.id == appointment.id).update(
                {"payment_status": PAYMENT_PAID, "updated_at": now}, synchronize_session=False
            )
        if booked:
            result.confirm_appointment_id = appointment.id
        logger.info(f"💰 Payment {payment.id} succeeded for appointment {appointment.id}")

    def _refund_late_capture(self, payment: Payment, appointment: Appointment, now: datetime):
        """
        The booking was already given up (slot released, intent cancelled) when
        the card went through. Hand the deposit back. A RefundError propagates so
        the whole event rolls back and Stripe redelivers it.
        """
        refund_id = issue_refund(appointment, payment, reason="system_cancelled")

        self.db.query(Payment).filter(
            Payment.id == payment.id, Payment.stripe_refund_id.is_(None)
        ).update(
            {
                "refunded_amount_cents": payment.amount_cents,
                "stripe_refund_id": refund_id,
                "refunded_at": now,
                "updated_at": now,
            },
            synchronize_session=False,
        )
        self.db.query(Appointment).filter(Appointment.id == appointment.id).update(
            {"payment_status": PAYMENT_PAID, "updated_at": now}, synchronize_session=False
        )
        # A backfill may already have voided it; the refund stands either way
        resolve_outcome(
            self.db,
            appointment.id,
            expected_status=STATUS_CANCELLED,
            new_status=STATUS_CANCELLED,
            financial_outcome=OUTCOME_REFUNDED,
            resolution_reason=REASON_SYSTEM_CANCELLED_REFUNDED,
            resolved_at=now,
        )
        record_event(
            self.db,
            appointment_id=appointment.id,
            shop_id=appointment.shop_id,
            event_type=EVENT_REFUND_ISSUED,
            occurred_at=now,
            meta={
                "paymentId": payment.id,
                "refundId": refund_id,
                "refundAmountCents": payment.amount_cents,
                "reason": REASON_SYSTEM_CANCELLED_REFUNDED,
            },
        )
        logger.warning(
            f"💸 Late capture on cancelled appointment {appointment.id} refunded ({refund_id})"
        )

    def _handle_failed(self, payment: Payment, appointment: Appointment, new_status: str, result: WebhookResult):
        if payment.status == INTENT_SUCCEEDED:
            logger.warning(f"⚠️ Ignoring {new_status} for already captured payment {payment.id}")
            return

        now = datetime.utcnow()
        self.db.query(Payment).filter(Payment.id == payment.id).update(
            {"status": new_status, "attempts": Payment.attempts + 1, "updated_at": now},
            synchronize_session=False,
        )

        values = {"payment_status": PAYMENT_FAILED}
        releases_slot = appointment.source == SOURCE_SLOT_RECOVERY
        if releases_slot:
            # Free the slot so the next candidate can book it
            values.update(
                {
                    "status": STATUS_CANCELLED,
                    "cancelled_at": now,
                    "cancellation_source": CANCELLED_BY_SYSTEM,
                }
            )
        released = transition(self.db, appointment.id, expected_status=STATUS_PENDING, values=values)

        record_event(
            self.db,
            appointment_id=appointment.id,
            shop_id=appointment.shop_id,
            event_type=EVENT_PAYMENT_FAILED,
            occurred_at=now,
            meta={
                "paymentId": payment.id,
                "paymentIntentId": payment.stripe_payment_intent_id,
                "paymentStatus": new_status,
            },
        )

        # A failed intent can still be retried by the customer; a canceled one cannot
        if releases_slot and released and new_status == INTENT_FAILED:
            result.void_appointment_id = appointment.id
            result.void_payment_intent_id = payment.stripe_payment_intent_id

        if SlotRecoveryService(self.db).reopen_after_failed_payment(appointment):
            result.reopened_slot_opening_id = appointment.source_slot_opening_id
        logger.info(f"❌ Payment {payment.id} {new_status} for appointment {appointment.id}")
