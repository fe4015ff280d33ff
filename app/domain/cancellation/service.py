"""Cancellation service - customer cancellations with idempotent refunds"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import Appointment, Payment
from ..appointments.audit import record_event
from ..appointments.constants import (
    CANCELLED_BY_CUSTOMER,
    EVENT_CANCELLED,
    OUTCOME_REFUNDED,
    REASON_CANCELLED_REFUNDED,
    STATUS_BOOKED,
    STATUS_CANCELLED,
)
from ..appointments.policy_snapshot import get_policy_version
from ..appointments.state_machine import resolve_outcome
from ..bookings.tokens import validate_manage_token
from ..outcomes.rules import backfill_cancelled_outcome
from ..slot_recovery.service import SlotRecoveryService
from .eligibility import CancellationEligibility, calculate_cancellation_eligibility
from .refunds import issue_refund

logger = logging.getLogger(__name__)

RETAINED_MESSAGE = "Appointment cancelled. Deposit retained per cancellation policy."


class CancellationService:
    """Service layer for customer-initiated cancellation"""

    def __init__(self, db: Session):
        self.db = db

    def get_appointment_for_token(self, token: str) -> Appointment:
        appointment_id = validate_manage_token(self.db, token)
        if not appointment_id:
            raise HTTPException(status_code=404, detail="Invalid or expired token")

        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise HTTPException(status_code=404, detail="Appointment not found")
        return appointment

    def get_eligibility(
        self, appointment: Appointment, payment: Optional[Payment]
    ) -> CancellationEligibility:
        policy = get_policy_version(self.db, appointment.policy_version_id)
        if not policy:
            raise HTTPException(status_code=404, detail="Appointment not found")
        return calculate_cancellation_eligibility(
            starts_at=appointment.starts_at,
            cancel_cutoff_minutes=policy.cancel_cutoff_minutes,
            payment_status=payment.status if payment else None,
            appointment_status=appointment.status,
            refund_before_cutoff=policy.refund_before_cutoff,
        )

    def cancel(self, appointment: Appointment) -> dict:
        """
        Cancel a booked appointment, refunding the deposit when the policy
        snapshot allows it. Returns the customer-facing response body.
        """
        payment = self.db.query(Payment).filter(Payment.appointment_id == appointment.id).first()
        eligibility = self.get_eligibility(appointment, payment)

        if appointment.status != STATUS_BOOKED:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "Cannot cancel appointment",
                    "reason": f"Appointment is already {appointment.status}",
                },
            )

        if eligibility.is_eligible_for_refund:
            if not payment:
                raise HTTPException(status_code=409, detail="Payment information missing for refund")
            return self.cancel_with_refund(appointment, payment, eligibility)

        return self.cancel_without_refund(appointment, payment, eligibility)

    def cancel_with_refund(
        self, appointment: Appointment, payment: Payment, eligibility: CancellationEligibility
    ) -> dict:
        appointment_id = appointment.id
        amount_cents = payment.amount_cents

        # Gateway first; the local write below is retried safely on the same refund id
        refund_id = issue_refund(appointment, payment)

        now = datetime.utcnow()
        updated = resolve_outcome(
            self.db,
            appointment_id,
            expected_status=STATUS_BOOKED,
            new_status=STATUS_CANCELLED,
            financial_outcome=OUTCOME_REFUNDED,
            resolution_reason=REASON_CANCELLED_REFUNDED,
            resolved_at=now,
            extra={"cancelled_at": now, "cancellation_source": CANCELLED_BY_CUSTOMER},
        )

        self.db.query(Payment).filter(
            Payment.id == payment.id, Payment.stripe_refund_id.is_(None)
        ).update(
            {
                "refunded_amount_cents": amount_cents,
                "stripe_refund_id": refund_id,
                "refunded_at": now,
                "updated_at": now,
            },
            synchronize_session=False,
        )

        if updated:
            record_event(
                self.db,
                appointment_id=appointment_id,
                shop_id=appointment.shop_id,
                event_type=EVENT_CANCELLED,
                occurred_at=now,
                meta={
                    "reason": REASON_CANCELLED_REFUNDED,
                    "refundId": refund_id,
                    "refundAmountCents": amount_cents,
                    "cutoffTime": eligibility.cutoff_time.isoformat(),
                    "cancelledAt": now.isoformat(),
                },
            )
        self.db.commit()

        if updated:
            logger.info(f"✅ Appointment {appointment_id} cancelled with refund {refund_id}")
        else:
            self.db.refresh(appointment)
            if appointment.financial_outcome != OUTCOME_REFUNDED:
                logger.error(
                    f"❌ Appointment {appointment_id} refunded ({refund_id}) but was already "
                    f"{appointment.status}/{appointment.financial_outcome}"
                )
                raise HTTPException(status_code=409, detail="Appointment is no longer cancellable")
            logger.info(f"↩️ Appointment {appointment_id} was already cancelled with refund")

        return {
            "success": True,
            "refunded": True,
            "amount": amount_cents / 100,
            "message": f"Refunded ${amount_cents / 100:.2f} to your card",
            "refundId": refund_id,
        }

    def cancel_without_refund(
        self,
        appointment: Appointment,
        payment: Optional[Payment],
        eligibility: CancellationEligibility,
    ) -> dict:
        resolution = backfill_cancelled_outcome(
            0, None, payment.status if payment else None
        )
        now = datetime.utcnow()
        updated = resolve_outcome(
            self.db,
            appointment.id,
            expected_status=STATUS_BOOKED,
            new_status=STATUS_CANCELLED,
            financial_outcome=resolution.financial_outcome,
            resolution_reason=resolution.resolution_reason,
            resolved_at=now,
            extra={"cancelled_at": now, "cancellation_source": CANCELLED_BY_CUSTOMER},
        )
        if not updated:
            self.db.rollback()
            logger.warning(f"⚠️ Appointment {appointment.id} changed before it could be cancelled")
            raise HTTPException(status_code=409, detail="Appointment is no longer cancellable")

        record_event(
            self.db,
            appointment_id=appointment.id,
            shop_id=appointment.shop_id,
            event_type=EVENT_CANCELLED,
            occurred_at=now,
            meta={
                "reason": resolution.resolution_reason,
                "cutoffTime": eligibility.cutoff_time.isoformat(),
                "cancelledAt": now.isoformat(),
            },
        )
        self.db.commit()
        logger.info(
            f"✅ Appointment {appointment.id} cancelled without refund "
            f"({resolution.financial_outcome})"
        )

        return {"success": True, "refunded": False, "amount": 0, "message": RETAINED_MESSAGE}

    def open_recovered_slot(self, appointment_id: int) -> Optional[int]:
        """Best effort: a failure here never undoes the committed cancellation"""
        try:
            opening = SlotRecoveryService(self.db).create_slot_opening_from_cancellation(appointment_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Slot opening for appointment {appointment_id} failed: {e}")
            return None
        return opening.id if opening else None
