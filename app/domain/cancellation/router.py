"""Customer self-service cancellation routes"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...config import MANAGE_RATE_LIMIT, MANAGE_RATE_LIMIT_WINDOW_SECONDS
from ...database import get_db
from ...rate_limiter import create_rate_limiter
from ...services.job_queue import trigger_offer_loop
from .refunds import RefundError
from .service import CancellationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/manage", tags=["Manage Booking"])

manage_rate_limit = create_rate_limiter(
    limit=MANAGE_RATE_LIMIT, window_seconds=MANAGE_RATE_LIMIT_WINDOW_SECONDS, key_prefix="manage"
)


def get_cancellation_service(db: Session = Depends(get_db)) -> CancellationService:
    return CancellationService(db)


@router.get("/{token}")
async def get_booking(
    token: str,
    _: None = Depends(manage_rate_limit),
    service: CancellationService = Depends(get_cancellation_service),
):
    """Appointment summary and refund eligibility for the manage page"""
    appointment = service.get_appointment_for_token(token)
    payment = appointment.payment
    eligibility = service.get_eligibility(appointment, payment)
    return {
        "appointmentId": appointment.id,
        "startsAt": appointment.starts_at.isoformat(),
        "endsAt": appointment.ends_at.isoformat(),
        "status": appointment.status,
        "paymentStatus": appointment.payment_status,
        "amountCents": payment.amount_cents if payment else 0,
        "eligibility": eligibility.to_dict(),
    }


@router.post("/{token}/cancel")
async def cancel_booking(
    token: str,
    _: None = Depends(manage_rate_limit),
    service: CancellationService = Depends(get_cancellation_service),
):
    try:
        appointment = service.get_appointment_for_token(token)
        result = service.cancel(appointment)
    except HTTPException:
        raise
    except RefundError as e:
        logger.error(f"❌ Refund failed for token cancellation: {e.user_message}")
        raise HTTPException(status_code=500, detail=e.user_message) from e
    except Exception as e:
        logger.error(f"❌ Cancellation error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to cancel appointment") from e

    if result["refunded"]:
        slot_opening_id = service.open_recovered_slot(appointment.id)
        if slot_opening_id:
            await trigger_offer_loop(slot_opening_id)

    return result
