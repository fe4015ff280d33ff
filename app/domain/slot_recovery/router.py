"""Internal slot recovery routes, authenticated with x-internal-secret"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ...database import get_db
from ...webhook_security import verify_internal_secret
from .service import SlotRecoveryService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal/slot-recovery",
    tags=["Slot Recovery"],
    dependencies=[Depends(verify_internal_secret)],
)


class OfferLoopRequest(BaseModel):
    slotOpeningId: int


def get_slot_recovery_service(db: Session = Depends(get_db)) -> SlotRecoveryService:
    return SlotRecoveryService(db)


@router.post("/offer-loop")
async def offer_loop(
    data: OfferLoopRequest, service: SlotRecoveryService = Depends(get_slot_recovery_service)
):
    result = await service.run_offer_loop(data.slotOpeningId)
    if result["status"] == "not_found":
        raise HTTPException(status_code=404, detail="Slot opening not found")
    return result
