"""
Scheduled job entry points
Called by an external scheduler with the x-cron-secret header; each job is
idempotent and serialized by its own Postgres advisory lock.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..config import RESOLVE_OUTCOMES_LOCK_ID, is_production
from ..database import get_db
from ..domain.no_show.reminders import ReminderService
from ..domain.no_show.service import NoShowService
from ..domain.outcomes.resolver import OutcomeResolver, parse_limit
from ..domain.scoring.service import ScoringService
from ..domain.slot_recovery.service import SlotRecoveryService
from ..webhook_security import verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"], dependencies=[Depends(verify_cron_secret)])


def resolve_lock_id(raw: Optional[str], default: int) -> int:
    """Lock partition override, honoured outside production only"""
    if raw is None or is_production():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@router.post("/resolve-outcomes")
def resolve_outcomes(
    limit: Optional[str] = Query(None),
    lockId: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    lock_id = resolve_lock_id(lockId, RESOLVE_OUTCOMES_LOCK_ID)
    try:
        return OutcomeResolver(db).run(limit=parse_limit(limit), lock_id=lock_id)
    except Exception as e:
        logger.error(f"❌ Outcome resolver failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to resolve outcomes") from e


@router.post("/expire-offers")
async def expire_offers(db: Session = Depends(get_db)):
    try:
        return await SlotRecoveryService(db).expire_offers()
    except Exception as e:
        logger.error(f"❌ Offer expiry failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to expire offers") from e


@router.post("/recompute-scores")
def recompute_scores(db: Session = Depends(get_db)):
    try:
        return ScoringService(db).recompute_all()
    except Exception as e:
        logger.error(f"❌ Score recompute failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to recompute scores") from e


@router.post("/send-reminders")
async def send_reminders(db: Session = Depends(get_db)):
    try:
        return await ReminderService(db).send_reminders()
    except Exception as e:
        logger.error(f"❌ Reminder job failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to send reminders") from e


@router.post("/recompute-no-show-stats")
def recompute_no_show_stats(db: Session = Depends(get_db)):
    try:
        return NoShowService(db).recompute_all()
    except Exception as e:
        logger.error(f"❌ No-show stats recompute failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to recompute no-show stats") from e
