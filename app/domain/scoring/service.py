"""Scoring service - recompute reliability scores from resolved appointments"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import RECOMPUTE_SCORES_LOCK_ID
from ...database import advisory_lock
from ...models import Appointment, CustomerScore
from ..appointments.constants import (
    OUTCOME_SETTLED,
    OUTCOME_VOIDED,
    REASON_CANCELLED_NO_REFUND,
    REASON_CANCELLED_REFUNDED,
    STATUS_BOOKED,
    STATUS_ENDED,
)
from .scoring import AppointmentCounts, RecencyData, assign_tier, calculate_score

logger = logging.getLogger(__name__)

SCORE_WINDOW_DAYS = 180


class ScoringService:
    def __init__(self, db: Session):
        self.db = db

    def aggregate_counts(
        self, customer_id: int, shop_id: int, window_days: int = SCORE_WINDOW_DAYS, now: Optional[datetime] = None
    ) -> tuple[RecencyData, Optional[datetime], int]:
        """Bucket the customer's appointments by age. Returns (recency, last activity, voids in 90 days)."""
        now = now or datetime.utcnow()
        last_30 = now - timedelta(days=30)
        last_90 = now - timedelta(days=90)

        rows = (
            self.db.query(
                Appointment.status,
                Appointment.financial_outcome,
                Appointment.resolution_reason,
                Appointment.created_at,
            )
            .filter(
                Appointment.customer_id == customer_id,
                Appointment.shop_id == shop_id,
                Appointment.created_at >= now - timedelta(days=window_days),
            )
            .all()
        )

        recency = RecencyData()
        last_activity_at = None
        voided_last_90_days = 0

        for status, outcome, reason, created_at in rows:
            if created_at >= last_30:
                bucket = recency.last_30_days
            elif created_at >= last_90:
                bucket = recency.days_31_to_90
            else:
                bucket = recency.over_90_days

            if status in (STATUS_BOOKED, STATUS_ENDED) and outcome == OUTCOME_SETTLED:
                bucket.settled += 1
            elif outcome == OUTCOME_VOIDED:
                bucket.voided += 1
                if created_at >= last_90:
                    voided_last_90_days += 1
            elif reason == REASON_CANCELLED_REFUNDED:
                bucket.refunded += 1
            elif reason == REASON_CANCELLED_NO_REFUND:
                bucket.late_cancels += 1

            if last_activity_at is None or created_at > last_activity_at:
                last_activity_at = created_at

        return recency, last_activity_at, voided_last_90_days

    def recompute_customer(self, customer_id: int, shop_id: int) -> CustomerScore:
        recency, last_activity_at, voided_last_90_days = self.aggregate_counts(customer_id, shop_id)
        score = calculate_score(recency)
        tier = assign_tier(score, voided_last_90_days)
        totals = recency.totals()
        stats = {
            "settled": totals.settled,
            "voided": totals.voided,
            "refunded": totals.refunded,
            "lateCancels": totals.late_cancels,
            "lastActivityAt": last_activity_at.isoformat() if last_activity_at else None,
            "voidedLast90Days": voided_last_90_days,
        }

        record = (
            self.db.query(CustomerScore)
            .filter(CustomerScore.customer_id == customer_id, CustomerScore.shop_id == shop_id)
            .first()
        )
        if record is None:
            record = CustomerScore(customer_id=customer_id, shop_id=shop_id)
            self.db.add(record)
        record.score = score
        record.tier = tier
        record.window_days = SCORE_WINDOW_DAYS
        record.stats = stats
        record.computed_at = datetime.utcnow()
        self.db.commit()
        return record

    def recompute_all(self, lock_id: int = RECOMPUTE_SCORES_LOCK_ID) -> dict:
        with advisory_lock(self.db, lock_id) as acquired:
            if not acquired:
                logger.info(f"🔒 Score recompute already running (lock {lock_id}), skipping")
                return {"skipped": True, "reason": "locked"}

            since = datetime.utcnow() - timedelta(days=SCORE_WINDOW_DAYS)
            pairs = (
                self.db.query(Appointment.customer_id, Appointment.shop_id)
                .filter(Appointment.created_at >= since)
                .distinct()
                .all()
            )

            summary = {"total": len(pairs), "updated": 0, "errors": []}
            for customer_id, shop_id in pairs:
                try:
                    self.recompute_customer(customer_id, shop_id)
                    summary["updated"] += 1
                except Exception as e:
                    self.db.rollback()
                    logger.error(f"❌ Score recompute failed for customer {customer_id}: {e}")
                    summary["errors"].append({"customerId": customer_id, "error": str(e)})

            logger.info(f"✅ Recomputed {summary['updated']}/{summary['total']} customer scores")
            return summary
