"""
No-show service

Keeps per-customer attendance counters, scores new bookings for no-show risk
and rebuilds the counters from appointment history on a schedule.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import RECOMPUTE_NO_SHOW_STATS_LOCK_ID
from ...database import advisory_lock
from ...models import Appointment, CustomerNoShowStats
from ...services.messages import to_shop_time
from ..appointments.constants import (
    OUTCOME_SETTLED,
    OUTCOME_UNRESOLVED,
    OUTCOME_VOIDED,
    REASON_CANCELLED_NO_REFUND,
    REASON_CANCELLED_REFUNDED,
    STATUS_BOOKED,
    STATUS_CANCELLED,
    STATUS_ENDED,
)
from .scoring import (
    DEFAULT_RISK,
    DEFAULT_SCORE,
    AttendanceHistory,
    BookingContext,
    assign_no_show_risk,
    calculate_no_show_score,
)

logger = logging.getLogger(__name__)

HISTORY_WINDOW_DAYS = 180


def is_no_show(status: str, financial_outcome: str) -> bool:
    """A booked appointment that ran its course without the outcome being settled"""
    return status == STATUS_ENDED and financial_outcome == OUTCOME_VOIDED


class NoShowService:
    def __init__(self, db: Session):
        self.db = db

    def get_stats(self, customer_id: int, shop_id: int) -> Optional[CustomerNoShowStats]:
        return (
            self.db.query(CustomerNoShowStats)
            .filter(
                CustomerNoShowStats.customer_id == customer_id,
                CustomerNoShowStats.shop_id == shop_id,
            )
            .first()
        )

    def record_no_show(self, customer_id: int, shop_id: int, no_show_at: datetime) -> None:
        """Bump the counters for one detected no-show. Runs inside the caller's transaction."""
        now = datetime.utcnow()
        updated = (
            self.db.query(CustomerNoShowStats)
            .filter(
                CustomerNoShowStats.customer_id == customer_id,
                CustomerNoShowStats.shop_id == shop_id,
            )
            .update(
                {
                    "no_show_count": CustomerNoShowStats.no_show_count + 1,
                    "total_appointments": CustomerNoShowStats.total_appointments + 1,
                    "last_no_show_at": no_show_at,
                    "updated_at": now,
                },
                synchronize_session=False,
            )
        )
        if updated == 0:
            self.db.add(
                CustomerNoShowStats(
                    customer_id=customer_id,
                    shop_id=shop_id,
                    total_appointments=1,
                    no_show_count=1,
                    late_cancel_count=0,
                    on_time_cancel_count=0,
                    completed_count=0,
                    last_no_show_at=no_show_at,
                    computed_at=now,
                )
            )
            self.db.flush()
        logger.info(f"🚷 No-show recorded for customer {customer_id} at shop {shop_id}")

    def scan_history(
        self, customer_id: int, shop_id: int, window_days: int = HISTORY_WINDOW_DAYS, now: Optional[datetime] = None
    ) -> tuple[AttendanceHistory, Optional[datetime]]:
        """Bucket the customer's appointments by age. Returns (history, latest no-show end time)."""
        now = now or datetime.utcnow()
        last_30 = now - timedelta(days=30)
        last_90 = now - timedelta(days=90)

        rows = (
            self.db.query(
                Appointment.status,
                Appointment.financial_outcome,
                Appointment.resolution_reason,
                Appointment.ends_at,
                Appointment.created_at,
            )
            .filter(
                Appointment.customer_id == customer_id,
                Appointment.shop_id == shop_id,
                Appointment.created_at >= now - timedelta(days=window_days),
            )
            .all()
        )

        history = AttendanceHistory()
        last_no_show_at = None

        for status, outcome, reason, ends_at, created_at in rows:
            if created_at >= last_30:
                bucket = history.last_30_days
            elif created_at >= last_90:
                bucket = history.days_31_to_90
            else:
                bucket = history.days_91_to_180

            # Still booked and past its end: the resolver has not reached it yet
            overdue = status == STATUS_BOOKED and outcome == OUTCOME_UNRESOLVED and ends_at < now

            if status in (STATUS_BOOKED, STATUS_ENDED) and outcome == OUTCOME_SETTLED:
                bucket.completed += 1
            elif is_no_show(status, outcome) or overdue:
                bucket.no_shows += 1
                if last_no_show_at is None or ends_at > last_no_show_at:
                    last_no_show_at = ends_at
            elif status == STATUS_CANCELLED and reason == REASON_CANCELLED_NO_REFUND:
                bucket.late_cancels += 1
            elif status == STATUS_CANCELLED and reason == REASON_CANCELLED_REFUNDED:
                bucket.on_time_cancels += 1

        return history, last_no_show_at

    def score_booking(
        self,
        customer_id: int,
        shop_id: int,
        starts_at: datetime,
        shop_timezone: str,
        payment_required: bool,
        now: Optional[datetime] = None,
    ) -> tuple[int, str]:
        """No-show (score, risk) for an appointment about to be booked"""
        now = now or datetime.utcnow()
        stats = self.get_stats(customer_id, shop_id)
        if not stats or stats.total_appointments == 0:
            return DEFAULT_SCORE, DEFAULT_RISK

        history, _ = self.scan_history(customer_id, shop_id, now=now)
        context = BookingContext(
            lead_time_hours=(starts_at - now).total_seconds() / 3600,
            appointment_hour=to_shop_time(starts_at, shop_timezone).hour,
            payment_required=payment_required,
        )
        score = calculate_no_show_score(history, context)
        return score, assign_no_show_risk(score, history.no_shows_last_90_days())

    def recompute_customer(self, customer_id: int, shop_id: int) -> CustomerNoShowStats:
        history, last_no_show_at = self.scan_history(customer_id, shop_id)
        totals = history.totals()

        stats = self.get_stats(customer_id, shop_id)
        if stats is None:
            stats = CustomerNoShowStats(customer_id=customer_id, shop_id=shop_id)
            self.db.add(stats)
        stats.total_appointments = totals.total
        stats.no_show_count = totals.no_shows
        stats.late_cancel_count = totals.late_cancels
        stats.on_time_cancel_count = totals.on_time_cancels
        stats.completed_count = totals.completed
        stats.last_no_show_at = last_no_show_at
        stats.computed_at = datetime.utcnow()
        self.db.commit()
        return stats

    def recompute_all(self, lock_id: int = RECOMPUTE_NO_SHOW_STATS_LOCK_ID) -> dict:
        with advisory_lock(self.db, lock_id) as acquired:
            if not acquired:
                logger.info(f"🔒 No-show stats recompute already running (lock {lock_id}), skipping")
                return {"skipped": True, "reason": "locked"}

            pairs = (
                self.db.query(Appointment.customer_id, Appointment.shop_id)
                .distinct()
                .order_by(Appointment.shop_id.asc(), Appointment.customer_id.asc())
                .all()
            )

            summary = {"total": len(pairs), "processed": 0, "errors": []}
            for customer_id, shop_id in pairs:
                try:
                    self.recompute_customer(customer_id, shop_id)
                    summary["processed"] += 1
                except Exception as e:
                    self.db.rollback()
                    logger.error(f"❌ No-show stats recompute failed for customer {customer_id}: {e}")
                    summary["errors"].append({"customerId": customer_id, "shopId": shop_id, "error": str(e)})

            logger.info(f"✅ Recomputed no-show stats for {summary['processed']}/{summary['total']} customers")
            return summary
