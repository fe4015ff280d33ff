"""
Outcome Resolver

Batch job that gives every ended appointment its terminal financial outcome,
then backfills cancelled appointments that never received one (for example
after a crash between the cancellation write and its outcome).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ...config import RESOLVE_OUTCOMES_LOCK_ID
from ...database import advisory_lock
from ...models import Appointment, Payment, ShopPolicy
from ..appointments.audit import record_event
from ..appointments.constants import (
    EVENT_OUTCOME_RESOLVED,
    OUTCOME_VOIDED,
    OUTCOME_UNRESOLVED,
    STATUS_BOOKED,
    STATUS_CANCELLED,
    STATUS_ENDED,
)
from ..appointments.policy_snapshot import DEFAULT_RESOLUTION_GRACE_MINUTES
from ..appointments.state_machine import resolve_outcome
from ..no_show.service import NoShowService
from .rules import backfill_cancelled_outcome, resolve_financial_outcome

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 200
MAX_LIMIT = 1000
BACKFILL_LIMIT = 50


def parse_limit(raw: Optional[str]) -> int:
    """Clamp a user-supplied batch size; anything unparseable falls back to the default"""
    if raw is None or raw == "":
        return DEFAULT_LIMIT
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    if value <= 0:
        return DEFAULT_LIMIT
    return min(value, MAX_LIMIT)


@dataclass(frozen=True)
class ResolutionCandidate:
    appointment_id: int
    shop_id: int
    payment_required: bool
    policy_version_id: Optional[int]
    payment_id: Optional[int]
    payment_status: Optional[str]
    refunded_amount_cents: Optional[int] = None
    refund_id: Optional[str] = None
    customer_id: Optional[int] = None
    ends_at: Optional[datetime] = None


class OutcomeResolver:
    """Resolves financial outcomes in bounded batches under an advisory lock"""

    def __init__(self, db: Session):
        self.db = db

    def run(self, limit: int = DEFAULT_LIMIT, lock_id: int = RESOLVE_OUTCOMES_LOCK_ID) -> dict:
        with advisory_lock(self.db, lock_id) as acquired:
            if not acquired:
                logger.info(f"🔒 Outcome resolver already running (lock {lock_id}), skipping")
                return {"skipped": True, "reason": "locked"}
            return self._run_batch(limit)

    def _run_batch(self, limit: int) -> dict:
        now = datetime.utcnow()
        summary = {"total": 0, "resolved": 0, "skipped": 0, "backfilled": 0, "noShowsDetected": 0, "errors": []}

        candidates = self.find_primary_candidates(now, limit)
        summary["total"] = len(candidates)
        logger.info(f"🔍 Outcome resolver found {len(candidates)} ended appointments")

        for candidate in candidates:
            try:
                if self.resolve_candidate(candidate):
                    summary["resolved"] += 1
                    if self.is_no_show(candidate):
                        summary["noShowsDetected"] += 1
                else:
                    summary["skipped"] += 1
            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ Failed to resolve appointment {candidate.appointment_id}: {e}")
                summary["errors"].append({"appointmentId": candidate.appointment_id, "error": str(e)})

        for candidate in self.find_backfill_candidates(BACKFILL_LIMIT):
            try:
                if self.backfill_candidate(candidate):
                    summary["backfilled"] += 1
            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ Failed to backfill appointment {candidate.appointment_id}: {e}")
                summary["errors"].append({"appointmentId": candidate.appointment_id, "error": str(e)})

        logger.info(
            f"✅ Outcome resolver finished: resolved={summary['resolved']}, "
            f"skipped={summary['skipped']}, backfilled={summary['backfilled']}, "
            f"errors={len(summary['errors'])}"
        )
        return summary

    def _grace_condition(self, now: datetime):
        """ends_at <= now - grace, where grace comes from each shop's policy"""
        rows = self.db.query(ShopPolicy.shop_id, ShopPolicy.resolution_grace_minutes).all()

        shops_by_grace: dict[int, list[int]] = {}
        for shop_id, grace in rows:
            minutes = grace if grace is not None else DEFAULT_RESOLUTION_GRACE_MINUTES
            shops_by_grace.setdefault(minutes, []).append(shop_id)

        default_cutoff = now - timedelta(minutes=DEFAULT_RESOLUTION_GRACE_MINUTES)
        if not shops_by_grace:
            return Appointment.ends_at <= default_cutoff

        conditions = [
            and_(
                Appointment.shop_id.in_(shop_ids),
                Appointment.ends_at <= now - timedelta(minutes=minutes),
            )
            for minutes, shop_ids in shops_by_grace.items()
        ]
        shops_with_policy = [shop_id for shop_id, _ in rows]
        conditions.append(
            and_(~Appointment.shop_id.in_(shops_with_policy), Appointment.ends_at <= default_cutoff)
        )
        return or_(*conditions)

    def find_primary_candidates(self, now: datetime, limit: int) -> list[ResolutionCandidate]:
        rows = (
            self.db.query(
                Appointment.id,
                Appointment.shop_id,
                Appointment.payment_required,
                Appointment.policy_version_id,
                Payment.id,
                Payment.status,
                Appointment.customer_id,
                Appointment.ends_at,
            )
            .outerjoin(Payment, Payment.appointment_id == Appointment.id)
            .filter(
                Appointment.financial_outcome == OUTCOME_UNRESOLVED,
                # Cancelled rows belong to the cancellation flow, never to this pass
                Appointment.status == STATUS_BOOKED,
                self._grace_condition(now),
            )
            .order_by(Appointment.ends_at.asc(), Appointment.id.asc())
            .limit(limit)
            .all()
        )
        return [
            ResolutionCandidate(
                appointment_id=row[0],
                shop_id=row[1],
                payment_required=bool(row[2]),
                policy_version_id=row[3],
                payment_id=row[4],
                payment_status=row[5],
                customer_id=row[6],
                ends_at=row[7],
            )
            for row in rows
        ]

    def find_backfill_candidates(self, limit: int) -> list[ResolutionCandidate]:
        rows = (
            self.db.query(
                Appointment.id,
                Appointment.shop_id,
                Appointment.payment_required,
                Appointment.policy_version_id,
                Payment.id,
                Payment.status,
                Payment.refunded_amount_cents,
                Payment.stripe_refund_id,
            )
            .outerjoin(Payment, Payment.appointment_id == Appointment.id)
            .filter(
                Appointment.status == STATUS_CANCELLED,
                Appointment.financial_outcome == OUTCOME_UNRESOLVED,
            )
            .order_by(Appointment.id.asc())
            .limit(limit)
            .all()
        )
        return [
            ResolutionCandidate(
                appointment_id=row[0],
                shop_id=row[1],
                payment_required=bool(row[2]),
                policy_version_id=row[3],
                payment_id=row[4],
                payment_status=row[5],
                refunded_amount_cents=row[6],
                refund_id=row[7],
            )
            for row in rows
        ]

    @staticmethod
    def is_no_show(candidate: ResolutionCandidate) -> bool:
        """A booked appointment whose outcome resolves voided counts as a no-show"""
        resolution = resolve_financial_outcome(candidate.payment_required, candidate.payment_status)
        return resolution.financial_outcome == OUTCOME_VOIDED

    def resolve_candidate(self, candidate: ResolutionCandidate) -> bool:
        """Commit one ended appointment. False means someone else already resolved or cancelled it."""
        resolution = resolve_financial_outcome(candidate.payment_required, candidate.payment_status)
        resolved_at = datetime.utcnow()

        updated = resolve_outcome(
            self.db,
            candidate.appointment_id,
            expected_status=STATUS_BOOKED,
            new_status=STATUS_ENDED,
            financial_outcome=resolution.financial_outcome,
            resolution_reason=resolution.resolution_reason,
            resolved_at=resolved_at,
        )
        if not updated:
            self.db.rollback()
            return False

        record_event(
            self.db,
            appointment_id=candidate.appointment_id,
            shop_id=candidate.shop_id,
            event_type=EVENT_OUTCOME_RESOLVED,
            occurred_at=resolved_at,
            meta=self._event_meta(candidate, resolution),
        )
        if self.is_no_show(candidate) and candidate.customer_id is not None:
            NoShowService(self.db).record_no_show(
                candidate.customer_id, candidate.shop_id, candidate.ends_at or resolved_at
            )
        self.db.commit()
        logger.info(
            f"✅ Appointment {candidate.appointment_id} resolved: "
            f"{resolution.financial_outcome} ({resolution.resolution_reason})"
        )
        return True

    def backfill_candidate(self, candidate: ResolutionCandidate) -> bool:
        resolution = backfill_cancelled_outcome(
            candidate.refunded_amount_cents, candidate.refund_id, candidate.payment_status
        )
        resolved_at = datetime.utcnow()

        updated = resolve_outcome(
            self.db,
            candidate.appointment_id,
            expected_status=STATUS_CANCELLED,
            new_status=STATUS_CANCELLED,
            financial_outcome=resolution.financial_outcome,
            resolution_reason=resolution.resolution_reason,
            resolved_at=resolved_at,
        )
        if not updated:
            self.db.rollback()
            return False

        meta = self._event_meta(candidate, resolution)
        meta["backfilled"] = True
        record_event(
            self.db,
            appointment_id=candidate.appointment_id,
            shop_id=candidate.shop_id,
            event_type=EVENT_OUTCOME_RESOLVED,
            occurred_at=resolved_at,
            meta=meta,
        )
        self.db.commit()
        logger.info(
            f"🩹 Backfilled cancelled appointment {candidate.appointment_id}: "
            f"{resolution.financial_outcome} ({resolution.resolution_reason})"
        )
        return True

    @staticmethod
    def _event_meta(candidate: ResolutionCandidate, resolution) -> dict:
        return {
            "policyVersionId": candidate.policy_version_id,
            "paymentId": candidate.payment_id,
            "paymentStatus": candidate.payment_status,
            "financialOutcome": resolution.financial_outcome,
            "resolutionReason": resolution.resolution_reason,
        }
