"""Refund eligibility, computed from the appointment's policy snapshot"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..appointments.constants import INTENT_SUCCEEDED, STATUS_BOOKED


@dataclass(frozen=True)
class CancellationEligibility:
    cutoff_time: datetime
    is_before_cutoff: bool
    refund_allowed_by_policy: bool
    payment_succeeded: bool
    is_eligible_for_refund: bool

    def to_dict(self) -> dict:
        return {
            "cutoffTime": self.cutoff_time.isoformat(),
            "isBeforeCutoff": self.is_before_cutoff,
            "refundAllowedByPolicy": self.refund_allowed_by_policy,
            "paymentSucceeded": self.payment_succeeded,
            "isEligibleForRefund": self.is_eligible_for_refund,
        }


def calculate_cancellation_eligibility(
    starts_at: datetime,
    cancel_cutoff_minutes: int,
    payment_status: Optional[str],
    appointment_status: str,
    refund_before_cutoff: bool,
    now: Optional[datetime] = None,
) -> CancellationEligibility:
    now = now or datetime.utcnow()
    cutoff_time = starts_at - timedelta(minutes=cancel_cutoff_minutes)
    is_before_cutoff = now < cutoff_time
    payment_succeeded = payment_status == INTENT_SUCCEEDED

    return CancellationEligibility(
        cutoff_time=cutoff_time,
        is_before_cutoff=is_before_cutoff,
        refund_allowed_by_policy=bool(refund_before_cutoff),
        payment_succeeded=payment_succeeded,
        is_eligible_for_refund=(
            bool(refund_before_cutoff)
            and is_before_cutoff
            and payment_succeeded
            and appointment_status == STATUS_BOOKED
        ),
    )
