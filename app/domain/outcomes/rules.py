"""
Outcome rules.

Small total functions over the closed status values, so every combination can
be checked exhaustively.
"""

from typing import NamedTuple, Optional

from ..appointments.constants import (
    INTENT_SUCCEEDED,
    OUTCOME_REFUNDED,
    OUTCOME_SETTLED,
    OUTCOME_VOIDED,
    REASON_CANCELLED_NO_PAYMENT,
    REASON_CANCELLED_NO_REFUND,
    REASON_CANCELLED_REFUNDED,
    REASON_NO_PAYMENT_REQUIRED,
    REASON_PAYMENT_CAPTURED,
    REASON_PAYMENT_NOT_CAPTURED,
)


class Resolution(NamedTuple):
    financial_outcome: str
    resolution_reason: str


def resolve_financial_outcome(payment_required: bool, payment_status: Optional[str]) -> Resolution:
    """Outcome for an appointment that ran to its end time"""
    if not payment_required:
        return Resolution(OUTCOME_VOIDED, REASON_NO_PAYMENT_REQUIRED)
    if payment_status == INTENT_SUCCEEDED:
        return Resolution(OUTCOME_SETTLED, REASON_PAYMENT_CAPTURED)
    return Resolution(OUTCOME_VOIDED, REASON_PAYMENT_NOT_CAPTURED)


def backfill_cancelled_outcome(
    refunded_amount_cents: Optional[int],
    refund_id: Optional[str],
    payment_status: Optional[str],
) -> Resolution:
    """Outcome for a cancelled appointment that never got one"""
    if (refunded_amount_cents or 0) > 0 or refund_id:
        return Resolution(OUTCOME_REFUNDED, REASON_CANCELLED_REFUNDED)
    if payment_status == INTENT_SUCCEEDED:
        return Resolution(OUTCOME_SETTLED, REASON_CANCELLED_NO_REFUND)
    return Resolution(OUTCOME_VOIDED, REASON_CANCELLED_NO_PAYMENT)
