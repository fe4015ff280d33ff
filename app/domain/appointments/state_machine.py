"""
Appointment state transitions.

Every writer goes through ``transition``: a single UPDATE keyed on the
appointment id plus the expected prior financial outcome (and status where
given). Zero affected rows means another process got there first.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Appointment
from .constants import (
    OUTCOME_UNRESOLVED,
    STATUS_BOOKED,
    STATUS_CANCELLED,
    STATUS_ENDED,
    STATUS_PENDING,
    TERMINAL_OUTCOMES,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: frozenset({STATUS_BOOKED, STATUS_CANCELLED}),
    STATUS_BOOKED: frozenset({STATUS_ENDED, STATUS_CANCELLED}),
    STATUS_CANCELLED: frozenset(),
    STATUS_ENDED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a caller asks for a status change the lifecycle does not allow"""

    pass


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def transition(
    db: Session,
    appointment_id: int,
    *,
    expected_status: Optional[str],
    values: dict,
    expected_outcome: Optional[str] = OUTCOME_UNRESOLVED,
) -> bool:
    """
    Apply ``values`` to the appointment only if it is still in the expected state.

    Does not commit. Returns True when exactly one row was updated.
    """
    new_status = values.get("status")
    if expected_status and new_status and new_status != expected_status:
        if not can_transition(expected_status, new_status):
            raise InvalidTransitionError(f"{expected_status} -> {new_status}")

    new_outcome = values.get("financial_outcome")
    if new_outcome is not None and new_outcome not in TERMINAL_OUTCOMES:
        raise InvalidTransitionError(f"financial_outcome cannot move to {new_outcome}")

    query = db.query(Appointment).filter(Appointment.id == appointment_id)
    if expected_outcome is not None:
        query = query.filter(Appointment.financial_outcome == expected_outcome)
    if expected_status is not None:
        query = query.filter(Appointment.status == expected_status)

    values = dict(values)
    values.setdefault("updated_at", datetime.utcnow())
    updated = query.update(values, synchronize_session=False)

    if updated != 1:
        logger.info(
            f"⏭️ Appointment {appointment_id} not in expected state "
            f"(status={expected_status}, outcome={expected_outcome}), skipping"
        )
        return False
    return True


def resolve_outcome(
    db: Session,
    appointment_id: int,
    *,
    expected_status: str,
    new_status: str,
    financial_outcome: str,
    resolution_reason: str,
    resolved_at: datetime,
    extra: Optional[dict] = None,
) -> bool:
    """Set the terminal financial outcome once, moving status in the same write"""
    values = {
        "status": new_status,
        "financial_outcome": financial_outcome,
        "resolution_reason": resolution_reason,
        "resolved_at": resolved_at,
    }
    if extra:
        values.update(extra)
    return transition(
        db,
        appointment_id,
        expected_status=expected_status,
        expected_outcome=OUTCOME_UNRESOLVED,
        values=values,
    )
