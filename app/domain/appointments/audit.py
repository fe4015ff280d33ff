"""Append-only audit events with a back-link from the appointment"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Appointment, AppointmentEvent

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    *,
    appointment_id: int,
    shop_id: int,
    event_type: str,
    meta: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> AppointmentEvent:
    """
    Insert one audit event and point the appointment's last_event_id at it.

    Runs inside the caller's transaction and does not commit.
    """
    event = AppointmentEvent(
        shop_id=shop_id,
        appointment_id=appointment_id,
        type=event_type,
        occurred_at=occurred_at or datetime.utcnow(),
        meta=meta or {},
    )
    db.add(event)
    db.flush()

    db.query(Appointment).filter(Appointment.id == appointment_id).update(
        {"last_event_id": event.id}, synchronize_session=False
    )
    logger.debug(f"📝 Event {event_type} recorded for appointment {appointment_id}")
    return event


def list_events(db: Session, appointment_id: int) -> list[AppointmentEvent]:
    return (
        db.query(AppointmentEvent)
        .filter(AppointmentEvent.appointment_id == appointment_id)
        .order_by(AppointmentEvent.occurred_at.asc(), AppointmentEvent.id.asc())
        .all()
    )
