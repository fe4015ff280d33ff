"""
High-risk reminders
Hourly job that texts customers flagged high no-show risk roughly a day
before their appointment. One reminder per appointment, ever.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import REMINDER_WINDOW_END_HOURS, REMINDER_WINDOW_START_HOURS, SEND_REMINDERS_LOCK_ID
from ...database import advisory_lock
from ...models import Appointment, Customer, Shop
from ...services import message_log, messages
from ...services.twilio_service import NotificationError
from ..appointments.constants import RISK_HIGH, STATUS_BOOKED

logger = logging.getLogger(__name__)

REMINDER_SENT = "sent"
REMINDER_SKIPPED = "skipped"


@dataclass(frozen=True)
class ReminderTarget:
    appointment_id: int
    shop_id: int
    customer_id: int
    phone: str
    starts_at: datetime
    shop_name: str
    shop_timezone: str


class ReminderService:
    def __init__(self, db: Session):
        self.db = db

    def find_high_risk_appointments(self, now: Optional[datetime] = None) -> list[ReminderTarget]:
        now = now or datetime.utcnow()
        window_start = now + timedelta(hours=REMINDER_WINDOW_START_HOURS)
        window_end = now + timedelta(hours=REMINDER_WINDOW_END_HOURS)

        rows = (
            self.db.query(
                Appointment.id,
                Appointment.shop_id,
                Appointment.customer_id,
                Customer.phone,
                Appointment.starts_at,
                Shop.name,
                Shop.timezone,
            )
            .join(Customer, Customer.id == Appointment.customer_id)
            .join(Shop, Shop.id == Appointment.shop_id)
            .filter(
                Appointment.status == STATUS_BOOKED,
                Appointment.no_show_risk == RISK_HIGH,
                Appointment.starts_at >= window_start,
                Appointment.starts_at <= window_end,
                Customer.sms_opt_in.is_(True),
                Customer.phone != "",
            )
            .order_by(Appointment.starts_at.asc(), Appointment.id.asc())
            .all()
        )
        return [ReminderTarget(*row) for row in rows]

    async def send_reminder(self, target: ReminderTarget) -> str:
        """Raises NotificationError when Twilio rejects the message"""
        if message_log.message_logged(self.db, target.appointment_id, message_log.PURPOSE_REMINDER_24H):
            return REMINDER_SKIPPED

        sid = await message_log.send_logged_sms(
            self.db,
            shop_id=target.shop_id,
            customer_id=target.customer_id,
            to_phone=target.phone,
            body=messages.appointment_reminder_message(target.shop_name, target.starts_at, target.shop_timezone),
            purpose=message_log.PURPOSE_REMINDER_24H,
            appointment_id=target.appointment_id,
            once_key=message_log.dedup_key(message_log.PURPOSE_REMINDER_24H, target.appointment_id),
        )
        return REMINDER_SENT if sid else REMINDER_SKIPPED

    async def send_reminders(self, lock_id: int = SEND_REMINDERS_LOCK_ID, now: Optional[datetime] = None) -> dict:
        with advisory_lock(self.db, lock_id) as acquired:
            if not acquired:
                logger.info(f"🔒 Reminder job already running (lock {lock_id}), skipping")
                return {"skipped": True, "reason": "locked"}

            targets = self.find_high_risk_appointments(now)
            summary = {"total": len(targets), "sent": 0, "skipped": 0, "errors": []}
            logger.info(f"🔍 Found {len(targets)} high-risk appointments due a reminder")

            for target in targets:
                try:
                    outcome = await self.send_reminder(target)
                except NotificationError as e:
                    logger.error(f"❌ Reminder failed for appointment {target.appointment_id}: {e}")
                    summary["errors"].append({"appointmentId": target.appointment_id, "error": str(e)})
                    continue
                summary[outcome] += 1

            logger.info(
                f"✅ Reminders finished: sent={summary['sent']}, skipped={summary['skipped']}, "
                f"errors={len(summary['errors'])}"
            )
            return summary
