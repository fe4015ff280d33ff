"""
Logged SMS delivery

Every outbound attempt lands in message_log with a hash of the rendered body,
whether Twilio accepted it or not. Messages that must go out at most once
claim a dedup key before sending.
"""

import hashlib
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models_twilio import MessageDedup, MessageLog
from .twilio_service import NotificationError, send_sms

logger = logging.getLogger(__name__)

PURPOSE_BOOKING_CONFIRMATION = "booking_confirmation"
PURPOSE_SLOT_OFFER = "slot_offer"
PURPOSE_OFFER_ACCEPTED = "offer_accepted"
PURPOSE_REMINDER_24H = "appointment_reminder_24h"

STATUS_SENT = "sent"
STATUS_FAILED = "failed"


def hash_body(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def dedup_key(purpose: str, appointment_id: int) -> str:
    return f"{purpose}:{appointment_id}"


def claim_dedup_key(db: Session, key: str) -> bool:
    """Commit the key; False when an earlier send already claimed it"""
    db.add(MessageDedup(dedup_key=key))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def message_logged(db: Session, appointment_id: int, purpose: str) -> bool:
    """True once any attempt for this appointment and purpose has been logged"""
    return (
        db.query(MessageLog.id)
        .filter(MessageLog.appointment_id == appointment_id, MessageLog.purpose == purpose)
        .first()
        is not None
    )


def _write_log(db: Session, entry: MessageLog) -> None:
    # The SMS has already gone out (or failed); losing the log row must not change that outcome
    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Could not write message log for {entry.purpose} to {entry.to_phone}: {e}")


async def send_logged_sms(
    db: Session,
    *,
    shop_id: int,
    customer_id: int,
    to_phone: str,
    body: str,
    purpose: str,
    appointment_id: Optional[int] = None,
    once_key: Optional[str] = None,
) -> Optional[str]:
    """
    Send one SMS and log the attempt.

    Returns:
        Twilio message SID, or None when ``once_key`` was already claimed

    Raises:
        NotificationError: after the failed attempt has been logged
    """
    if once_key and not claim_dedup_key(db, once_key):
        logger.info(f"⏭️ {purpose} already sent ({once_key}), skipping")
        return None

    entry = MessageLog(
        shop_id=shop_id,
        appointment_id=appointment_id,
        customer_id=customer_id,
        channel="sms",
        purpose=purpose,
        to_phone=to_phone or "",
        provider="twilio",
        body_hash=hash_body(body),
        rendered_body=body,
        retry_count=0,
    )

    try:
        sid = await send_sms(to_phone, body, message_type=purpose)
    except NotificationError as e:
        entry.status = STATUS_FAILED
        entry.retry_count = 1
        entry.error_code = str(e.code) if e.code is not None else None
        entry.error_message = str(e)
        _write_log(db, entry)
        raise

    entry.status = STATUS_SENT
    entry.provider_message_id = sid
    entry.sent_at = datetime.utcnow()
    _write_log(db, entry)
    return sid
