"""Self-service manage tokens: random, stored only as a sha256 hash, time limited"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import MANAGE_TOKEN_EXPIRY_DAYS
from ...models import BookingManageToken

logger = logging.getLogger(__name__)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def create_manage_token(
    db: Session, appointment_id: int, expiry_days: int = MANAGE_TOKEN_EXPIRY_DAYS
) -> str:
    """Issue a new raw token for the appointment, replacing any earlier one"""
    raw_token = secrets.token_hex(32)
    expires_at = datetime.utcnow() + timedelta(days=expiry_days)

    existing = (
        db.query(BookingManageToken)
        .filter(BookingManageToken.appointment_id == appointment_id)
        .first()
    )
    if existing:
        existing.token_hash = hash_token(raw_token)
        existing.expires_at = expires_at
    else:
        db.add(
            BookingManageToken(
                appointment_id=appointment_id,
                token_hash=hash_token(raw_token),
                expires_at=expires_at,
            )
        )
    db.commit()
    return raw_token


def validate_manage_token(db: Session, raw_token: str) -> Optional[int]:
    """Appointment id for a valid, unexpired token; None otherwise"""
    if not raw_token:
        return None
    record = (
        db.query(BookingManageToken)
        .filter(BookingManageToken.token_hash == hash_token(raw_token))
        .first()
    )
    if not record:
        return None
    if record.expires_at <= datetime.utcnow():
        logger.info(f"⏰ Manage token for appointment {record.appointment_id} expired")
        return None
    return record.appointment_id
