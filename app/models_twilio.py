"""
Twilio Models
Outbound SMS log, send dedup keys and opt-out history for inbound STOP replies
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class MessageLog(Base):
    """One row per outbound SMS attempt, sent or failed"""

    __tablename__ = "message_log"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    # Slot offers go out before any appointment exists for the recipient
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)

    channel = Column(String(20), default="sms", nullable=False)
    purpose = Column(String(40), nullable=False)  # booking_confirmation, slot_offer, offer_accepted, appointment_reminder_24h
    to_phone = Column(String(20), nullable=False)
    provider = Column(String(20), default="twilio", nullable=False)
    provider_message_id = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False)  # sent, failed

    body_hash = Column(String(64), nullable=False)
    rendered_body = Column(Text, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    sent_at = Column(DateTime, nullable=True)


class MessageDedup(Base):
    """Claimed before a once-only message is sent; the primary key blocks a second send"""

    __tablename__ = "message_dedup"

    dedup_key = Column(String(128), primary_key=True)
    created_at = Column(DateTime, server_default=func.now())


class MessageOptOut(Base):
    """Record of a customer opting out of a messaging channel"""

    __tablename__ = "message_opt_outs"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    channel = Column(String(20), default="sms", nullable=False)
    reason = Column(String(64), nullable=True)  # keyword that triggered the opt-out
    opted_out_at = Column(DateTime, server_default=func.now())

    customer = relationship("Customer")
