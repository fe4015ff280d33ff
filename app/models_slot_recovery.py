"""
Slot Recovery Models
Freed slots from refunded cancellations and the SMS offers sent for them
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class SlotOpening(Base):
    __tablename__ = "slot_openings"
    __table_args__ = (UniqueConstraint("shop_id", "starts_at", name="uq_slot_openings_shop_start"),)

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    source_appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    status = Column(String(20), default="open", nullable=False)  # open, filled, expired

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    offers = relationship("SlotOffer", back_populates="slot_opening")


class SlotOffer(Base):
    __tablename__ = "slot_offers"
    __table_args__ = (
        UniqueConstraint("slot_opening_id", "customer_id", name="uq_slot_offers_opening_customer"),
    )

    id = Column(Integer, primary_key=True, index=True)
    slot_opening_id = Column(Integer, ForeignKey("slot_openings.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    channel = Column(String(20), default="sms", nullable=False)
    status = Column(String(20), default="sent", nullable=False)  # sent, accepted, expired, declined
    sent_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    slot_opening = relationship("SlotOpening", back_populates="offers")
    customer = relationship("Customer")
