"""
Stripe Models
Seen-set of webhook event ids used to drop duplicate deliveries
"""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from .database import Base


class ProcessedStripeEvent(Base):
    __tablename__ = "processed_stripe_events"

    id = Column(String(255), primary_key=True)  # Stripe event id (evt_...)
    type = Column(String(64), nullable=True)
    processed_at = Column(DateTime, server_default=func.now())
