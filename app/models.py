"""
Booking Models
Shops, live policies, immutable policy snapshots, customers, appointments,
payments and the per-appointment audit trail
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Shop(Base):
    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    timezone = Column(String(64), default="UTC", nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    policy = relationship("ShopPolicy", back_populates="shop", uselist=False)
    customers = relationship("Customer", back_populates="shop")


class ShopPolicy(Base):
    """Live, editable policy. Only read when a booking is created."""

    __tablename__ = "shop_policies"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, unique=True)

    currency = Column(String(3), default="USD", nullable=False)
    payment_mode = Column(String(20), default="deposit", nullable=False)  # deposit, full_prepay, none
    deposit_amount_cents = Column(Integer, nullable=True)
    cancel_cutoff_minutes = Column(Integer, default=1440, nullable=False)
    refund_before_cutoff = Column(Boolean, default=True, nullable=False)
    resolution_grace_minutes = Column(Integer, default=30, nullable=False)

    # Tier pricing overrides
    risk_payment_mode = Column(String(20), nullable=True)
    risk_deposit_amount_cents = Column(Integer, nullable=True)
    top_deposit_waived = Column(Boolean, default=False, nullable=False)
    top_deposit_amount_cents = Column(Integer, nullable=True)

    # Slot recovery
    exclude_risk_from_offers = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    shop = relationship("Shop", back_populates="policy")


class PolicyVersion(Base):
    """Snapshot of the policy in effect when an appointment was booked. Never updated."""

    __tablename__ = "policy_versions"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)

    currency = Column(String(3), nullable=False)
    payment_mode = Column(String(20), nullable=False)
    deposit_amount_cents = Column(Integer, nullable=True)
    cancel_cutoff_minutes = Column(Integer, default=1440, nullable=False)
    refund_before_cutoff = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("shop_id", "phone", name="uq_customers_shop_phone"),)

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=False, default="")
    email = Column(String(255), nullable=True)
    sms_opt_in = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    shop = relationship("Shop", back_populates="customers")
    scores = relationship("CustomerScore", back_populates="customer")


class CustomerScore(Base):
    """Reliability score per (customer, shop), recomputed by the scoring job"""

    __tablename__ = "customer_scores"
    __table_args__ = (
        UniqueConstraint("customer_id", "shop_id", name="uq_customer_scores_customer_shop"),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    score = Column(Integer, nullable=False)
    tier = Column(String(20), nullable=False)  # top, neutral, risk
    window_days = Column(Integer, default=180, nullable=False)
    stats = Column(JSON, nullable=True)
    computed_at = Column(DateTime, nullable=False)

    customer = relationship("Customer", back_populates="scores")


class CustomerNoShowStats(Base):
    """Attendance counters per (customer, shop), bumped on detection and rebuilt nightly"""

    __tablename__ = "customer_no_show_stats"
    __table_args__ = (
        UniqueConstraint("customer_id", "shop_id", name="uq_customer_no_show_stats_customer_shop"),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    total_appointments = Column(Integer, default=0, nullable=False)
    no_show_count = Column(Integer, default=0, nullable=False)
    late_cancel_count = Column(Integer, default=0, nullable=False)
    on_time_cancel_count = Column(Integer, default=0, nullable=False)
    completed_count = Column(Integer, default=0, nullable=False)
    last_no_show_at = Column(DateTime, nullable=True)
    computed_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # One live booking per shop and start time; cancelled rows free the slot
        Index(
            "uq_appointments_shop_live_slot",
            "shop_id",
            "starts_at",
            unique=True,
            postgresql_where=text("status IN ('pending', 'booked')"),
            sqlite_where=text("status IN ('pending', 'booked')"),
        ),
        Index("ix_appointments_resolution", "financial_outcome", "status", "ends_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    policy_version_id = Column(Integer, ForeignKey("policy_versions.id"), nullable=True)

    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)

    status = Column(String(20), default="booked", nullable=False)
    payment_required = Column(Boolean, default=False, nullable=False)
    payment_status = Column(String(20), default="unpaid", nullable=False)

    financial_outcome = Column(String(20), default="unresolved", nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    resolution_reason = Column(String(64), nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    cancellation_source = Column(String(20), nullable=True)  # customer, system, admin

    # Plain ids: both tables point back at appointments
    last_event_id = Column(Integer, nullable=True)
    source = Column(String(20), default="web", nullable=False)  # web, slot_recovery
    source_slot_opening_id = Column(Integer, nullable=True, index=True)

    # No-show risk, scored once at booking time
    no_show_score = Column(Integer, nullable=True)
    no_show_risk = Column(String(10), nullable=True, index=True)  # low, medium, high
    no_show_computed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer")
    policy_version = relationship("PolicyVersion")
    payment = relationship("Payment", back_populates="appointment", uselist=False)
    events = relationship("AppointmentEvent", back_populates="appointment")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)

    provider = Column(String(20), default="stripe", nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    # Mirrors the Stripe PaymentIntent status
    status = Column(String(32), default="processing", nullable=False)
    stripe_payment_intent_id = Column(String(255), nullable=True, unique=True)
    client_secret = Column(String(255), nullable=True)
    attempts = Column(Integer, default=0, nullable=False)

    refunded_amount_cents = Column(Integer, default=0, nullable=False)
    stripe_refund_id = Column(String(255), nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="payment")


class AppointmentEvent(Base):
    """Append-only audit trail entry"""

    __tablename__ = "appointment_events"
    __table_args__ = (
        UniqueConstraint(
            "appointment_id", "type", "occurred_at", name="uq_appointment_events_type_time"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    appointment = relationship("Appointment", back_populates="events")


class BookingManageToken(Base):
    """Hashed self-service token, one per appointment"""

    __tablename__ = "booking_manage_tokens"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
