"""Closed value sets for appointment, payment and audit fields"""

# Appointment.status
STATUS_PENDING = "pending"
STATUS_BOOKED = "booked"
STATUS_CANCELLED = "cancelled"
STATUS_ENDED = "ended"
APPOINTMENT_STATUSES = frozenset({STATUS_PENDING, STATUS_BOOKED, STATUS_CANCELLED, STATUS_ENDED})

# Appointment.payment_status
PAYMENT_UNPAID = "unpaid"
PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"

# Appointment.financial_outcome
OUTCOME_UNRESOLVED = "unresolved"
OUTCOME_SETTLED = "settled"
OUTCOME_VOIDED = "voided"
OUTCOME_REFUNDED = "refunded"
OUTCOME_DISPUTED = "disputed"
TERMINAL_OUTCOMES = frozenset({OUTCOME_SETTLED, OUTCOME_VOIDED, OUTCOME_REFUNDED, OUTCOME_DISPUTED})

# Appointment.resolution_reason
REASON_NO_PAYMENT_REQUIRED = "no_payment_required"
REASON_PAYMENT_CAPTURED = "payment_captured"
REASON_PAYMENT_NOT_CAPTURED = "payment_not_captured"
REASON_CANCELLED_REFUNDED = "cancelled_refunded_before_cutoff"
REASON_CANCELLED_NO_REFUND = "cancelled_no_refund_after_cutoff"
REASON_CANCELLED_NO_PAYMENT = "cancelled_no_payment_captured"
# Deposit captured after the system had already cancelled the booking
REASON_SYSTEM_CANCELLED_REFUNDED = "cancelled_by_system_refunded"

# Appointment.cancellation_source
CANCELLED_BY_CUSTOMER = "customer"
CANCELLED_BY_SYSTEM = "system"
CANCELLED_BY_ADMIN = "admin"

# Appointment.source
SOURCE_WEB = "web"
SOURCE_SLOT_RECOVERY = "slot_recovery"

# Payment.status, mirrored from Stripe PaymentIntent
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"
INTENT_REQUIRES_ACTION = "requires_action"
INTENT_PROCESSING = "processing"
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"
INTENT_FAILED = "failed"

# AppointmentEvent.type
EVENT_CREATED = "created"
EVENT_PAYMENT_SUCCEEDED = "payment_succeeded"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_OUTCOME_RESOLVED = "outcome_resolved"
EVENT_CANCELLED = "cancelled"
EVENT_REFUND_ISSUED = "refund_issued"
EVENT_REFUND_FAILED = "refund_failed"
EVENT_DISPUTE_OPENED = "dispute_opened"

# Appointment.no_show_risk
RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
