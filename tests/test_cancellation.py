from datetime import datetime, timedelta

import pytest
import stripe
from fastapi import HTTPException

from app.domain.appointments.audit import list_events
from app.domain.bookings.tokens import create_manage_token
from app.domain.cancellation.eligibility import calculate_cancellation_eligibility
from app.domain.cancellation.refunds import RefundError, issue_refund
from app.domain.cancellation.service import CancellationService
from app.models import Appointment, Payment
from app.models_slot_recovery import SlotOpening

from .factories import make_appointment, make_customer, make_shop


@pytest.fixture
def shop(db):
    return make_shop(db)


@pytest.fixture
def customer(db, shop):
    return make_customer(db, shop)


def in_days(days):
    return datetime.utcnow() + timedelta(days=days)


def reload(db, appointment):
    db.expire_all()
    return db.query(Appointment).filter(Appointment.id == appointment.id).one()


# ---- eligibility ---------------------------------------------------------


def test_eligible_before_cutoff():
    now = datetime(2026, 3, 1, 12, 0)
    result = calculate_cancellation_eligibility(
        starts_at=datetime(2026, 3, 3, 12, 0),
        cancel_cutoff_minutes=1440,
        payment_status="succeeded",
        appointment_status="booked",
        refund_before_cutoff=True,
        now=now,
    )
    assert result.cutoff_time == datetime(2026, 3, 2, 12, 0)
    assert result.is_before_cutoff is True
    assert result.is_eligible_for_refund is True


def test_exactly_at_cutoff_is_too_late():
    result = calculate_cancellation_eligibility(
        starts_at=datetime(2026, 3, 3, 12, 0),
        cancel_cutoff_minutes=60,
        payment_status="succeeded",
        appointment_status="booked",
        refund_before_cutoff=True,
        now=datetime(2026, 3, 3, 11, 0),
    )
    assert result.is_before_cutoff is False
    assert result.is_eligible_for_refund is False


@pytest.mark.parametrize(
    "payment_status,appointment_status,refund_before_cutoff",
    [
        ("processing", "booked", True),
        ("succeeded", "cancelled", True),
        ("succeeded", "booked", False),
    ],
)
def test_each_condition_blocks_refund(payment_status, appointment_status, refund_before_cutoff):
    result = calculate_cancellation_eligibility(
        starts_at=datetime(2026, 3, 3, 12, 0),
        cancel_cutoff_minutes=60,
        payment_status=payment_status,
        appointment_status=appointment_status,
        refund_before_cutoff=refund_before_cutoff,
        now=datetime(2026, 3, 1, 12, 0),
    )
    assert result.is_before_cutoff is True
    assert result.is_eligible_for_refund is False


def test_eligibility_serializes_camel_case():
    result = calculate_cancellation_eligibility(
        starts_at=datetime(2026, 3, 3, 12, 0),
        cancel_cutoff_minutes=60,
        payment_status="succeeded",
        appointment_status="booked",
        refund_before_cutoff=True,
        now=datetime(2026, 3, 1, 12, 0),
    )
    assert result.to_dict() == {
        "cutoffTime": "2026-03-03T11:00:00",
        "isBeforeCutoff": True,
        "refundAllowedByPolicy": True,
        "paymentSucceeded": True,
        "isEligibleForRefund": True,
    }


# ---- refunds -------------------------------------------------------------


def test_stored_refund_id_short_circuits_the_gateway(db, shop, customer, fake_stripe):
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3), stripe_refund_id="re_existing")

    assert issue_refund(appointment, appointment.payment) == "re_existing"
    assert fake_stripe.refunds == []


def test_already_refunded_error_reuses_gateway_refund(db, shop, customer, fake_stripe):
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3))
    fake_stripe.refund_error = stripe.InvalidRequestError(
        "Charge ch_1 has already been refunded.", None, code="charge_already_refunded"
    )
    fake_stripe.existing_refund = "re_from_stripe"

    assert issue_refund(appointment, appointment.payment) == "re_from_stripe"


def test_refund_errors_become_customer_messages(db, shop, customer, fake_stripe):
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3))
    fake_stripe.refund_error = stripe.RateLimitError("Too many requests")

    with pytest.raises(RefundError) as exc_info:
        issue_refund(appointment, appointment.payment)
    assert exc_info.value.user_message == "Too many requests. Please try again in a moment."


def test_missing_payment_intent_cannot_be_refunded(db, shop, customer):
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3))
    appointment.payment.stripe_payment_intent_id = None

    with pytest.raises(RefundError):
        issue_refund(appointment, appointment.payment)


# ---- service -------------------------------------------------------------


def test_cancel_before_cutoff_refunds_once(db, shop, customer, fake_stripe):
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3))
    service = CancellationService(db)

    result = service.cancel(appointment)

    stored = reload(db, appointment)
    payment = db.query(Payment).filter(Payment.appointment_id == appointment.id).one()
    assert result == {
        "success": True,
        "refunded": True,
        "amount": 20.0,
        "message": "Refunded $20.00 to your card",
        "refundId": "re_test_1",
    }
    assert stored.status == "cancelled"
    assert stored.cancellation_source == "customer"
    assert stored.financial_outcome == "refunded"
    assert stored.resolution_reason == "cancelled_refunded_before_cutoff"
    assert payment.stripe_refund_id == "re_test_1"
    assert payment.refunded_amount_cents == 2000
    assert fake_stripe.refunds[0]["idempotency_key"] == f"refund-{appointment.id}"

    [event] = list_events(db, appointment.id)
    assert event.type == "cancelled"
    assert event.meta["refundId"] == "re_test_1"

    with pytest.raises(HTTPException) as exc_info:
        service.cancel(stored)
    assert exc_info.value.status_code == 400
    assert len(fake_stripe.refunds) == 1


def test_retry_after_partial_failure_reuses_refund(db, shop, customer, fake_stripe):
    # Refund recorded on the payment, but the appointment write never happened
    appointment = make_appointment(
        db, shop, customer, starts_at=in_days(3), stripe_refund_id="re_earlier", refunded_amount_cents=2000
    )

    result = CancellationService(db).cancel(appointment)

    assert result["refundId"] == "re_earlier"
    assert fake_stripe.refunds == []
    assert reload(db, appointment).financial_outcome == "refunded"


def test_cancel_after_cutoff_retains_deposit(db, shop, customer, fake_stripe):
    appointment = make_appointment(
        db, shop, customer, starts_at=datetime.utcnow() + timedelta(hours=2)
    )

    result = CancellationService(db).cancel(appointment)

    stored = reload(db, appointment)
    assert result == {
        "success": True,
        "refunded": False,
        "amount": 0,
        "message": "Appointment cancelled. Deposit retained per cancellation policy.",
    }
    assert stored.status == "cancelled"
    assert stored.financial_outcome == "settled"
    assert stored.resolution_reason == "cancelled_no_refund_after_cutoff"
    assert fake_stripe.refunds == []


def test_late_cancel_of_an_already_resolved_appointment_conflicts(db, shop, customer, fake_stripe):
    appointment = make_appointment(
        db, shop, customer, starts_at=datetime.utcnow() + timedelta(hours=2)
    )
    service = CancellationService(db)
    payment = appointment.payment
    eligibility = service.get_eligibility(appointment, payment)
    # The resolver got there between the eligibility check and the write
    db.query(Appointment).filter(Appointment.id == appointment.id).update(
        {"status": "ended", "financial_outcome": "settled"}, synchronize_session=False
    )
    db.commit()

    with pytest.raises(HTTPException) as exc_info:
        service.cancel_without_refund(appointment, payment, eligibility)

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "Appointment is no longer cancellable"
    stored = reload(db, appointment)
    assert stored.status == "ended"
    assert [e.type for e in list_events(db, appointment.id)] == []


def test_cancel_without_captured_payment_is_voided(db, shop, customer, fake_stripe):
    appointment = make_appointment(
        db, shop, customer, starts_at=in_days(3), payment_status="pending", intent_status="processing"
    )

    result = CancellationService(db).cancel(appointment)

    stored = reload(db, appointment)
    assert result["refunded"] is False
    assert stored.financial_outcome == "voided"
    assert stored.resolution_reason == "cancelled_no_payment_captured"
    assert fake_stripe.refunds == []


def test_policy_snapshot_governs_refund_not_live_policy(db, shop, customer, fake_stripe):
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3), refund_before_cutoff=True)
    shop.policy.refund_before_cutoff = False
    shop.policy.cancel_cutoff_minutes = 10 * 24 * 60
    db.commit()

    result = CancellationService(db).cancel(appointment)

    assert result["refunded"] is True


# ---- routes --------------------------------------------------------------


def test_manage_page_shows_eligibility(client, db, shop, customer):
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3))
    token = create_manage_token(db, appointment.id)

    response = client.get(f"/manage/{token}")

    assert response.status_code == 200
    body = response.json()
    assert body["appointmentId"] == appointment.id
    assert body["amountCents"] == 2000
    assert body["eligibility"]["isEligibleForRefund"] is True


def test_unknown_token_is_404(client, db):
    response = client.post("/manage/nope/cancel")
    assert response.status_code == 404
    assert response.json()["detail"] == "Invalid or expired token"


def test_cancel_route_refunds_and_opens_slot(client, db, shop, customer, offer_loop_triggers):
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3))
    token = create_manage_token(db, appointment.id)

    response = client.post(f"/manage/{token}/cancel")

    assert response.status_code == 200
    assert response.json()["refunded"] is True
    opening = db.query(SlotOpening).one()
    assert opening.source_appointment_id == appointment.id
    assert opening.status == "open"
    assert offer_loop_triggers == [opening.id]

    again = client.post(f"/manage/{token}/cancel")
    assert again.status_code == 400
    assert again.json()["detail"] == {
        "error": "Cannot cancel appointment",
        "reason": "Appointment is already cancelled",
    }


def test_late_cancel_route_opens_no_slot(client, db, shop, customer, offer_loop_triggers):
    appointment = make_appointment(db, shop, customer, starts_at=datetime.utcnow() + timedelta(hours=2))
    token = create_manage_token(db, appointment.id)

    response = client.post(f"/manage/{token}/cancel")

    assert response.status_code == 200
    assert response.json()["refunded"] is False
    assert db.query(SlotOpening).count() == 0
    assert offer_loop_triggers == []


def test_refund_failure_leaves_appointment_booked(client, db, shop, customer, fake_stripe):
    fake_stripe.refund_error = stripe.RateLimitError("Too many requests")
    appointment = make_appointment(db, shop, customer, starts_at=in_days(3))
    token = create_manage_token(db, appointment.id)

    response = client.post(f"/manage/{token}/cancel")

    assert response.status_code == 500
    assert response.json()["detail"] == "Too many requests. Please try again in a moment."
    stored = reload(db, appointment)
    assert stored.status == "booked"
    assert stored.financial_outcome == "unresolved"


def test_manage_routes_are_rate_limited(client, db, fake_redis):
    for _ in range(10):
        assert client.get("/manage/whatever").status_code == 404
    response = client.get("/manage/whatever")
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
