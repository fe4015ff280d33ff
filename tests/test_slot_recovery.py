import asyncio
from datetime import datetime, timedelta

import pytest
import redis

from app import config, locks
from app.domain.slot_recovery import service as slot_recovery_service_module
from app.domain.slot_recovery.service import (
    ACCEPTED,
    SLOT_NO_LONGER_AVAILABLE,
    SLOT_TAKEN,
    SlotRecoveryService,
)
from app.models import Appointment
from app.models_slot_recovery import SlotOffer, SlotOpening
from app.services import stripe_service

from .factories import (
    cancelled_slot,
    make_appointment,
    make_customer,
    make_offer,
    make_opening,
    make_score,
    make_shop,
)


def future(days=3):
    return (datetime.utcnow() + timedelta(days=days)).replace(microsecond=0)


@pytest.fixture
def shop(db):
    return make_shop(db)


# ---- openings ------------------------------------------------------------


def test_opening_created_from_paid_future_cancellation(db, shop):
    customer = make_customer(db, shop)
    appointment = make_appointment(db, shop, customer, starts_at=future(), status="cancelled")

    opening = SlotRecoveryService(db).create_slot_opening_from_cancellation(appointment.id)

    assert opening.status == "open"
    assert opening.starts_at == appointment.starts_at
    assert opening.ends_at == appointment.ends_at


def test_duplicate_opening_is_ignored(db, shop):
    customer = make_customer(db, shop)
    appointment = make_appointment(db, shop, customer, starts_at=future(), status="cancelled")
    service = SlotRecoveryService(db)

    assert service.create_slot_opening_from_cancellation(appointment.id) is not None
    assert service.create_slot_opening_from_cancellation(appointment.id) is None
    assert db.query(SlotOpening).count() == 1


def test_no_opening_without_captured_payment_or_in_the_past(db, shop):
    customer = make_customer(db, shop)
    unpaid = make_appointment(
        db, shop, customer, starts_at=future(), status="cancelled", intent_status="processing"
    )
    past = make_appointment(
        db, shop, customer, starts_at=datetime.utcnow() - timedelta(hours=2), status="cancelled"
    )
    service = SlotRecoveryService(db)

    assert service.create_slot_opening_from_cancellation(unpaid.id) is None
    assert service.create_slot_opening_from_cancellation(past.id) is None
    assert service.create_slot_opening_from_cancellation(999) is None


# ---- candidates ----------------------------------------------------------


def test_eligible_customers_are_filtered_and_ranked(db, shop, fake_redis):
    _, opening = cancelled_slot(db, shop, future())
    top = make_customer(db, shop, phone="+15550000001", full_name="Top")
    neutral = make_customer(db, shop, phone="+15550000002", full_name="Neutral")
    unscored = make_customer(db, shop, phone="+15550000003", full_name="Unscored")
    make_customer(db, shop, phone="+15550000004", full_name="Opted Out", sms_opt_in=False)
    already_offered = make_customer(db, shop, phone="+15550000005", full_name="Offered")
    busy = make_customer(db, shop, phone="+15550000006", full_name="Busy")
    cooling = make_customer(db, shop, phone="+15550000007", full_name="Cooling")
    other_shop = make_shop(db, name="Elsewhere")
    make_customer(db, other_shop, phone="+15550000008", full_name="Other Shop")

    make_score(db, top, tier="top", score=90)
    make_score(db, neutral, tier="neutral", score=45)
    make_offer(db, opening, already_offered)
    make_appointment(db, shop, busy, starts_at=opening.starts_at + timedelta(minutes=30))
    locks.set_cooldown(cooling.id)

    candidates = SlotRecoveryService(db).get_eligible_customers(opening)

    assert [c.customer_id for c in candidates] == [top.id, unscored.id, neutral.id]


def test_risk_customers_excluded_when_shop_asks(db):
    shop = make_shop(db, exclude_risk_from_offers=True)
    _, opening = cancelled_slot(db, shop, future())
    risky = make_customer(db, shop, phone="+15550000001")
    fine = make_customer(db, shop, phone="+15550000002")
    make_score(db, risky, tier="risk", score=20)

    candidates = SlotRecoveryService(db).get_eligible_customers(opening)

    assert [c.customer_id for c in candidates] == [fine.id]


def test_cooldown_lookup_failure_does_not_block_offers(db, shop, monkeypatch):
    _, opening = cancelled_slot(db, shop, future())
    customer = make_customer(db, shop)

    def broken(_ids):
        raise redis.ConnectionError("redis down")

    monkeypatch.setattr(locks, "customers_in_cooldown", broken)

    candidates = SlotRecoveryService(db).get_eligible_customers(opening)
    assert [c.customer_id for c in candidates] == [customer.id]


# ---- offer loop ----------------------------------------------------------


def test_offer_loop_sends_one_offer(db, shop, sms_outbox):
    _, opening = cancelled_slot(db, shop, future())
    first = make_customer(db, shop, phone="+15550000001")
    make_customer(db, shop, phone="+15550000002")
    make_score(db, first, tier="top", score=95)

    result = asyncio.run(SlotRecoveryService(db).run_offer_loop(opening.id))

    offer = db.query(SlotOffer).one()
    assert result == {"status": "sent", "slotOpeningId": opening.id, "offerId": offer.id}
    assert offer.customer_id == first.id
    assert offer.status == "sent"
    assert offer.expires_at - offer.sent_at == timedelta(minutes=15)
    [message] = sms_outbox.messages
    assert message["to"] == "+15550000001"
    assert "Reply YES to book" in message["body"]


def test_failed_sms_moves_to_next_candidate(db, shop, sms_outbox):
    _, opening = cancelled_slot(db, shop, future())
    first = make_customer(db, shop, phone="+15550000001")
    second = make_customer(db, shop, phone="+15550000002")
    make_score(db, first, tier="top", score=95)
    sms_outbox.failing_numbers.add("+15550000001")

    result = asyncio.run(SlotRecoveryService(db).run_offer_loop(opening.id))

    assert result["status"] == "sent"
    offer = db.query(SlotOffer).one()
    assert offer.customer_id == second.id


def test_offer_loop_expires_opening_without_candidates(db, shop):
    _, opening = cancelled_slot(db, shop, future())

    result = asyncio.run(SlotRecoveryService(db).run_offer_loop(opening.id))

    db.refresh(opening)
    assert result["status"] == "expired"
    assert opening.status == "expired"


def test_offer_loop_skips_closed_and_missing_openings(db, shop):
    source = make_appointment(
        db, shop, make_customer(db, shop, phone="+15550000050"), starts_at=future(5), status="cancelled"
    )
    filled = make_opening(db, source, status="filled")
    service = SlotRecoveryService(db)

    assert asyncio.run(service.run_offer_loop(filled.id))["status"] == "skipped"
    assert asyncio.run(service.run_offer_loop(9999))["status"] == "not_found"


# ---- acceptance ----------------------------------------------------------


def test_accepting_an_offer_books_the_slot(db, shop, sms_outbox, fake_redis):
    _, opening = cancelled_slot(db, shop, future())
    customer = make_customer(db, shop, phone="+15550000001")
    offer = make_offer(db, opening, customer)

    result = asyncio.run(SlotRecoveryService(db).accept_offer(offer.id))

    db.expire_all()
    assert result.status == ACCEPTED
    appointment = db.query(Appointment).filter(Appointment.id == result.appointment_id).one()
    assert appointment.customer_id == customer.id
    assert appointment.source == "slot_recovery"
    assert appointment.source_slot_opening_id == opening.id
    assert appointment.status == "pending"
    assert appointment.payment.stripe_payment_intent_id == "pi_test_1"
    assert db.get(SlotOpening, opening.id).status == "filled"
    assert db.get(SlotOffer, offer.id).status == "accepted"
    assert result.payment_url == f"https://book.example.com/pay/{appointment.id}"
    assert sms_outbox.to("+15550000001")[-1]["body"].endswith(result.payment_url)
    assert fake_redis.exists(locks.cooldown_key(customer.id))
    assert fake_redis.locks == {}


def test_concurrent_yes_replies_book_once(db, shop):
    _, opening = cancelled_slot(db, shop, future())
    first = make_customer(db, shop, phone="+15550000001")
    second = make_customer(db, shop, phone="+15550000002")
    first_offer = make_offer(db, opening, first)
    second_offer = make_offer(db, opening, second)
    service = SlotRecoveryService(db)

    async def both():
        return await asyncio.gather(
            service.accept_offer(first_offer.id), service.accept_offer(second_offer.id)
        )

    results = asyncio.run(both())

    assert sorted(r.status for r in results) == sorted([ACCEPTED, SLOT_TAKEN])
    live = (
        db.query(Appointment)
        .filter(Appointment.starts_at == opening.starts_at, Appointment.status.in_(["pending", "booked"]))
        .all()
    )
    assert len(live) == 1


def test_lapsed_lock_still_books_once(db, shop, monkeypatch):
    _, opening = cancelled_slot(db, shop, future())
    first = make_customer(db, shop, phone="+15550000001")
    second = make_customer(db, shop, phone="+15550000002")
    first_offer = make_offer(db, opening, first)
    second_offer = make_offer(db, opening, second)
    monkeypatch.setattr(locks, "acquire_slot_lock", lambda shop_id, starts_at: object())
    monkeypatch.setattr(locks, "release_slot_lock", lambda lock: None)
    service = SlotRecoveryService(db)

    winner = asyncio.run(service.accept_offer(first_offer.id))
    loser = asyncio.run(service.accept_offer(second_offer.id))

    assert winner.status == ACCEPTED
    assert loser.status == SLOT_NO_LONGER_AVAILABLE
    db.expire_all()
    assert db.get(SlotOffer, second_offer.id).status == "sent"
    assert db.query(Appointment).filter(Appointment.customer_id == second.id).count() == 0


def test_redis_outage_falls_back_to_conditional_writes(db, shop, monkeypatch):
    _, opening = cancelled_slot(db, shop, future())
    customer = make_customer(db, shop, phone="+15550000001")
    offer = make_offer(db, opening, customer)

    def unavailable():
        raise redis.ConnectionError("redis down")

    monkeypatch.setattr(locks, "get_redis_client", unavailable)

    result = asyncio.run(SlotRecoveryService(db).accept_offer(offer.id))

    assert result.status == ACCEPTED


def test_offer_for_a_deleted_opening_is_no_longer_available(db, shop, fake_stripe):
    _, opening = cancelled_slot(db, shop, future())
    customer = make_customer(db, shop, phone="+15550000001")
    offer = make_offer(db, opening, customer)
    db.query(SlotOpening).filter(SlotOpening.id == opening.id).delete(synchronize_session=False)
    db.commit()

    result = asyncio.run(SlotRecoveryService(db).accept_offer(offer.id))

    assert result.status == SLOT_NO_LONGER_AVAILABLE
    assert fake_stripe.intents == []
    assert db.query(Appointment).filter(Appointment.customer_id == customer.id).count() == 0


def test_stripe_calls_finish_inside_the_slot_lock():
    assert stripe_service.worst_case_call_seconds() < config.SLOT_LOCK_TTL_SECONDS


def test_lost_race_cancels_the_new_intent(db, shop, monkeypatch, fake_stripe):
    _, opening = cancelled_slot(db, shop, future())
    customer = make_customer(db, shop, phone="+15550000001")
    offer = make_offer(db, opening, customer)
    real_create = slot_recovery_service_module.create_appointment

    def create_then_lose_the_opening(db_session, **kwargs):
        booking = real_create(db_session, **kwargs)
        db_session.query(SlotOpening).filter(SlotOpening.id == opening.id).update(
            {"status": "filled"}, synchronize_session=False
        )
        db_session.commit()
        return booking

    monkeypatch.setattr(slot_recovery_service_module, "create_appointment", create_then_lose_the_opening)

    result = asyncio.run(SlotRecoveryService(db).accept_offer(offer.id))

    assert result.status == SLOT_NO_LONGER_AVAILABLE
    db.expire_all()
    appointment = db.query(Appointment).filter(Appointment.customer_id == customer.id).one()
    assert appointment.status == "cancelled"
    assert appointment.cancellation_source == "system"
    assert fake_stripe.cancelled_intents == [
        {"payment_intent_id": "pi_test_1", "idempotency_key": f"cancel-intent-{appointment.id}"}
    ]


def test_latest_open_offer_lookup(db, shop):
    source, opening = cancelled_slot(db, shop, future())
    _, later_opening = cancelled_slot(db, shop, future(4), customer=source.customer)
    customer = make_customer(db, shop, phone="+15550000001")
    make_offer(db, opening, customer, sent_at=datetime.utcnow() - timedelta(minutes=5))
    newest = make_offer(db, later_opening, customer)
    service = SlotRecoveryService(db)

    assert service.find_latest_open_offer("+15550000001").id == newest.id
    assert service.find_latest_open_offer("+15550009876") is None


def test_expired_offers_are_not_found(db, shop):
    _, opening = cancelled_slot(db, shop, future())
    customer = make_customer(db, shop, phone="+15550000001")
    make_offer(db, opening, customer, sent_at=datetime.utcnow() - timedelta(minutes=20))

    assert SlotRecoveryService(db).find_latest_open_offer("+15550000001") is None


# ---- expiry --------------------------------------------------------------


def test_expiring_an_offer_moves_to_the_next_candidate(db, shop, sms_outbox):
    _, opening = cancelled_slot(db, shop, future())
    first = make_customer(db, shop, phone="+15550000001")
    second = make_customer(db, shop, phone="+15550000002")
    stale = make_offer(db, opening, first, sent_at=datetime.utcnow() - timedelta(minutes=20))

    summary = asyncio.run(SlotRecoveryService(db).expire_offers())

    db.expire_all()
    assert summary == {"total": 1, "expired": 1, "triggered": 1, "errors": []}
    assert db.get(SlotOffer, stale.id).status == "expired"
    fresh = db.query(SlotOffer).filter(SlotOffer.customer_id == second.id).one()
    assert fresh.status == "sent"
    assert [m["to"] for m in sms_outbox.messages] == ["+15550000002"]


def test_last_expired_offer_closes_the_opening(db, shop):
    _, opening = cancelled_slot(db, shop, future())
    only = make_customer(db, shop, phone="+15550000001")
    make_offer(db, opening, only, sent_at=datetime.utcnow() - timedelta(minutes=20))

    asyncio.run(SlotRecoveryService(db).expire_offers())

    db.expire_all()
    assert db.get(SlotOpening, opening.id).status == "expired"
