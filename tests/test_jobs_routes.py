from datetime import datetime, timedelta

from app import config
from app.models import Appointment, CustomerScore

from .factories import cancelled_slot, make_appointment, make_customer, make_shop

CRON_HEADERS = {"x-cron-secret": "test-cron-secret"}
INTERNAL_HEADERS = {"x-internal-secret": "test-internal-secret"}


def test_jobs_require_the_cron_secret(client, db):
    assert client.post("/jobs/resolve-outcomes").status_code == 401
    assert client.post("/jobs/resolve-outcomes", headers={"x-cron-secret": "nope"}).status_code == 401


def test_unconfigured_secret_is_a_server_error(client, db, monkeypatch):
    monkeypatch.setattr(config, "CRON_SECRET", None)

    response = client.post("/jobs/resolve-outcomes", headers=CRON_HEADERS)

    assert response.status_code == 500
    assert response.json()["detail"] == "CRON_SECRET not configured"


def test_resolve_outcomes_job(client, db):
    shop = make_shop(db)
    customer = make_customer(db, shop)
    appointment = make_appointment(db, shop, customer, starts_at=datetime.utcnow() - timedelta(hours=3))

    response = client.post("/jobs/resolve-outcomes?limit=10&lockId=99", headers=CRON_HEADERS)

    assert response.status_code == 200
    assert response.json() == {
        "total": 1,
        "resolved": 1,
        "skipped": 0,
        "backfilled": 0,
        "noShowsDetected": 0,
        "errors": [],
    }
    db.expire_all()
    assert db.get(Appointment, appointment.id).financial_outcome == "settled"


def test_expire_offers_job(client, db):
    response = client.post("/jobs/expire-offers", headers=CRON_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"total": 0, "expired": 0, "triggered": 0, "errors": []}


def test_recompute_scores_job(client, db):
    shop = make_shop(db)
    customer = make_customer(db, shop)
    make_appointment(
        db,
        shop,
        customer,
        starts_at=datetime.utcnow() - timedelta(days=2),
        status="ended",
        financial_outcome="settled",
        resolution_reason="payment_captured",
    )

    response = client.post("/jobs/recompute-scores", headers=CRON_HEADERS)

    assert response.status_code == 200
    assert response.json()["updated"] == 1
    score = db.query(CustomerScore).filter(CustomerScore.customer_id == customer.id).one()
    assert score.score == 70


def test_internal_offer_loop_route(client, db):
    shop = make_shop(db)
    _, opening = cancelled_slot(db, shop, (datetime.utcnow() + timedelta(days=2)).replace(microsecond=0))

    assert client.post("/internal/slot-recovery/offer-loop", json={"slotOpeningId": opening.id}).status_code == 401

    response = client.post(
        "/internal/slot-recovery/offer-loop", json={"slotOpeningId": opening.id}, headers=INTERNAL_HEADERS
    )
    assert response.status_code == 200
    assert response.json()["status"] == "expired"

    missing = client.post(
        "/internal/slot-recovery/offer-loop", json={"slotOpeningId": 9999}, headers=INTERNAL_HEADERS
    )
    assert missing.status_code == 404


def test_health_reports_dependencies(client, db):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"]["connected"] is True
    assert body["redis"]["connected"] is True
