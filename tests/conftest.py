import asyncio
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["TWILIO_ACCOUNT_SID"] = "ACtest"
os.environ["TWILIO_AUTH_TOKEN"] = "twilio-test-token"
os.environ["TWILIO_PHONE_NUMBER"] = "+15550009999"
os.environ["APP_URL"] = "https://book.example.com"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from redis.exceptions import LockError  # noqa: E402

from app import redis_client as redis_client_module  # noqa: E402
from app.database import Base, SessionLocal, engine, get_db  # noqa: E402
from app.domain.cancellation import router as manage_router_module  # noqa: E402
from app.main import app  # noqa: E402
from app.routes import stripe_webhooks as stripe_webhooks_module  # noqa: E402
from app.services import message_log as message_log_module  # noqa: E402
from app.services import stripe_service  # noqa: E402
from app.services.twilio_service import NotificationError  # noqa: E402


class FakeLock:
    def __init__(self, server, name, timeout):
        self.server = server
        self.name = name
        self.timeout = timeout
        self.token = None

    def acquire(self):
        if self.name in self.server.locks:
            return False
        self.token = object()
        self.server.locks[self.name] = self.token
        return True

    def release(self):
        if self.token is None or self.server.locks.get(self.name) is not self.token:
            raise LockError("Cannot release a lock that's no longer owned")
        del self.server.locks[self.name]
        self.token = None


class FakePipeline:
    def __init__(self, server):
        self.server = server
        self.calls = []

    def __getattr__(self, name):
        method = getattr(self.server, name)

        def queue(*args, **kwargs):
            self.calls.append((method, args, kwargs))
            return self

        return queue

    def execute(self):
        results = [method(*args, **kwargs) for method, args, kwargs in self.calls]
        self.calls = []
        return results


class FakeRedis:
    """In-memory stand-in for the handful of redis commands the app uses"""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.locks = {}

    def ping(self):
        return True

    def lock(self, name, timeout=None, blocking=True):
        return FakeLock(self, name, timeout)

    def set(self, key, value, ex=None):
        self.values[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    def get(self, key):
        return self.values.get(key)

    def exists(self, key):
        return int(key in self.values)

    def incr(self, key):
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    def ttl(self, key):
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def pipeline(self):
        return FakePipeline(self)


class FakeStripe:
    """Records calls the app makes through app.services.stripe_service"""

    def __init__(self):
        self.intents = []
        self.refunds = []
        self.intent_error = None
        self.refund_error = None
        self.existing_refund = None
        self.cancelled_intents = []
        self.cancel_error = None

    def create_payment_intent(self, amount_cents, currency, metadata, idempotency_key):
        if self.intent_error:
            raise self.intent_error
        self.intents.append(
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        intent_id = f"pi_test_{len(self.intents)}"
        return intent_id, f"{intent_id}_secret"

    def create_refund(self, payment_intent_id, amount_cents, metadata, idempotency_key):
        self.refunds.append(
            {
                "payment_intent_id": payment_intent_id,
                "amount_cents": amount_cents,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        if self.refund_error:
            raise self.refund_error
        return f"re_test_{len(self.refunds)}"

    def find_existing_refund(self, payment_intent_id):
        return self.existing_refund

    def cancel_payment_intent(self, payment_intent_id, idempotency_key):
        self.cancelled_intents.append(
            {"payment_intent_id": payment_intent_id, "idempotency_key": idempotency_key}
        )
        if self.cancel_error:
            raise self.cancel_error
        return "canceled"


class SmsOutbox:
    def __init__(self):
        self.messages = []
        self.failing_numbers = set()

    async def send_sms(self, to_phone, message_body, message_type="generic"):
        # Yield so concurrent handlers interleave the way they do in production
        await asyncio.sleep(0)
        if to_phone in self.failing_numbers:
            raise NotificationError(f"Undeliverable number {to_phone}")
        self.messages.append({"to": to_phone, "body": message_body, "type": message_type})
        return f"SM{len(self.messages):032d}"

    def to(self, phone):
        return [m for m in self.messages if m["to"] == phone]


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    server = FakeRedis()
    monkeypatch.setattr(redis_client_module, "redis_client", server)
    return server


@pytest.fixture(autouse=True)
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe_service, "create_payment_intent", fake.create_payment_intent)
    monkeypatch.setattr(stripe_service, "create_refund", fake.create_refund)
    monkeypatch.setattr(stripe_service, "find_existing_refund", fake.find_existing_refund)
    monkeypatch.setattr(stripe_service, "cancel_payment_intent", fake.cancel_payment_intent)
    return fake


@pytest.fixture(autouse=True)
def sms_outbox(monkeypatch):
    outbox = SmsOutbox()
    monkeypatch.setattr(message_log_module, "send_sms", outbox.send_sms)
    return outbox


@pytest.fixture(autouse=True)
def offer_loop_triggers(monkeypatch):
    triggered = []

    async def fake_trigger(slot_opening_id):
        triggered.append(slot_opening_id)
        return True

    monkeypatch.setattr(manage_router_module, "trigger_offer_loop", fake_trigger)
    monkeypatch.setattr(stripe_webhooks_module, "trigger_offer_loop", fake_trigger)
    return triggered


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
