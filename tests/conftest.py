import hashlib
import hmac
import itertools
import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from src.application.engine import build_engine
from src.config import RedemptionMode, Settings
from src.domain.principal import Principal, Role
from src.infrastructure.db.models import Base
from src.infrastructure.db.session import create_db_engine, create_session_factory
from src.infrastructure.payments.gateway import PaymentIntent
from src.infrastructure.payments.razorpay_gateway import RazorpayGateway
from src.main import create_app

NOW = datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "whsec_test_secret"
SIGNING_SECRET = "test-ticket-signing-secret"


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRazorpayGateway(RazorpayGateway):
    """Real webhook verification, canned order creation."""

    def __init__(self, clock):
        super().__init__(
            key_id="rzp_test_key",
            key_secret="rzp_test_secret",
            webhook_secret=WEBHOOK_SECRET,
            clock=clock,
        )
        self._order_ids = itertools.count(1)
        self._lock = threading.Lock()
        self.fail_next = False
        self.orders: list[dict] = []

    def create_payment_intent(self, amount, currency, receipt):
        with self._lock:
            if self.fail_next:
                self.fail_next = False
                raise RuntimeError("provider unavailable")
            order_id = f"order_{next(self._order_ids)}"
            self.orders.append(
                {"id": order_id, "amount": amount, "currency": currency, "receipt": receipt}
            )
        return PaymentIntent(
            reference=order_id,
            client_secret=order_id,
            amount=amount,
            currency=currency,
            key_id=self.key_id,
        )


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def webhook_body(event_name: str, order_id: str, payment_id: str = "pay_1", amount: int | None = None) -> bytes:
    entity = {
        "id": payment_id,
        "order_id": order_id,
        "status": "captured" if event_name == "payment.captured" else "failed",
    }
    if amount is not None:
        entity["amount"] = amount
    payload = {"payment": {"entity": entity}}
    if event_name == "refund.processed":
        payload["refund"] = {"entity": {"id": "rfnd_1", "payment_id": payment_id}}
    body = {
        "entity": "event",
        "account_id": "acc_test",
        "event": event_name,
        "contains": list(payload),
        "payload": payload,
        "created_at": 1773489600,
    }
    return json.dumps(body).encode("utf-8")


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ticketing.db'}",
        ticket_signing_secret=SIGNING_SECRET,
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        razorpay_webhook_secret=WEBHOOK_SECRET,
        transaction_max_attempts=8,
    )


@pytest.fixture
def session_factory(settings):
    db_engine = create_db_engine(settings.database_url)
    Base.metadata.create_all(bind=db_engine)
    yield create_session_factory(db_engine)
    db_engine.dispose()


@pytest.fixture
def gateway(clock):
    return FakeRazorpayGateway(clock)


@pytest.fixture
def engine(settings, session_factory, gateway, clock):
    return build_engine(settings, session_factory, gateway=gateway, clock=clock)


@pytest.fixture
def per_unit_engine(settings, session_factory, gateway, clock):
    per_unit = replace(settings, redemption_mode=RedemptionMode.PER_UNIT)
    return build_engine(per_unit, session_factory, gateway=gateway, clock=clock)


@pytest.fixture
def customer():
    return Principal(user_id="user-1")


@pytest.fixture
def other_customer():
    return Principal(user_id="user-2")


@pytest.fixture
def staff():
    return Principal(user_id="staff-1", roles=frozenset({Role.BUSINESS}))


@pytest.fixture
def make_event(engine, staff):
    def _make_event(capacity=2, unit_price=50000, starts_in=timedelta(hours=6), duration=timedelta(hours=3)):
        start_time = NOW + starts_in
        return engine.register_event(
            staff,
            venue_id="venue-1",
            title="Rooftop Jazz",
            capacity=capacity,
            unit_price=unit_price,
            start_time=start_time,
            end_time=start_time + duration,
        )

    return _make_event


@pytest.fixture
def deliver(engine):
    """Sends a signed provider webhook through the engine."""

    def _deliver(event_name, order_id, event_id=None, payment_id="pay_1", amount=None):
        body = webhook_body(event_name, order_id, payment_id=payment_id, amount=amount)
        return engine.handle_payment_notification(body, sign_webhook(body), event_id)

    return _deliver


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


@pytest.fixture
def signed_webhook():
    def _signed(event_name, order_id, payment_id="pay_1", secret=WEBHOOK_SECRET):
        body = webhook_body(event_name, order_id, payment_id=payment_id)
        return body, sign_webhook(body, secret)

    return _signed


@pytest.fixture
def confirmed_booking(engine, customer, deliver):
    """Books and pays; returns the confirmed booking as the owner sees it."""

    def _confirmed_booking(event, quantity=1, principal=None):
        principal = principal or customer
        created = engine.create_booking(principal, event.id, quantity)
        deliver("payment.captured", created.payment_ref, event_id=f"evt_paid_{created.booking.id}")
        return engine.get_booking(principal, created.booking.id)

    return _confirmed_booking
