import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

import pytest

from src.application.engine import build_engine
from src.domain.exceptions import (
    BookingNotFoundError,
    EventNotFoundError,
    InsufficientInventoryError,
    InvalidRequestError,
    InvalidStateError,
    PaymentGatewayError,
    PermissionDeniedError,
)
from src.domain.payment_events import PaymentOutcome
from src.domain.principal import Principal, Role
from src.domain.state_machine import BookingStatus


def _available(engine, event):
    return engine.get_availability(event.id).available_units


# ---------------------
# CREATE BOOKING
# ---------------------

def test_create_booking_reserves_and_opens_payment(engine, customer, gateway, make_event, clock):
    event = make_event(capacity=4, unit_price=50000)

    created = engine.create_booking(customer, event.id, 3)

    assert created.booking.status is BookingStatus.PENDING
    assert created.booking.quantity == 3
    assert created.booking.total_amount == 3 * 50000 + 200
    assert created.booking.currency == "INR"
    assert created.booking.expires_at == clock.now + timedelta(minutes=15)
    assert created.booking.payment_ref == created.payment_ref == "order_1"
    assert created.key_id == "rzp_test_key"
    assert gateway.orders[0]["receipt"] == created.booking.id
    assert _available(engine, event) == 1


def test_create_booking_over_capacity(engine, customer, make_event):
    event = make_event(capacity=2)

    with pytest.raises(InsufficientInventoryError):
        engine.create_booking(customer, event.id, 3)
    assert _available(engine, event) == 2


def test_create_booking_unknown_event(engine, customer):
    with pytest.raises(EventNotFoundError):
        engine.create_booking(customer, "missing-event", 1)


def test_create_booking_rejects_zero_quantity(engine, customer, make_event):
    event = make_event()

    with pytest.raises(InvalidRequestError):
        engine.create_booking(customer, event.id, 0)


def test_create_booking_after_event_end(engine, customer, make_event, clock):
    event = make_event(starts_in=timedelta(hours=1), duration=timedelta(hours=1))
    clock.advance(hours=3)

    with pytest.raises(InvalidStateError):
        engine.create_booking(customer, event.id, 1)


def test_gateway_failure_cancels_and_releases(engine, customer, gateway, make_event):
    event = make_event(capacity=2)
    gateway.fail_next = True

    with pytest.raises(RuntimeError):
        engine.create_booking(customer, event.id, 2)

    assert _available(engine, event) == 2


def test_unconfigured_gateway_keys_surface_as_gateway_error(
    settings, session_factory, clock, customer, staff
):
    engine = build_engine(
        replace(settings, razorpay_key_id=None, razorpay_key_secret=None),
        session_factory,
        clock=clock,
    )
    event = engine.register_event(
        staff,
        venue_id="venue-1",
        title="Unpaid",
        capacity=1,
        unit_price=100,
        start_time=clock.now + timedelta(hours=2),
        end_time=clock.now + timedelta(hours=3),
    )

    with pytest.raises(PaymentGatewayError):
        engine.create_booking(customer, event.id, 1)
    assert engine.get_availability(event.id).available_units == 1


# ---------------------
# PAYMENT EVENTS
# ---------------------

def test_payment_success_confirms_and_issues_ticket(engine, customer, make_event, deliver):
    event = make_event()
    created = engine.create_booking(customer, event.id, 2)

    application = deliver("payment.captured", created.payment_ref, event_id="evt_1")

    assert application.outcome is PaymentOutcome.APPLIED
    assert application.status == "confirmed"
    booking = engine.get_booking(customer, created.booking.id)
    assert booking.status is BookingStatus.CONFIRMED
    assert booking.ticket_token
    assert engine.codec.verify(booking.ticket_token).booking_id == booking.id
    assert _available(engine, event) == 0


def test_duplicate_payment_event_is_noop(engine, customer, make_event, deliver):
    event = make_event()
    created = engine.create_booking(customer, event.id, 1)

    first = deliver("payment.captured", created.payment_ref, event_id="evt_1")
    token = engine.issue_ticket(customer, created.booking.id)
    second = deliver("payment.captured", created.payment_ref, event_id="evt_1")

    assert first.outcome is PaymentOutcome.APPLIED
    assert second.outcome is PaymentOutcome.DUPLICATE
    assert second.status == "confirmed"
    assert engine.issue_ticket(customer, created.booking.id) == token
    assert _available(engine, event) == 1


def test_redelivered_body_without_event_id_dedupes(engine, customer, make_event, deliver):
    event = make_event()
    created = engine.create_booking(customer, event.id, 1)

    deliver("payment.failed", created.payment_ref)
    again = deliver("payment.failed", created.payment_ref)

    assert again.outcome is PaymentOutcome.DUPLICATE
    assert _available(engine, event) == 2


def test_payment_failure_releases_inventory(engine, customer, make_event, deliver):
    event = make_event(capacity=3)
    created = engine.create_booking(customer, event.id, 3)
    assert _available(engine, event) == 0

    application = deliver("payment.failed", created.payment_ref, event_id="evt_fail")

    assert application.outcome is PaymentOutcome.APPLIED
    assert application.status == "cancelled"
    assert _available(engine, event) == 3
    assert engine.create_booking(customer, event.id, 3).booking.status is BookingStatus.PENDING


def test_failure_after_success_is_stale(engine, customer, make_event, deliver):
    event = make_event()
    created = engine.create_booking(customer, event.id, 1)
    deliver("payment.captured", created.payment_ref, event_id="evt_1")

    application = deliver("payment.failed", created.payment_ref, event_id="evt_2")

    assert application.outcome is PaymentOutcome.STALE
    assert application.status == "confirmed"
    assert _available(engine, event) == 1


def test_success_after_expiry_is_late_and_keeps_inventory_released(
    engine, customer, make_event, deliver, clock
):
    event = make_event(capacity=1)
    created = engine.create_booking(customer, event.id, 1)
    clock.advance(minutes=16)

    application = deliver("payment.captured", created.payment_ref, event_id="evt_late")

    assert application.outcome is PaymentOutcome.LATE_SUCCESS
    assert application.status == "cancelled"
    assert _available(engine, event) == 1


def test_refund_releases_inventory_before_event_start(engine, customer, make_event, deliver):
    event = make_event(capacity=2)
    created = engine.create_booking(customer, event.id, 2)
    deliver("payment.captured", created.payment_ref, event_id="evt_1")

    application = deliver("refund.processed", created.payment_ref, event_id="evt_refund")

    assert application.outcome is PaymentOutcome.APPLIED
    assert application.status == "refunded"
    assert _available(engine, event) == 2


def test_refund_after_event_start_keeps_inventory(engine, customer, make_event, deliver, clock):
    event = make_event(capacity=2)
    created = engine.create_booking(customer, event.id, 2)
    deliver("payment.captured", created.payment_ref, event_id="evt_1")
    clock.advance(hours=7)

    application = deliver("refund.processed", created.payment_ref, event_id="evt_refund")

    assert application.status == "refunded"
    assert _available(engine, event) == 0


def test_refund_before_payment_is_rejected_and_not_recorded(engine, customer, make_event, deliver):
    event = make_event()
    created = engine.create_booking(customer, event.id, 1)

    with pytest.raises(InvalidStateError):
        deliver("refund.processed", created.payment_ref, event_id="evt_early_refund")

    deliver("payment.captured", created.payment_ref, event_id="evt_1")
    application = deliver("refund.processed", created.payment_ref, event_id="evt_early_refund")
    assert application.outcome is PaymentOutcome.APPLIED
    assert application.status == "refunded"


def test_unknown_payment_ref(deliver):
    with pytest.raises(BookingNotFoundError):
        deliver("payment.captured", "order_unknown", event_id="evt_1")


def test_unsupported_event_is_recorded_and_ignored(engine, customer, make_event, deliver):
    event = make_event()
    created = engine.create_booking(customer, event.id, 1)

    first = deliver("payment.authorized", created.payment_ref, event_id="evt_auth")
    second = deliver("payment.authorized", created.payment_ref, event_id="evt_auth")

    assert first.outcome is PaymentOutcome.IGNORED
    assert second.outcome is PaymentOutcome.DUPLICATE
    assert engine.get_booking(customer, created.booking.id).status is BookingStatus.PENDING



def test_amount_mismatch_is_logged_but_applied(engine, customer, make_event, deliver, caplog):
    event = make_event(unit_price=50000)
    created = engine.create_booking(customer, event.id, 1)

    with caplog.at_level(logging.ERROR, logger="src.application.booking_service"):
        application = deliver("payment.captured", created.payment_ref, event_id="evt_1", amount=100)

    assert application.outcome is PaymentOutcome.APPLIED
    assert f"captured 100, expected {created.booking.total_amount}" in caplog.text


def test_matching_amount_logs_nothing(engine, customer, make_event, deliver, caplog):
    event = make_event(unit_price=50000)
    created = engine.create_booking(customer, event.id, 1)

    with caplog.at_level(logging.ERROR, logger="src.application.booking_service"):
        deliver(
            "payment.captured",
            created.payment_ref,
            event_id="evt_1",
            amount=created.booking.total_amount,
        )

    assert "expected" not in caplog.text


def test_concurrent_duplicate_deliveries_apply_once(
    engine, customer, make_event, confirmed_booking, deliver
):
    event = make_event(capacity=2)
    booking = confirmed_booking(event, quantity=2)
    deliveries = 8
    barrier = threading.Barrier(deliveries, timeout=10)

    def send(_):
        barrier.wait()
        return deliver("refund.processed", booking.payment_ref, event_id="evt_refund_dup").outcome

    with ThreadPoolExecutor(max_workers=deliveries) as pool:
        outcomes = list(pool.map(send, range(deliveries)))

    assert outcomes.count(PaymentOutcome.APPLIED) == 1
    assert set(outcomes) - {PaymentOutcome.APPLIED} <= {PaymentOutcome.DUPLICATE, PaymentOutcome.STALE}
    assert engine.get_booking(customer, booking.id).status is BookingStatus.REFUNDED
    assert _available(engine, event) == 2


# ---------------------
# EXPIRY
# ---------------------

def test_expire_reservations_cancels_stale_pending(engine, customer, make_event, clock):
    event = make_event(capacity=3)
    stale = engine.create_booking(customer, event.id, 2)
    clock.advance(minutes=10)
    fresh = engine.create_booking(customer, event.id, 1)
    clock.advance(minutes=6)

    assert engine.expire_reservations() == 1
    assert engine.expire_reservations() == 0

    assert engine.get_booking(customer, stale.booking.id).status is BookingStatus.CANCELLED
    assert engine.get_booking(customer, fresh.booking.id).status is BookingStatus.PENDING
    assert _available(engine, event) == 2


def test_reading_an_expired_booking_expires_it(engine, customer, make_event, clock):
    event = make_event(capacity=1)
    created = engine.create_booking(customer, event.id, 1)
    clock.advance(minutes=15)

    booking = engine.get_booking(customer, created.booking.id)

    assert booking.status is BookingStatus.CANCELLED
    assert _available(engine, event) == 1


# ---------------------
# CANCELLATION
# ---------------------

def test_owner_cancels_pending_booking(engine, customer, make_event):
    event = make_event()
    created = engine.create_booking(customer, event.id, 2)

    booking = engine.cancel_booking(customer, created.booking.id)

    assert booking.status is BookingStatus.CANCELLED
    assert _available(engine, event) == 2


def test_owner_cancels_confirmed_booking_before_start(engine, customer, make_event, confirmed_booking):
    event = make_event()
    booking = confirmed_booking(event, quantity=2)

    cancelled = engine.cancel_booking(customer, booking.id)

    assert cancelled.status is BookingStatus.CANCELLED
    assert _available(engine, event) == 2


def test_cancel_after_event_start_is_rejected(
    engine, customer, make_event, confirmed_booking, clock
):
    event = make_event()
    booking = confirmed_booking(event)
    clock.advance(hours=6, seconds=1)

    with pytest.raises(InvalidStateError):
        engine.cancel_booking(customer, booking.id)


def test_cancel_twice_is_rejected(engine, customer, make_event):
    event = make_event()
    created = engine.create_booking(customer, event.id, 1)
    engine.cancel_booking(customer, created.booking.id)

    with pytest.raises(InvalidStateError):
        engine.cancel_booking(customer, created.booking.id)
    assert _available(engine, event) == 2


def test_only_owner_or_admin_cancels(engine, customer, other_customer, staff, make_event):
    event = make_event()
    created = engine.create_booking(customer, event.id, 1)

    with pytest.raises(PermissionDeniedError):
        engine.cancel_booking(other_customer, created.booking.id)
    with pytest.raises(PermissionDeniedError):
        engine.cancel_booking(staff, created.booking.id)

    admin = Principal(user_id="admin-1", roles=frozenset({Role.ADMIN}))
    assert engine.cancel_booking(admin, created.booking.id).status is BookingStatus.CANCELLED


# ---------------------
# TICKETS & ACCESS
# ---------------------

def test_issue_ticket_for_pending_booking_is_rejected(engine, customer, make_event):
    event = make_event()
    created = engine.create_booking(customer, event.id, 1)

    with pytest.raises(InvalidStateError):
        engine.issue_ticket(customer, created.booking.id)


def test_issue_ticket_returns_stored_token(engine, customer, make_event, confirmed_booking):
    event = make_event()
    booking = confirmed_booking(event)

    assert engine.issue_ticket(customer, booking.id) == booking.ticket_token


def test_other_user_cannot_read_or_ticket_booking(
    engine, customer, other_customer, staff, make_event, confirmed_booking
):
    event = make_event()
    booking = confirmed_booking(event)

    with pytest.raises(PermissionDeniedError):
        engine.get_booking(other_customer, booking.id)
    with pytest.raises(PermissionDeniedError):
        engine.issue_ticket(other_customer, booking.id)
    assert engine.get_booking(staff, booking.id).id == booking.id


def test_unknown_booking(engine, customer):
    with pytest.raises(BookingNotFoundError):
        engine.get_booking(customer, "missing-booking")


def test_register_event_requires_business_role(engine, customer, clock):
    with pytest.raises(PermissionDeniedError):
        engine.register_event(
            customer,
            venue_id="venue-1",
            title="Not mine",
            capacity=10,
            unit_price=0,
            start_time=clock.now,
            end_time=clock.now + timedelta(hours=1),
        )
