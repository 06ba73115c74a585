import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from src.application.inventory_ledger import InventoryLedger
from src.config import Settings
from src.domain.exceptions import (
    BookingNotFoundError,
    InvalidRequestError,
    InvalidStateError,
    PermissionDeniedError,
    TicketingEngineError,
)
from src.domain.payment_events import (
    PaymentApplication,
    PaymentEvent,
    PaymentEventKind,
    PaymentOutcome,
)
from src.domain.principal import Principal, require_owner_or_admin
from src.domain.state_machine import (
    RELEASING_TRIGGERS,
    BookingStateMachine,
    BookingStatus,
    BookingTrigger,
)
from src.domain.ticket_codec import TicketCodec, utc_now
from src.infrastructure.db.models import Booking, ProcessedPaymentEvent
from src.infrastructure.db.session import run_in_transaction
from src.infrastructure.payments.gateway import PaymentGateway
from src.infrastructure.repositories.booking_repository import BookingRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TICKETED_STATUSES = {BookingStatus.CONFIRMED, BookingStatus.COMPLETED}


@dataclass(frozen=True)
class BookingCreated:
    booking: Booking
    payment_ref: str
    payment_secret: str
    key_id: str | None = None


class BookingService:
    """Application service coordinating the booking lifecycle."""

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: InventoryLedger,
        codec: TicketCodec,
        gateway: PaymentGateway,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.codec = codec
        self.gateway = gateway
        self.settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_booking(
        self,
        principal: Principal,
        event_id: str,
        quantity: int,
    ) -> BookingCreated:
        if quantity < 1:
            raise InvalidRequestError("quantity must be >= 1")

        now = self._clock()

        def reserve(db: Session) -> Booking:
            event = self.ledger.get_event(db, event_id)
            if not event.is_active:
                raise InvalidStateError(f"Event {event_id} is not on sale")
            if now >= event.end_time:
                raise InvalidStateError(f"Event {event_id} has already ended")

            expires_at = now + self.settings.reservation_ttl
            reservation = self.ledger.reserve(db, event_id, quantity, now, expires_at)
            return BookingRepository(db).create_booking(
                user_id=principal.user_id,
                event_id=event_id,
                reservation_id=reservation.id,
                quantity=quantity,
                total_amount=event.unit_price * quantity + self.settings.service_fee_minor,
                currency=event.currency,
                created_at=now,
                expires_at=expires_at,
            )

        booking = self._run(reserve)
        logger.info(
            "Booking %s pending for user %s: %s unit(s) of event %s",
            booking.id,
            principal.user_id,
            quantity,
            event_id,
        )

        try:
            intent = self.gateway.create_payment_intent(
                amount=booking.total_amount,
                currency=booking.currency,
                receipt=booking.id,
            )
        except Exception:
            logger.error(
                "Payment intent failed for booking %s; cancelling and releasing inventory",
                booking.id,
            )
            self._run(
                lambda db: self._transition_by_id(db, booking.id, BookingTrigger.PAYMENT_FAILED)
            )
            raise

        def attach_payment_ref(db: Session) -> Booking:
            locked = self._load(db, booking.id)
            locked.payment_ref = intent.reference
            db.flush()
            return locked

        booking = self._run(attach_payment_ref)
        return BookingCreated(
            booking=booking,
            payment_ref=intent.reference,
            payment_secret=intent.client_secret,
            key_id=intent.key_id,
        )

    def get_booking(self, principal: Principal, booking_id: str) -> Booking:
        def work(db: Session) -> Booking:
            booking = self._load(db, booking_id)
            self._require_viewer(principal, booking)
            self._expire_if_due(db, booking, self._clock())
            return booking

        return self._run(work)

    def cancel_booking(self, principal: Principal, booking_id: str) -> Booking:
        def work(db: Session) -> Booking:
            now = self._clock()
            booking = self._load(db, booking_id)
            require_owner_or_admin(principal, booking.user_id)

            if self._expire_if_due(db, booking, now):
                return booking

            if booking.status is BookingStatus.CONFIRMED:
                if booking.units_redeemed > 0:
                    raise InvalidStateError(
                        f"Booking {booking_id} is partially checked in and cannot be cancelled"
                    )
                event = self.ledger.get_event(db, booking.event_id)
                if now > event.start_time - self.settings.cancellation_cutoff:
                    raise InvalidStateError(
                        f"Cancellation window for booking {booking_id} has closed"
                    )

            self.transition(db, booking, BookingTrigger.USER_CANCELLED, now)
            return booking

        return self._run(work)

    def issue_ticket(self, principal: Principal, booking_id: str) -> str:
        def work(db: Session) -> str:
            booking = self._load(db, booking_id)
            require_owner_or_admin(principal, booking.user_id)

            if booking.status not in _TICKETED_STATUSES:
                raise InvalidStateError(
                    f"Booking {booking_id} is {booking.status.value}; no ticket can be issued"
                )
            if booking.ticket_token:
                return booking.ticket_token

            self._issue_token(booking, self._clock())
            db.flush()
            return booking.ticket_token

        return self._run(work)

    def apply_payment_event(self, event: PaymentEvent) -> PaymentApplication:
        """
        Applies a normalized payment event exactly once.

        The idempotency row is written in the same transaction as the
        transition it guards.
        """
        try:
            return self._run(lambda db: self._apply_payment_event(db, event))
        except IntegrityError:
            # A concurrent delivery of the same event committed first.
            logger.warning(
                "Concurrent delivery of payment event %s; re-checking",
                event.external_event_id,
            )
            return self._run(lambda db: self._apply_payment_event(db, event))

    def expire_reservations(self, limit: int = 100) -> int:
        now = self._clock()
        booking_ids = self._run(
            lambda db: BookingRepository(db).list_expired_pending_ids(now, limit)
        )

        expired = 0
        for booking_id in booking_ids:
            def work(db: Session, booking_id: str = booking_id) -> bool:
                booking = self._load(db, booking_id)
                return self._expire_if_due(db, booking, now)

            try:
                if self._run(work):
                    expired += 1
            except TicketingEngineError:
                # Stays pending; the next pass retries it.
                logger.exception("Could not expire reservation for booking %s", booking_id)

        if expired:
            logger.info("Expired %s stale reservation(s)", expired)
        return expired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_payment_event(
        self,
        db: Session,
        event: PaymentEvent,
    ) -> PaymentApplication:
        repo = BookingRepository(db)

        existing = repo.get_processed_event(event.external_event_id)
        if existing is not None:
            logger.warning(
                "Duplicate payment event %s ignored (first outcome: %s)",
                event.external_event_id,
                existing.outcome,
            )
            status = None
            if existing.booking_id:
                booking = repo.get_by_id(existing.booking_id)
                status = booking.status.value if booking else None
            return PaymentApplication(
                external_event_id=event.external_event_id,
                outcome=PaymentOutcome.DUPLICATE,
                booking_id=existing.booking_id,
                status=status,
            )

        if event.trigger is None:
            logger.info(
                "Ignoring unsupported payment event %s (%s)",
                event.external_event_id,
                event.provider_event,
            )
            self._record(repo, event, None, PaymentOutcome.IGNORED)
            return PaymentApplication(
                external_event_id=event.external_event_id,
                outcome=PaymentOutcome.IGNORED,
            )

        booking = repo.get_by_payment_ref(event.payment_ref, for_update=True)
        if booking is None:
            raise BookingNotFoundError(
                f"No booking for payment reference {event.payment_ref}"
            )

        if (
            event.kind is PaymentEventKind.SUCCEEDED
            and event.amount is not None
            and event.amount != booking.total_amount
        ):
            logger.error(
                "Payment %s for booking %s captured %s, expected %s",
                event.payment_ref,
                booking.id,
                event.amount,
                booking.total_amount,
            )

        now = self._clock()
        self._expire_if_due(db, booking, now)

        if BookingStateMachine.can_fire(booking.status, event.trigger):
            self.transition(db, booking, event.trigger, now)
            outcome = PaymentOutcome.APPLIED
        elif event.kind is PaymentEventKind.SUCCEEDED and booking.status is BookingStatus.CANCELLED:
            logger.error(
                "Payment %s captured for cancelled booking %s; operator refund required",
                event.payment_ref,
                booking.id,
            )
            outcome = PaymentOutcome.LATE_SUCCESS
        elif event.kind is PaymentEventKind.REFUNDED and booking.status is BookingStatus.PENDING:
            # Not recorded: the provider redelivers once the success lands.
            raise InvalidStateError(
                f"Refund for booking {booking.id} arrived before its payment"
            )
        else:
            logger.warning(
                "Stale payment event %s (%s) for booking %s in status %s",
                event.external_event_id,
                event.kind.value,
                booking.id,
                booking.status.value,
            )
            outcome = PaymentOutcome.STALE

        self._record(repo, event, booking.id, outcome)
        return PaymentApplication(
            external_event_id=event.external_event_id,
            outcome=outcome,
            booking_id=booking.id,
            status=booking.status.value,
        )

    def _record(
        self,
        repo: BookingRepository,
        event: PaymentEvent,
        booking_id: str | None,
        outcome: PaymentOutcome,
    ) -> None:
        repo.record_processed_event(
            ProcessedPaymentEvent(
                external_event_id=event.external_event_id,
                kind=event.kind.value,
                provider_event=event.provider_event,
                payment_ref=event.payment_ref,
                booking_id=booking_id,
                outcome=outcome.value,
                received_at=event.received_at,
            )
        )

    def _transition_by_id(self, db: Session, booking_id: str, trigger: BookingTrigger) -> Booking:
        booking = self._load(db, booking_id)
        self.transition(db, booking, trigger, self._clock())
        return booking

    def transition(
        self,
        db: Session,
        booking: Booking,
        trigger: BookingTrigger,
        now: datetime,
    ) -> BookingStatus:
        from_status = booking.status
        to_status = BookingStateMachine.next_status(from_status, trigger)

        if trigger in RELEASING_TRIGGERS:
            self._release(db, booking, trigger, now)

        BookingRepository(db).update_status(booking, to_status)
        if to_status is BookingStatus.CONFIRMED:
            self._issue_token(booking, now)
        db.flush()

        logger.info(
            "Booking %s: %s -> %s (%s)",
            booking.id,
            from_status.value,
            to_status.value,
            trigger.value,
        )
        return to_status

    def _release(
        self,
        db: Session,
        booking: Booking,
        trigger: BookingTrigger,
        now: datetime,
    ) -> None:
        if trigger is BookingTrigger.REFUNDED:
            event = self.ledger.get_event(db, booking.event_id)
            if now >= event.start_time:
                logger.info(
                    "Refund for booking %s after event start; inventory not released",
                    booking.id,
                )
                return
        self.ledger.release(db, booking.reservation_id, now)

    def _issue_token(self, booking: Booking, now: datetime) -> None:
        booking.ticket_token = self.codec.issue(booking)
        booking.ticket_issued_at = now

    def _expire_if_due(self, db: Session, booking: Booking, now: datetime) -> bool:
        if booking.status is BookingStatus.PENDING and booking.expires_at <= now:
            self.transition(db, booking, BookingTrigger.RESERVATION_EXPIRED, now)
            return True
        return False

    @staticmethod
    def _load(db: Session, booking_id: str) -> Booking:
        booking = BookingRepository(db).get_by_id(booking_id, for_update=True)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        return booking

    @staticmethod
    def _require_viewer(principal: Principal, booking: Booking) -> None:
        if principal.user_id != booking.user_id and not principal.is_staff:
            raise PermissionDeniedError(
                f"Principal {principal.user_id} cannot access booking {booking.id}"
            )

    def _run(self, work: Callable[[Session], T]) -> T:
        return run_in_transaction(
            self.session_factory,
            work,
            max_attempts=self.settings.transaction_max_attempts,
        )
