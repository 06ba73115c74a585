from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from src.application.booking_service import BookingCreated, BookingService
from src.application.check_in_service import CheckInResult, CheckInService
from src.application.inventory_ledger import InventoryLedger
from src.application.payment_service import PaymentNotificationHandler
from src.config import Settings
from src.domain.payment_events import PaymentApplication
from src.domain.principal import Principal, Role, require_role
from src.domain.ticket_codec import TicketCodec, utc_now
from src.infrastructure.db.models import Booking, CheckIn, Event
from src.infrastructure.db.session import run_in_transaction
from src.infrastructure.payments.gateway import PaymentGateway
from src.infrastructure.payments.razorpay_gateway import RazorpayGateway


class TicketingEngine:
    """The operations the rest of the platform calls into."""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.gateway = gateway
        self.codec = TicketCodec(
            settings.ticket_signing_secret,
            validity=settings.ticket_validity,
            clock=clock,
        )
        self.ledger = InventoryLedger()
        self.bookings = BookingService(
            session_factory=session_factory,
            ledger=self.ledger,
            codec=self.codec,
            gateway=gateway,
            settings=settings,
            clock=clock,
        )
        self.payments = PaymentNotificationHandler(gateway, self.bookings)
        self.check_ins = CheckInService(
            session_factory=session_factory,
            codec=self.codec,
            booking_service=self.bookings,
            ledger=self.ledger,
            settings=settings,
            clock=clock,
        )

    def create_booking(
        self,
        principal: Principal,
        event_id: str,
        quantity: int,
    ) -> BookingCreated:
        return self.bookings.create_booking(principal, event_id, quantity)

    def handle_payment_notification(
        self,
        raw_payload: bytes,
        provider_signature: str | None,
        event_id: str | None = None,
    ) -> PaymentApplication:
        return self.payments.handle(raw_payload, provider_signature, event_id)

    def issue_ticket(self, principal: Principal, booking_id: str) -> str:
        return self.bookings.issue_ticket(principal, booking_id)

    def redeem_ticket(self, principal: Principal, token: str) -> CheckInResult:
        return self.check_ins.redeem_ticket(principal, token)

    def cancel_booking(self, principal: Principal, booking_id: str) -> Booking:
        return self.bookings.cancel_booking(principal, booking_id)

    def get_booking(self, principal: Principal, booking_id: str) -> Booking:
        return self.bookings.get_booking(principal, booking_id)

    def list_check_ins(self, principal: Principal, event_id: str) -> list[CheckIn]:
        return self.check_ins.list_check_ins(principal, event_id)

    def expire_reservations(self, limit: int = 100) -> int:
        return self.bookings.expire_reservations(limit)

    def register_event(
        self,
        principal: Principal,
        venue_id: str,
        title: str,
        capacity: int,
        unit_price: int,
        start_time: datetime,
        end_time: datetime,
        currency: str | None = None,
    ) -> Event:
        require_role(principal, Role.BUSINESS, Role.ADMIN)

        def work(db: Session) -> Event:
            return self.ledger.register_event(
                db,
                venue_id=venue_id,
                title=title,
                capacity=capacity,
                unit_price=unit_price,
                currency=currency or self.settings.default_currency,
                start_time=start_time,
                end_time=end_time,
            )

        return run_in_transaction(
            self.session_factory,
            work,
            max_attempts=self.settings.transaction_max_attempts,
        )

    def get_availability(self, event_id: str) -> Event:
        return run_in_transaction(
            self.session_factory,
            lambda db: self.ledger.get_event(db, event_id),
            max_attempts=self.settings.transaction_max_attempts,
        )


def build_engine(
    settings: Settings,
    session_factory: sessionmaker,
    gateway: PaymentGateway | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> TicketingEngine:
    if gateway is None:
        gateway = RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            clock=clock,
        )
    return TicketingEngine(session_factory, gateway, settings, clock)
