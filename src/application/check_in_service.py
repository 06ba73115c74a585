import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from src.application.booking_service import BookingService
from src.application.inventory_ledger import InventoryLedger
from src.config import RedemptionMode, Settings
from src.domain.exceptions import (
    AlreadyRedeemedError,
    BadSignatureError,
    BookingNotFoundError,
    InvalidStateError,
    NotConfirmedError,
    TicketTokenError,
)
from src.domain.principal import Principal, Role, require_role
from src.domain.state_machine import BookingStatus, BookingTrigger
from src.domain.ticket_codec import TicketCodec, utc_now
from src.infrastructure.db.models import Booking, CheckIn, Event
from src.infrastructure.db.session import run_in_transaction
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.check_in_repository import CheckInRepository

logger = logging.getLogger(__name__)


class CheckInWarning(str, Enum):
    LARGE_GROUP = "large_group"
    OUTSIDE_CHECK_IN_WINDOW = "outside_check_in_window"


@dataclass(frozen=True)
class CheckInResult:
    check_in: CheckIn
    booking_id: str
    event_id: str
    quantity: int
    units_redeemed: int
    total_redeemed: int
    booking_status: BookingStatus
    warnings: tuple[CheckInWarning, ...] = field(default_factory=tuple)

    @property
    def units_remaining(self) -> int:
        return self.quantity - self.total_redeemed


class CheckInService:
    """
    Redeems ticket tokens at the venue door.

    In per-booking mode one scan consumes every remaining unit; in per-unit
    mode each scan consumes one. The increment happens under the booking's
    row lock and optimistic version, so two scans racing for the last unit
    cannot both succeed.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        codec: TicketCodec,
        booking_service: BookingService,
        ledger: InventoryLedger,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.codec = codec
        self.booking_service = booking_service
        self.ledger = ledger
        self.settings = settings
        self._clock = clock

    def redeem_ticket(self, principal: Principal, token: str) -> CheckInResult:
        require_role(principal, Role.BUSINESS, Role.ADMIN)

        try:
            payload = self.codec.verify(token)
        except TicketTokenError as exc:
            logger.warning(
                "Rejected ticket scanned by %s: %s (%s)",
                principal.user_id,
                exc.code,
                exc,
            )
            raise

        def work(db: Session) -> CheckInResult:
            now = self._clock()
            booking = BookingRepository(db).get_by_id(payload.booking_id, for_update=True)
            if booking is None:
                raise BookingNotFoundError(f"Booking {payload.booking_id} not found")

            self._ensure_redeemable(booking, token)

            event = self.ledger.get_event(db, booking.event_id)
            if not event.is_active:
                raise InvalidStateError(f"Event {event.id} is not active")

            if self.settings.redemption_mode is RedemptionMode.PER_UNIT:
                units = 1
            else:
                units = booking.quantity - booking.units_redeemed

            booking.units_redeemed += units
            if booking.units_redeemed == booking.quantity:
                self.booking_service.transition(db, booking, BookingTrigger.FULLY_REDEEMED, now)
            else:
                db.flush()

            check_in = CheckInRepository(db).add(
                booking_id=booking.id,
                event_id=booking.event_id,
                checked_in_at=now,
                checked_in_by=principal.user_id,
                units_redeemed=units,
            )
            logger.info(
                "Checked in %s unit(s) of booking %s by %s (%s/%s redeemed)",
                units,
                booking.id,
                principal.user_id,
                booking.units_redeemed,
                booking.quantity,
            )
            return CheckInResult(
                check_in=check_in,
                booking_id=booking.id,
                event_id=booking.event_id,
                quantity=booking.quantity,
                units_redeemed=units,
                total_redeemed=booking.units_redeemed,
                booking_status=booking.status,
                warnings=self._warnings(booking, event, now),
            )

        return run_in_transaction(
            self.session_factory,
            work,
            max_attempts=self.settings.transaction_max_attempts,
        )

    def list_check_ins(self, principal: Principal, event_id: str) -> list[CheckIn]:
        require_role(principal, Role.BUSINESS, Role.ADMIN)

        def work(db: Session) -> list[CheckIn]:
            self.ledger.get_event(db, event_id)
            return CheckInRepository(db).list_for_event(event_id)

        return run_in_transaction(
            self.session_factory,
            work,
            max_attempts=self.settings.transaction_max_attempts,
        )

    @staticmethod
    def _ensure_redeemable(booking: Booking, token: str) -> None:
        if booking.status is BookingStatus.COMPLETED:
            logger.info("Booking %s already fully redeemed", booking.id)
            raise AlreadyRedeemedError(
                f"All {booking.quantity} ticket(s) of booking {booking.id} were already used"
            )
        if booking.status is not BookingStatus.CONFIRMED:
            raise NotConfirmedError(
                f"Booking {booking.id} is {booking.status.value}, not confirmed"
            )
        if booking.units_redeemed >= booking.quantity:
            raise AlreadyRedeemedError(
                f"All {booking.quantity} ticket(s) of booking {booking.id} were already used"
            )

        issued = (booking.ticket_token or "").encode("utf-8")
        if not hmac.compare_digest(issued, token.encode("utf-8")):
            logger.warning("Token for booking %s is not the one issued", booking.id)
            raise BadSignatureError(
                f"Ticket does not match the token issued for booking {booking.id}"
            )

    def _warnings(
        self,
        booking: Booking,
        event: Event,
        now: datetime,
    ) -> tuple[CheckInWarning, ...]:
        warnings = []
        if booking.quantity > self.settings.large_group_threshold:
            warnings.append(CheckInWarning.LARGE_GROUP)

        window_opens = event.start_time - self.settings.check_in_window
        if now < window_opens or now > event.end_time:
            warnings.append(CheckInWarning.OUTSIDE_CHECK_IN_WINDOW)
        return tuple(warnings)
