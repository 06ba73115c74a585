import logging
from datetime import datetime

from sqlalchemy.orm import Session

from src.domain.exceptions import (
    EventNotFoundError,
    InsufficientInventoryError,
    InvalidRequestError,
    OverReleaseError,
)
from src.infrastructure.db.models import Event, Reservation
from src.infrastructure.repositories.inventory_repository import InventoryRepository

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Sole mutator of Event.available_units.

    Methods take the caller's session so a reservation commits or rolls back
    together with the booking row it backs.
    """

    def register_event(
        self,
        db: Session,
        venue_id: str,
        title: str,
        capacity: int,
        unit_price: int,
        currency: str,
        start_time: datetime,
        end_time: datetime,
    ) -> Event:
        if capacity < 0:
            raise InvalidRequestError("capacity must be >= 0")
        if unit_price < 0:
            raise InvalidRequestError("unit_price must be >= 0")
        if end_time < start_time:
            raise InvalidRequestError("end_time must not precede start_time")

        event = Event(
            venue_id=venue_id,
            title=title,
            capacity=capacity,
            available_units=capacity,
            unit_price=unit_price,
            currency=currency,
            start_time=start_time,
            end_time=end_time,
            is_active=True,
        )
        InventoryRepository(db).add_event(event)
        logger.info("Registered event %s with capacity %s", event.id, capacity)
        return event

    def get_event(self, db: Session, event_id: str) -> Event:
        event = InventoryRepository(db).get_event(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event

    def reserve(
        self,
        db: Session,
        event_id: str,
        quantity: int,
        now: datetime,
        expires_at: datetime,
    ) -> Reservation:
        if quantity < 1:
            raise InvalidRequestError("quantity must be >= 1")

        repo = InventoryRepository(db)
        if not repo.try_decrement(event_id, quantity):
            if repo.get_event(event_id) is None:
                raise EventNotFoundError(f"Event {event_id} not found")
            raise InsufficientInventoryError(event_id, quantity)

        reservation = repo.create_reservation(
            event_id=event_id,
            quantity=quantity,
            created_at=now,
            expires_at=expires_at,
        )
        logger.info(
            "Reserved %s unit(s) of event %s. reservation_id=%s",
            quantity,
            event_id,
            reservation.id,
        )
        return reservation

    def release(self, db: Session, reservation_id: str, now: datetime) -> bool:
        """
        Hands a reservation's units back. Returns False when it was
        already released, so repeated calls never double-credit.
        """
        repo = InventoryRepository(db)
        reservation = repo.lock_reservation(reservation_id)
        if reservation is None:
            raise InvalidRequestError(f"Reservation {reservation_id} not found")

        if reservation.released_at is not None:
            logger.info("Reservation %s already released", reservation_id)
            return False

        if not repo.try_increment(reservation.event_id, reservation.quantity):
            logger.error(
                "Over-release refused. reservation_id=%s event_id=%s quantity=%s",
                reservation_id,
                reservation.event_id,
                reservation.quantity,
            )
            raise OverReleaseError(
                f"Releasing reservation {reservation_id} would exceed event capacity"
            )

        reservation.released_at = now
        db.flush()
        logger.info(
            "Released %s unit(s) of event %s. reservation_id=%s",
            reservation.quantity,
            reservation.event_id,
            reservation_id,
        )
        return True
