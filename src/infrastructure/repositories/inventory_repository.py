# src/infrastructure/repositories/inventory_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import Event, Reservation


class InventoryRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_event(self, event_id: str) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def add_event(self, event: Event) -> Event:
        self.db.add(event)
        self.db.flush()
        return event

    def try_decrement(self, event_id: str, quantity: int) -> bool:
        """
        Compare-and-swap decrement: succeeds only while enough units remain.
        """
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(Event.available_units >= quantity)
            .values(available_units=Event.available_units - quantity)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def try_increment(self, event_id: str, quantity: int) -> bool:
        """
        Compare-and-swap increment: refuses to exceed capacity.
        """
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(Event.available_units + quantity <= Event.capacity)
            .values(available_units=Event.available_units + quantity)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def create_reservation(
        self,
        event_id: str,
        quantity: int,
        created_at: datetime,
        expires_at: datetime,
    ) -> Reservation:
        reservation = Reservation(
            event_id=event_id,
            quantity=quantity,
            created_at=created_at,
            expires_at=expires_at,
        )
        self.db.add(reservation)
        self.db.flush()
        return reservation

    def lock_reservation(self, reservation_id: str) -> Reservation | None:
        stmt = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()
