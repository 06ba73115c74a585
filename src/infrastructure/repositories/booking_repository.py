# src/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import Booking, ProcessedPaymentEvent
from src.domain.state_machine import BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
        for_update: bool = False,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_payment_ref(
        self,
        payment_ref: str,
        for_update: bool = False,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.payment_ref == payment_ref)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_expired_pending_ids(
        self,
        now: datetime,
        limit: int,
    ) -> list[str]:

        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.expires_at <= now)
            .order_by(Booking.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        user_id: str,
        event_id: str,
        reservation_id: str,
        quantity: int,
        total_amount: int,
        currency: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> Booking:

        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            reservation_id=reservation_id,
            quantity=quantity,
            total_amount=total_amount,
            currency=currency,
            status=BookingStatus.PENDING,
            units_redeemed=0,
            created_at=created_at,
            expires_at=expires_at,
        )

        self.db.add(booking)
        self.db.flush()
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
    ) -> None:

        booking.status = new_status

    def get_processed_event(
        self,
        external_event_id: str,
    ) -> ProcessedPaymentEvent | None:

        stmt = select(ProcessedPaymentEvent).where(
            ProcessedPaymentEvent.external_event_id == external_event_id
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def record_processed_event(
        self,
        record: ProcessedPaymentEvent,
    ) -> ProcessedPaymentEvent:

        self.db.add(record)
        self.db.flush()
        return record
