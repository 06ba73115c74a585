# src/infrastructure/db/models.py

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    Enum,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from src.infrastructure.db.session import Base
from src.domain.state_machine import BookingStatus


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.
    SQLite drops tzinfo on the way out; values are always handed back in UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class Event(Base):
    """
    Ticketed event. available_units is only ever moved by the inventory ledger.
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    venue_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    available_units: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_event_capacity_nonnegative"),
        CheckConstraint("available_units >= 0", name="ck_event_available_nonnegative"),
        CheckConstraint("available_units <= capacity", name="ck_event_available_lte_capacity"),
        CheckConstraint("unit_price >= 0", name="ck_event_price_nonnegative"),
        CheckConstraint("end_time >= start_time", name="ck_event_ends_after_start"),
    )


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
        index=True,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
    )


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
        index=True,
    )
    reservation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("reservations.id"),
        nullable=False,
        unique=True,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True,
    )
    payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ticket_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    ticket_issued_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    units_redeemed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    __table_args__ = (
        UniqueConstraint("payment_ref", name="uq_booking_payment_ref"),
        CheckConstraint("quantity > 0", name="ck_booking_quantity_positive"),
        CheckConstraint("units_redeemed >= 0", name="ck_units_redeemed_nonnegative"),
        CheckConstraint("units_redeemed <= quantity", name="ck_units_redeemed_lte_quantity"),
        CheckConstraint("total_amount >= 0", name="ck_total_amount_nonnegative"),
    )


class ProcessedPaymentEvent(Base):
    """Idempotency table for provider notifications."""

    __tablename__ = "payment_events"

    external_event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_event: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class CheckIn(Base):
    __tablename__ = "check_ins"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
        index=True,
    )
    event_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    checked_in_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    checked_in_by: Mapped[str] = mapped_column(String(64), nullable=False)
    units_redeemed: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("units_redeemed > 0", name="ck_check_in_units_positive"),
    )
