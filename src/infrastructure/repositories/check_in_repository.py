# src/infrastructure/repositories/check_in_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import CheckIn


class CheckInRepository:

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        booking_id: str,
        event_id: str,
        checked_in_at: datetime,
        checked_in_by: str,
        units_redeemed: int,
    ) -> CheckIn:
        check_in = CheckIn(
            booking_id=booking_id,
            event_id=event_id,
            checked_in_at=checked_in_at,
            checked_in_by=checked_in_by,
            units_redeemed=units_redeemed,
        )
        self.db.add(check_in)
        self.db.flush()
        return check_in

    def list_for_event(self, event_id: str) -> list[CheckIn]:
        stmt = (
            select(CheckIn)
            .where(CheckIn.event_id == event_id)
            .order_by(CheckIn.checked_in_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

