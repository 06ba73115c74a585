import os
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.application.inventory_ledger import InventoryLedger
from src.config import DEFAULT_DATABASE_URL
from src.infrastructure.db.models import Base, Event
from src.infrastructure.db.session import (
    create_db_engine,
    create_session_factory,
    get_db_session,
)


def _today_at(hour: int, minute: int) -> datetime:
    ist = timezone(timedelta(hours=5, minutes=30))
    now_ist = datetime.now(ist)
    return now_ist.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_events(db, ledger: InventoryLedger) -> list[Event]:
    event_defs = [
        {
            "venue_id": "indira-gandhi-arena",
            "title": "Sunidhi Chauhan Live Concert",
            "capacity": 400,
            "unit_price": 180000,
            "start_time": _today_at(hour=19, minute=30),
            "duration": timedelta(hours=3),
        },
        {
            "venue_id": "jln-stadium-grounds",
            "title": "Holi Festival",
            "capacity": 700,
            "unit_price": 120000,
            "start_time": _today_at(hour=11, minute=0),
            "duration": timedelta(hours=6),
        },
        {
            "venue_id": "hotel-star",
            "title": "Hotel Star Jazz Dinner",
            "capacity": 40,
            "unit_price": 280000,
            "start_time": _today_at(hour=20, minute=0),
            "duration": timedelta(hours=2, minutes=30),
        },
    ]

    seeded = []
    for item in event_defs:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            # Inventory on a live event only moves through the ledger.
            seeded.append(existing)
            continue

        seeded.append(
            ledger.register_event(
                db,
                venue_id=item["venue_id"],
                title=item["title"],
                capacity=item["capacity"],
                unit_price=item["unit_price"],
                currency="INR",
                start_time=item["start_time"],
                end_time=item["start_time"] + item["duration"],
            )
        )
    return seeded


def main() -> None:
    engine = create_db_engine(os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL))
    Base.metadata.create_all(bind=engine)
    session_factory = create_session_factory(engine)

    with get_db_session(session_factory) as db:
        events = seed_events(db, InventoryLedger())
        titles = ", ".join(event.title for event in events)

    print(f"Seed complete: {titles}.")


if __name__ == "__main__":
    main()
