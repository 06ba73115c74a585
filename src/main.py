import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from src.api.routes.routes import router
from src.application.engine import TicketingEngine, build_engine
from src.application.reservation_sweeper import ReservationSweeper
from src.config import Settings
from src.infrastructure.db.models import Base
from src.infrastructure.db.session import create_db_engine, create_session_factory

logger = logging.getLogger(__name__)


def _wait_for_db(engine: Engine, settings: Settings) -> None:
    # Handles the common case where API starts before Postgres is ready.
    max_retries = settings.db_connect_max_retries
    retry_delay_seconds = settings.db_connect_retry_delay

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


def create_app(engine: TicketingEngine | None = None) -> FastAPI:
    """
    Builds the HTTP app. Passing an engine skips database bootstrapping and
    the background sweeper, which is how the tests wire their own store.
    """
    app = FastAPI(title="Event Ticketing Engine")
    app.include_router(router)
    app.state.engine = engine
    app.state.sweeper = None

    @app.on_event("startup")
    def on_startup() -> None:
        if app.state.engine is not None:
            return

        settings = Settings.from_env()
        logging.basicConfig(level=settings.log_level)

        db_engine = create_db_engine(settings.database_url)
        _wait_for_db(db_engine, settings)
        Base.metadata.create_all(bind=db_engine)

        app.state.engine = build_engine(settings, create_session_factory(db_engine))
        app.state.sweeper = ReservationSweeper(
            app.state.engine.bookings,
            interval_seconds=settings.reservation_sweep_interval_seconds,
        )
        app.state.sweeper.start()

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if app.state.sweeper is not None:
            app.state.sweeper.stop()

    return app


app = create_app()
