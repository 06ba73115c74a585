# src/infrastructure/db/session.py

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lock timeouts, serialization failures and lost optimistic-version races.
TRANSIENT_DB_ERRORS = (OperationalError, StaleDataError)


# -----------------------------
# Base Class for Models
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Engine
# -----------------------------
def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _serialize_sqlite_writers(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
    )


def _serialize_sqlite_writers(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write. Writers must hold the lock
    # from BEGIN so concurrent transactions queue on the busy timeout.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# -----------------------------
# Session Factory
# -----------------------------
def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


# -----------------------------
# Context Manager
# -----------------------------
@contextmanager
def get_db_session(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_in_transaction(
    session_factory: sessionmaker,
    work: Callable[[Session], T],
    max_attempts: int = 5,
    base_delay: float = 0.02,
) -> T:
    """
    Runs ``work`` inside one transaction, committing on success.

    Transient conflicts roll the whole unit of work back and replay it with
    exponential backoff. Any other exception propagates after rollback.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            with get_db_session(session_factory) as session:
                return work(session)
        except TRANSIENT_DB_ERRORS as exc:
            if attempt == max_attempts:
                logger.error(
                    "Transaction failed after %s attempts: %s",
                    max_attempts,
                    exc,
                )
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Transient database conflict (attempt %s/%s). Retrying in %.3f seconds: %s",
                attempt,
                max_attempts,
                delay,
                exc,
            )
            time.sleep(delay)

    raise RuntimeError("unreachable")
