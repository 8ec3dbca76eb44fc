import logging
import time
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from pointsledger.core.config import settings
from pointsledger.core.exceptions import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Execution option marking a unit of work that only reads
READONLY = "pointsledger_readonly"


class Base(DeclarativeBase):
    pass


def create_db_engine(database_url: str, busy_timeout: float = 30) -> Engine:
    """Build an engine whose transactions are safe for per-user units of work.

    SQLite ignores ``SELECT ... FOR UPDATE``, so every transaction there is
    opened with ``BEGIN IMMEDIATE`` which takes the database write lock up
    front and serializes concurrent writers. Read-only units of work open a
    plain deferred transaction and never wait for the write lock.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin(conn):
            if conn.get_execution_options().get(READONLY):
                conn.exec_driver_sql("BEGIN")
            else:
                conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(database_url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    # Table classes register themselves on Base when imported
    import pointsledger.models.tables  # noqa: F401

    Base.metadata.create_all(engine)


engine = create_db_engine(settings.database_url)
SessionLocal = make_session_factory(engine)


def run_in_transaction(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    max_retries: int = 3,
    retry_backoff_seconds: float = 0.05,
    readonly: bool = False,
) -> T:
    """Run ``work`` in one committed transaction, retrying transient store errors.

    Callers make ``work`` safe to repeat (idempotency keys, unique constraints);
    anything other than an ``OperationalError`` propagates untouched.
    Pass ``readonly=True`` for units of work that never write.
    """
    attempt = 0
    while True:
        session = session_factory()
        try:
            with session.begin():
                if readonly:
                    session.connection(execution_options={READONLY: True})
                return work(session)
        except OperationalError as exc:
            attempt += 1
            if attempt > max_retries:
                logger.error("Store still unavailable after %s attempts: %s", attempt, exc)
                raise TransientStoreError("The points store is temporarily unavailable") from exc
            logger.warning("Transient store error (attempt %s/%s), retrying: %s", attempt, max_retries, exc)
            time.sleep(retry_backoff_seconds * attempt)
        finally:
            session.close()
