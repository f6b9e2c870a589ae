# bidding_service/database.py
import logging
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from bidding_service.errors import BiddingError, ConcurrencyConflict, IntegrityViolation

logger = logging.getLogger(__name__)

Base = declarative_base()
SessionLocal = sessionmaker(autocommit=False, autoflush=False)
engine = None

# postgres SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_PGCODES = {"40001", "40P01", "55P03"}


def _on_sqlite_connect(dbapi_connection, connection_record):
    # let SQLAlchemy emit BEGIN itself instead of the driver
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_sqlite_begin(conn):
    # take the write lock up front: SQLite ignores FOR UPDATE
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_db(database_url: str, isolation_level: str = "READ COMMITTED", create_tables: bool = True):
    """Create the engine, bind the session factory and (optionally) the tables."""
    global engine
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 15},
        )
        event.listen(engine, "connect", _on_sqlite_connect)
        event.listen(engine, "begin", _on_sqlite_begin)
    else:
        engine = create_engine(
            database_url,
            isolation_level=isolation_level,
            pool_pre_ping=True,
        )
    SessionLocal.configure(bind=engine)
    if create_tables:
        # models must be imported so their tables are registered on Base
        from bidding_service import models  # noqa: F401
        Base.metadata.create_all(bind=engine)
    logger.info("Database initialised (%s)", engine.url.render_as_string(hide_password=True))
    return engine


def is_retryable(exc: DBAPIError) -> bool:
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode in _RETRYABLE_PGCODES:
        return True
    return isinstance(exc, OperationalError) and "database is locked" in str(exc.orig)


@contextmanager
def transaction(db: Session):
    """
    Run a block as one unit of work on ``db``.

    Commits when the block finishes, rolls back on any error. Driver errors
    are translated: lock contention and serialization failures surface as
    ConcurrencyConflict, constraint failures as IntegrityViolation.
    """
    try:
        yield db
        db.commit()
    except BiddingError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        raise IntegrityViolation(str(exc.orig)) from exc
    except DBAPIError as exc:
        db.rollback()
        if is_retryable(exc):
            raise ConcurrencyConflict() from exc
        raise
    except Exception:
        db.rollback()
        raise


def run_in_transaction(db: Session, operation, *args, attempts: int = 3, backoff: float = 0.05, **kwargs):
    """Call ``operation(db, *args, **kwargs)`` in a transaction, retrying on ConcurrencyConflict."""
    attempt = 1
    while True:
        try:
            with transaction(db):
                return operation(db, *args, **kwargs)
        except ConcurrencyConflict:
            if attempt >= attempts:
                logger.warning("%s gave up after %d attempts", operation.__name__, attempt)
                raise
            logger.warning("%s conflicted (attempt %d/%d), retrying", operation.__name__, attempt, attempts)
            time.sleep(backoff * attempt)
            attempt += 1
