"""Database connection, session management and scoped transactions."""
from contextlib import contextmanager
from decimal import Decimal
from typing import Generator, Iterator
import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from config import DATABASE_URL, LOCK_TIMEOUT_SECONDS
from errors import OrderError, PersistenceError, StockLockTimeout
from models import Base, Product

logger = logging.getLogger(__name__)

# SQLSTATE lock_not_available, raised when lock_timeout expires
PG_LOCK_NOT_AVAILABLE = "55P03"


def build_engine(url: str, lock_timeout: float = LOCK_TIMEOUT_SECONDS) -> Engine:
    """
    Create an engine for the given database URL.

    Server databases get a connection pool. SQLite has no row locks, so every
    transaction starts with BEGIN IMMEDIATE and writers queue on the database
    lock for at most lock_timeout seconds.
    """
    if not url.startswith("sqlite"):
        return create_engine(
            url,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,  # Verify connections before use
            pool_recycle=3600,  # Recycle connections after 1 hour
            pool_timeout=30,  # Wait max 30 seconds for a connection
        )

    sqlite_engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": lock_timeout},
    )

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


engine = build_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_lock_timeout(exc: SQLAlchemyError) -> bool:
    """Whether a driver error means a lock wait ran out of time."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate == PG_LOCK_NOT_AVAILABLE:
        return True
    return isinstance(exc, OperationalError) and "database is locked" in str(orig)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a block as one all-or-nothing unit of work.

    Commits when the block exits normally and rolls back on every other exit
    path. Engine errors are re-raised as PersistenceError (StockLockTimeout
    for lock waits) with the driver error chained, so storage detail stays
    out of messages shown to callers.

    Args:
        db: Database session

    Yields:
        The same session
    """
    try:
        if db.get_bind().dialect.name == "postgresql":
            timeout_ms = int(LOCK_TIMEOUT_SECONDS * 1000)
            db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
        yield db
        db.commit()
    except OrderError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        if is_lock_timeout(e):
            logger.warning("Lock wait timed out, transaction rolled back", extra={
                "lock_timeout_seconds": LOCK_TIMEOUT_SECONDS
            })
            raise StockLockTimeout() from e
        logger.error("Database error, transaction rolled back", extra={
            "error_type": type(e).__name__,
            "error": str(e)
        })
        raise PersistenceError() from e
    except BaseException:
        db.rollback()
        raise


def init_db() -> None:
    """Initialize database tables and seed data."""
    Base.metadata.create_all(bind=engine)

    # Seed data if empty
    db = SessionLocal()
    try:
        if db.query(Product).count() == 0:
            products = [
                Product(name="Laptop", price=Decimal("18990000"), stock=50, category="Electronics"),
                Product(name="Smartphone", price=Decimal("9990000"), stock=100, category="Electronics"),
                Product(name="Headphones", price=Decimal("1490000"), stock=200, category="Electronics"),
                Product(name="Desk Chair", price=Decimal("2590000"), stock=30, category="Furniture"),
                Product(name="Monitor", price=Decimal("4290000"), stock=75, category="Electronics"),
                Product(name="Limited Edition Keyboard", price=Decimal("3200000"), stock=5, category="Electronics"),
            ]
            db.add_all(products)
            db.commit()
            logger.info("Seeded database with sample products")
    finally:
        db.close()
