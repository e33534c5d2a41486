"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for the three billing tables
- Translation of driver failures into StoreUnavailableError
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint, text
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from mealplanner_billing.core.config import settings
from mealplanner_billing.core.errors import StoreUnavailableError


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30  # Seconds a SQLite writer waits on another writer's lock

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # SQLite: file locking instead of a server-side pool
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine (tests switch databases between cases)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def store_errors(operation: str):
    """
    Translate driver-level failures into StoreUnavailableError.

    Integrity violations pass through untouched: callers use them for
    insert-if-absent semantics.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailableError(f"{operation} failed: store unavailable ({e.__class__.__name__})") from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise StoreUnavailableError(f"{operation} failed: connection lost") from e
        raise


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes read back from the store (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is working.

    Returns:
        True if connection successful, False otherwise (including no URL configured)
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


# ============================================================================
# TABLE DEFINITIONS
# ============================================================================

# Inbound payment-provider events, keyed by provider event id (idempotency + audit)
payment_events = Table(
    'payment_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(255), nullable=False),
    Column('event_type', String(64), nullable=False),
    Column('provider_event_type', String(128), nullable=False),
    Column('customer_id', String(255), nullable=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('received_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column('payload', JSON, nullable=True),
    Column('payload_hash', String(64), nullable=True),
    Column('status', String(16), nullable=False, server_default='pending'),
    Column('outcome', String(32), nullable=True),
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('last_error', Text, nullable=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('event_id', name='uq_payment_events_event_id'),
    Index('idx_payment_events_customer_pending', 'customer_id', 'status', 'occurred_at'),
    Index('idx_payment_events_status', 'status'),
    Index('idx_payment_events_received_at', 'received_at'),
)

# One row per billable customer; never hard-deleted
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('customer_id', String(255), primary_key=True),
    Column('provider_subscription_id', String(255), nullable=True),
    Column('tier', String(32), nullable=False),
    Column('status', String(32), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('last_applied_event_at', DateTime(timezone=True), nullable=True),
    Column('last_applied_event_id', String(255), nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column('updated_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index('idx_subscriptions_status', 'status'),
)

# Per-customer, per-metric, per-period counters; a new period is a new row
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('customer_id', String(255), nullable=False),
    Column('metric', String(64), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=False),
    Column('count', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column('updated_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint('customer_id', 'metric', 'period_start', name='uq_usage_counters_period'),
    Index('idx_usage_counters_customer_metric', 'customer_id', 'metric'),
)
