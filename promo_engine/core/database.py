"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite file databases)
- Table definitions for the plan catalog, coupon ledger, user accounts,
  redemptions and purchase bookkeeping
"""
import logging
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    CheckConstraint,
    true,
    false,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from promo_engine.core.config import settings

logger = logging.getLogger("promo_engine")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# SQLite waits this long on a locked database before raising
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to aware UTC (SQLite drops the offset)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


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
        # Worker threads share the file database; writers queue on the busy timeout
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
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
    """Dispose the current engine and forget it (tests switch databases)."""
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
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(session: Optional[Session] = None):
    """Reuse the caller's session (and its transaction) or open a fresh one."""
    if session is not None:
        yield session
        return
    with get_db_session() as own_session:
        yield own_session


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Plan catalog
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('gateway_price_id', String(100), nullable=True, unique=True),
    Column('price', Integer, nullable=False),  # minor currency units
    Column('interval', String(20), nullable=False),  # month, year, lifetime
    Column('trial_days', Integer, nullable=False, server_default='0'),
    Column('max_users', Integer, nullable=True),  # seat cap for limited offers
    Column('current_users', Integer, nullable=False, server_default='0'),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('features', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('price >= 0', name='ck_plans_price_non_negative'),
    CheckConstraint('trial_days >= 0', name='ck_plans_trial_days_non_negative'),
    CheckConstraint("interval IN ('month', 'year', 'lifetime')", name='ck_plans_interval'),
    Index('idx_plans_is_active', 'is_active'),
)

# Coupon ledger
coupons = Table(
    'coupons',
    metadata,
    Column('coupon_id', String(36), primary_key=True),
    Column('code', String(100), nullable=False, unique=True),  # case-sensitive exact match
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('discount_kind', String(20), nullable=False),  # percentage, fixed_amount
    Column('discount_value', Integer, nullable=False),  # percent or minor units
    Column('min_amount', Integer, nullable=False, server_default='0'),
    Column('max_uses', Integer, nullable=True),  # null = unlimited
    Column('redemption_count', Integer, nullable=False, server_default='0'),
    Column('valid_from', DateTime(timezone=True), nullable=False),
    Column('valid_until', DateTime(timezone=True), nullable=True),  # null = open-ended
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('applicable_plans', JSON, nullable=False),  # empty = all plans
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint(
        'max_uses IS NULL OR redemption_count <= max_uses',
        name='ck_coupons_redemptions_within_cap',
    ),
    CheckConstraint('discount_value >= 0', name='ck_coupons_discount_non_negative'),
    Index('idx_coupons_active_valid_until', 'is_active', 'valid_until'),
)

# Per-user trial and subscription state
user_accounts = Table(
    'user_accounts',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('trial_used', Boolean, nullable=False, server_default=false()),
    Column('trial_expires_at', DateTime(timezone=True), nullable=True),
    Column('gateway_customer_id', String(100), nullable=True, index=True),
    Column('gateway_subscription_id', String(100), nullable=True, index=True),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    # Purchase lease (per-user serialization)
    Column('lock_owner', String(64), nullable=True),
    Column('locked_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint(
        '(trial_used AND trial_expires_at IS NOT NULL) OR (NOT trial_used AND trial_expires_at IS NULL)',
        name='ck_user_accounts_trial_expiry',
    ),
)

# Redemption recorder (append-only)
coupon_redemptions = Table(
    'coupon_redemptions',
    metadata,
    Column('redemption_id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('user_accounts.user_id'), nullable=False, index=True),
    Column('coupon_id', String(36), ForeignKey('coupons.coupon_id'), nullable=False, index=True),
    Column('discount_amount', Integer, nullable=False),
    Column('idempotency_key', String(64), nullable=False, unique=True),
    Column('gateway_subscription_id', String(100), nullable=True),
    Column('redeemed_at', DateTime(timezone=True), nullable=False),
    CheckConstraint('discount_amount >= 0', name='ck_coupon_redemptions_discount_non_negative'),
    Index('idx_coupon_redemptions_user_redeemed', 'user_id', 'redeemed_at'),
)

# Completed purchase attempts, keyed by the gateway idempotency key
purchase_attempts = Table(
    'purchase_attempts',
    metadata,
    Column('idempotency_key', String(64), primary_key=True),
    Column('attempt_id', String(100), nullable=False),
    Column('user_id', String(100), ForeignKey('user_accounts.user_id'), nullable=False, index=True),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('coupon_id', String(36), nullable=True),
    Column('gateway_subscription_id', String(100), nullable=False),
    Column('client_secret', String(255), nullable=True),
    Column('trial_days', Integer, nullable=False),
    Column('discount_amount', Integer, nullable=False),
    Column('final_amount', Integer, nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=False),
)

# Purchases whose gateway side succeeded but whose commit point did not
reconciliation_items = Table(
    'reconciliation_items',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False),
    Column('coupon_id', String(36), nullable=True),
    Column('gateway_subscription_id', String(100), nullable=False),
    Column('idempotency_key', String(64), nullable=False),
    Column('discount_amount', Integer, nullable=False, server_default='0'),
    Column('trial_days', Integer, nullable=False, server_default='0'),
    Column('error', Text, nullable=True),
    Column('status', String(20), nullable=False, server_default='open', index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
