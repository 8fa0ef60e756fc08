"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for plans, subscriptions, features and billing ledgers
"""
from typing import Optional
from contextlib import contextmanager
import logging
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Numeric, Index, ForeignKey, UniqueConstraint, select
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from restohub.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
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
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Accounts (billable entities; identity comes from the session provider)
accounts = Table(
    'accounts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('email', String(255), nullable=False, unique=True),
    Column('name', String(200), nullable=True),
    Column('role', String(50), nullable=False, server_default='user'),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_accounts_stripe_customer_id', 'stripe_customer_id'),
)

# Subscription plans (administrator-managed catalogue)
subscription_plans = Table(
    'subscription_plans',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price', Numeric(10, 2, asdecimal=False), nullable=False, server_default='0'),
    Column('billing_interval', String(20), nullable=False, server_default='monthly'),  # monthly | yearly
    # JSON-encoded text columns, parsed once on read
    Column('features', Text, nullable=True),
    Column('feature_limits', Text, nullable=True),
    Column('trial_settings', Text, nullable=True),
    Column('stripe_product_id', String(100), nullable=True),
    Column('stripe_price_id', String(100), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscription_plans_active_price', 'is_active', 'price'),
)

# Per-account subscriptions (never hard-deleted; cancellation is a status)
user_subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', Integer, ForeignKey('accounts.id'), nullable=False, index=True),
    Column('subscription_plan_id', Integer, ForeignKey('subscription_plans.id'), nullable=False),
    Column('status', String(50), nullable=False, index=True),  # active, trialing, past_due, canceled, ...
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('trial_start', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True, unique=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Resolver lookup: (account_id, status, created_at)
    Index('idx_user_subscriptions_account_status_created', 'account_id', 'status', 'created_at'),
)

# Per-plan feature entitlements
subscription_features = Table(
    'subscription_features',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_plan_id', Integer, ForeignKey('subscription_plans.id'), nullable=False),
    Column('feature_key', String(100), nullable=False),
    Column('is_enabled', Boolean, nullable=False, server_default='1'),
    Column('limit_value', Integer, nullable=True),
    Column('limit_type', String(50), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('subscription_plan_id', 'feature_key', name='uq_subscription_features_plan_key'),
    Index('idx_subscription_features_plan_id', 'subscription_plan_id'),
)

# Usage events (backs event-driven usage counters)
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', Integer, ForeignKey('accounts.id'), nullable=False),
    Column('usage_key', String(100), nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('metadata', JSON, nullable=True),
    Index('idx_usage_events_account_key_occurred', 'account_id', 'usage_key', 'occurred_at'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_billing_events_received_at', 'received_at'),
)

# Reconciliation job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)
