"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for the metering core
"""
from typing import Optional
from contextlib import contextmanager
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
    UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from snippetfactory.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
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


def _engine_kwargs(url: str) -> dict:
    timeout = settings.DB_TIMEOUT_SECONDS
    if url.startswith("sqlite"):
        kwargs = {
            # busy timeout: concurrent writers wait on the database lock instead of failing
            "connect_args": {"check_same_thread": False, "timeout": timeout},
        }
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": timeout,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }


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

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(
        url,
        echo=False,  # Set to True for SQL query logging
        **_engine_kwargs(url),
    )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    logger.info("Database engine initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
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

    Commits on clean exit, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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
def session_scope(session: Optional[Session] = None):
    """
    Join the caller's session when given (no commit here), else open one.

    Lets a service call run inside an enclosing transaction so that several
    writes commit or roll back together.
    """
    if session is not None:
        yield session
        return
    with get_db_session() as own:
        yield own


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Principals: one row per account, with live counters and stored ceilings
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, unique=True),
    Column('display_name', Text, nullable=True),
    Column('plan', String(50), nullable=False, server_default='free'),
    Column('snippet_count', Integer, nullable=False, server_default='0'),
    Column('team_member_count', Integer, nullable=False, server_default='0'),
    # NULL = unlimited
    Column('max_snippets', Integer, nullable=True),
    Column('max_team_members', Integer, nullable=True),
    Column('subscription_status', String(20), nullable=False, server_default='active'),
    Column('subscription_expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('snippet_count >= 0', name='ck_app_users_snippet_count_nonneg'),
    CheckConstraint('team_member_count >= 0', name='ck_app_users_team_member_count_nonneg'),
    Index('idx_users_created_at', 'created_at'),
    # Expiry sweep: paid plans by subscription state
    Index('idx_users_plan_subscription', 'plan', 'subscription_status', 'subscription_expires_at'),
)

# API keys: only the hash of the raw secret is stored
api_keys = Table(
    'api_keys',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('key_id', String(40), nullable=False, unique=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('name', String(200), nullable=False),
    Column('key_hash', String(64), nullable=False),
    Column('rate_limit_per_hour', Integer, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('last_used_at', DateTime(timezone=True), nullable=True),
    Column('revoked_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # O(1) verification by hash equality
    Index('uq_api_keys_key_hash', 'key_hash', unique=True),
    Index('idx_api_keys_user_created', 'user_id', 'created_at'),
)

# Usage ledger (append-only)
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('usage_type', String(100), nullable=False),
    Column('quantity', Integer, nullable=False, server_default='1'),
    Column('metadata', JSON, nullable=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    # Rolling-window counts: (user_id, feature, occurred_at)
    Index('idx_usage_events_user_feature_occurred', 'user_id', 'feature', 'occurred_at'),
    Index('idx_usage_events_occurred_at', 'occurred_at'),
)

# Snippets (external collaborator; only what the gated endpoints need)
snippets = Table(
    'snippets',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('created_by', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('title', Text, nullable=False),
    Column('description', Text, nullable=True),
    Column('code', Text, nullable=False),
    Column('language', String(50), nullable=False),
    Column('tags', JSON, nullable=False),
    Column('is_private', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_snippets_creator_created', 'created_by', 'created_at'),
)

# Team members (external collaborator)
team_members = Table(
    'team_members',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('team_owner_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('role', String(50), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('joined_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('team_owner_id', 'user_id', name='uq_team_members_owner_user'),
    Index('idx_team_members_owner_joined', 'team_owner_id', 'joined_at'),
)
