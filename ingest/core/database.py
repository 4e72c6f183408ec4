"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (SQLite gets a single shared connection)
- Table definitions for events, rules, daily metrics, leaderboards and badges
- Dialect-aware insert helpers used by the stores
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from ingest.core.config import settings

logger = logging.getLogger("ingest.database")

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
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


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

    _engine = build_engine(url)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
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


def reset_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session(session_factory=None):
    """
    Context manager for database sessions.

    Commits on success and rolls back on any exception, which is re-raised.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = session_factory or get_session_factory()
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine=None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def drop_all_tables(engine=None):
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine or get_engine())


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
        logger.warning("Database connection check failed: %s", e)
        return False


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def insert_ignore(session: Session, table: Table, rows: Iterable[Dict[str, Any]]) -> int:
    """
    Insert rows, skipping any that violate a unique constraint.

    Returns the number of rows actually written.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")

    written = 0
    for row in rows:
        stmt = dialect_insert(table).values(**row).on_conflict_do_nothing()
        result = session.execute(stmt)
        written += max(result.rowcount or 0, 0)
    return written


def upsert(session: Session, table: Table, keys: Dict[str, Any], values: Dict[str, Any]) -> None:
    """Update the row identified by ``keys``, inserting it when absent."""
    where = [table.c[name] == value for name, value in keys.items()]
    result = session.execute(update(table).where(*where).values(**values))
    if not result.rowcount:
        session.execute(insert(table).values(**keys, **values))


# Users (authors). Display fields are joined into leaderboard entries.
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('handle', String(100), nullable=True, unique=True),
    Column('display_name', Text, nullable=True),
    Column('avatar_url', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

rules = Table(
    'rules',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('slug', String(200), nullable=False, unique=True),
    Column('title', Text, nullable=False),
    Column('status', String(20), nullable=False, server_default='PUBLISHED'),
    Column('primary_model', String(100), nullable=True),
    Column('created_by_user_id', String(100), nullable=True, index=True),
    Column('score', Float, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

rule_tags = Table(
    'rule_tags',
    metadata,
    Column('rule_id', String(100), nullable=False),
    Column('tag_slug', String(100), nullable=False, index=True),
    PrimaryKeyConstraint('rule_id', 'tag_slug', name='pk_rule_tags'),
)

events = Table(
    'events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('type', String(20), nullable=False),
    Column('user_id', String(100), nullable=True),
    Column('rule_id', String(100), nullable=True),
    Column('rule_version_id', String(100), nullable=True),
    Column('ip_hash', String(64), nullable=False),
    Column('ua_hash', String(64), nullable=False),
    Column('idempotency_key', String(255), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_events_rule_created', 'rule_id', 'created_at'),
    Index('idx_events_created', 'created_at'),
)

votes = Table(
    'votes',
    metadata,
    Column('rule_id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('value', Integer, nullable=False),  # +1 / -1
    Column('created_at', DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint('rule_id', 'user_id', name='pk_votes'),
)

donations = Table(
    'donations',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('to_user_id', String(100), nullable=False, index=True),
    Column('amount_cents', Integer, nullable=False),
    Column('status', String(20), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
)

rule_metric_daily = Table(
    'rule_metric_daily',
    metadata,
    Column('date', Date, nullable=False),
    Column('rule_id', String(100), nullable=False),
    Column('views', Integer, nullable=False, default=0),
    Column('copies', Integer, nullable=False, default=0),
    Column('saves', Integer, nullable=False, default=0),
    Column('forks', Integer, nullable=False, default=0),
    Column('votes', Integer, nullable=False, default=0),
    Column('score', Float, nullable=False, default=0.0),
    PrimaryKeyConstraint('date', 'rule_id', name='pk_rule_metric_daily'),
)

author_metric_daily = Table(
    'author_metric_daily',
    metadata,
    Column('date', Date, nullable=False),
    Column('author_user_id', String(100), nullable=False),
    Column('views', Integer, nullable=False, default=0),
    Column('copies', Integer, nullable=False, default=0),
    Column('saves', Integer, nullable=False, default=0),
    Column('forks', Integer, nullable=False, default=0),
    Column('votes', Integer, nullable=False, default=0),
    Column('score', Float, nullable=False, default=0.0),
    Column('donations', Integer, nullable=False, default=0),
    Column('donations_cents', Integer, nullable=False, default=0),
    PrimaryKeyConstraint('date', 'author_user_id', name='pk_author_metric_daily'),
)

leaderboard_snapshots = Table(
    'leaderboard_snapshots',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('period', String(20), nullable=False),
    Column('scope', String(20), nullable=False),
    Column('scope_ref', String(100), nullable=False, server_default=''),
    Column('date', Date, nullable=False),
    Column('data', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('period', 'scope', 'scope_ref', 'date', name='uq_leaderboard_snapshot'),
)

badges = Table(
    'badges',
    metadata,
    Column('slug', String(100), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
)

user_badges = Table(
    'user_badges',
    metadata,
    Column('user_id', String(100), nullable=False),
    Column('badge_slug', String(100), nullable=False),
    Column('rule_id', String(100), nullable=True),
    Column('awarded_at', DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint('user_id', 'badge_slug', name='pk_user_badges'),
)

audit_log = Table(
    'audit_log',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action', String(100), nullable=False, index=True),
    Column('actor', String(100), nullable=False),
    Column('payload', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
)
