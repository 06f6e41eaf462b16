"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Quota ledger table definitions
- Schema upgrade and missing-relation helpers
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
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    inspect,
    text,
)
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from studio_quota.core.config import settings
from studio_quota.core.errors import AppError, SchemaDegradedError, StoreUnavailableError


logger = logging.getLogger("studio_quota")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# SQLSTATE codes for "relation does not exist" / "column does not exist"
MISSING_RELATION_SQLSTATES = {"42P01", "42703"}
MISSING_RELATION_MESSAGES = ("no such table", "no such column")

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
        # One shared connection so an in-memory database survives across sessions
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

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine so the next call re-initialises it."""
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

    One session is one store transaction: it commits when the block exits
    cleanly and rolls back on any exception.

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


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)
    apply_schema_upgrades(engine)


# Columns added after the initial release. Databases created before them
# are upgraded in place; anything still missing is handled as degraded mode.
SCHEMA_UPGRADES = [
    ("user_profiles", "base_limit_override", "INTEGER"),
    ("subscriptions", "limit_override", "INTEGER"),
    ("purchase_grants", "external_session_ref", "VARCHAR(255)"),
    ("guest_grants", "transferred_to", "VARCHAR(100)"),
    ("guest_grants", "transferred_at", "TIMESTAMP"),
]


def apply_schema_upgrades(engine=None) -> None:
    """Apply lightweight, idempotent column additions.

    Only tables that already exist are touched; existing data is left intact.
    """
    eng = engine or get_engine()
    inspector = inspect(eng)
    with eng.connect() as conn:
        for table_name, column_name, ddl_type in SCHEMA_UPGRADES:
            if not inspector.has_table(table_name):
                continue
            existing = {col["name"] for col in inspector.get_columns(table_name)}
            if column_name in existing:
                continue
            conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {ddl_type}"))
            logger.info(
                "schema.upgrade",
                extra={"table": table_name, "column": column_name},
            )
        conn.commit()


def is_missing_relation_error(exc: BaseException) -> bool:
    """True when a store error means a table or column is absent."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in MISSING_RELATION_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    if any(marker in message for marker in MISSING_RELATION_MESSAGES):
        return True
    return "does not exist" in message and ("relation" in message or "column" in message)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


@contextmanager
def store_operation(operation: str, **context):
    """Translate store failures into application errors.

    A missing table or column raises SchemaDegradedError; any other
    SQLAlchemy failure is logged and raised as StoreUnavailableError.

    Application errors raised inside the block pass through untouched.
    Nothing is retried here; retries belong to the caller.
    """
    try:
        yield
    except AppError:
        raise
    except SQLAlchemyError as exc:
        if is_missing_relation_error(exc):
            raise SchemaDegradedError(f"Schema incomplete during {operation}") from exc
        logger.error(
            "store.error",
            exc_info=True,
            extra={"operation": operation, "error_code": "store_unavailable", **context},
        )
        raise StoreUnavailableError(f"Store failure during {operation}") from exc


def dialect_insert(session: Session, table: Table):
    """Return an INSERT construct supporting ON CONFLICT for the bound dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
        return pg_insert(table)
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        return sqlite_insert(table)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


def insert_ignore(session: Session, table: Table, values: dict, index_elements: list) -> int:
    """INSERT ... ON CONFLICT DO NOTHING; returns the number of inserted rows."""
    stmt = dialect_insert(session, table).values(**values).on_conflict_do_nothing(
        index_elements=index_elements
    )
    return session.execute(stmt).rowcount or 0


# Users table (identity is owned by the auth provider; email drives admin checks)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_app_users_email', 'email'),
)

# One profile per user: base allowance usage for the current calendar month
user_profiles = Table(
    'user_profiles',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('base_used', Integer, nullable=False, server_default='0'),
    Column('base_limit_override', Integer, nullable=True),
    Column('last_monthly_reset', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('base_used >= 0', name='ck_user_profiles_base_used_non_negative'),
)

# Subscriptions (written by billing webhooks, read-only here)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('plan_tier', String(20), nullable=False, server_default='free'),
    Column('status', String(20), nullable=False, server_default='inactive'),
    Column('limit_override', Integer, nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscriptions_status', 'status'),
)

# One-time purchased credit grants owned by a user
purchase_grants = Table(
    'purchase_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('granted_units', Integer, nullable=False),
    Column('used_units', Integer, nullable=False, server_default='0'),
    Column('status', String(20), nullable=False, server_default='completed'),
    Column('external_payment_ref', String(255), nullable=False),
    Column('external_session_ref', String(255), nullable=True),
    Column('amount', Integer, nullable=False, server_default='0'),  # minor currency units
    Column('currency', String(10), nullable=False, server_default='usd'),
    Column('purchase_type', String(50), nullable=False, server_default='single_upload'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('external_payment_ref', name='uq_purchase_grants_payment_ref'),
    CheckConstraint('granted_units > 0', name='ck_purchase_grants_granted_positive'),
    CheckConstraint('used_units >= 0', name='ck_purchase_grants_used_non_negative'),
    CheckConstraint('used_units <= granted_units', name='ck_purchase_grants_used_within_granted'),
    # Consumption order: oldest completed grant first
    Index('idx_purchase_grants_user_status_created', 'user_id', 'status', 'created_at'),
)

# One-time purchased credit grants owned by a guest session
guest_grants = Table(
    'guest_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('session_id', String(255), nullable=False, index=True),
    Column('granted_units', Integer, nullable=False),
    Column('used_units', Integer, nullable=False, server_default='0'),
    Column('status', String(20), nullable=False, server_default='completed'),
    Column('external_payment_ref', String(255), nullable=False),
    Column('amount', Integer, nullable=False, server_default='0'),
    Column('currency', String(10), nullable=False, server_default='usd'),
    Column('purchase_type', String(50), nullable=False, server_default='single_upload'),
    Column('email', String(320), nullable=True),
    Column('transferred_to', String(100), nullable=True),
    Column('transferred_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('session_id', 'external_payment_ref', name='uq_guest_grants_session_payment_ref'),
    CheckConstraint('granted_units > 0', name='ck_guest_grants_granted_positive'),
    CheckConstraint('used_units >= 0', name='ck_guest_grants_used_non_negative'),
    CheckConstraint('used_units <= granted_units', name='ck_guest_grants_used_within_granted'),
    Index('idx_guest_grants_session_status_created', 'session_id', 'status', 'created_at'),
)
