"""
Database configuration for the off-chain mirror.

This module provides:
- SQLAlchemy engine and session management
- Table definitions for the mirror (mint records, subscription snapshots,
  collections, drops, claims) and idempotency keys
- Test database support (SQLite in-memory via StaticPool)

The mirror is eventually consistent and never authoritative over quota.
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, UniqueConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from mintrelay.core.config import settings


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
        # One shared connection so in-memory databases survive across sessions
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
    """Return True when a trivial query succeeds."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


# ============================================================================
# MIRROR TABLES
# ============================================================================

# One row per successfully confirmed mint (or claim) observed by this service.
mint_records = Table(
    "mint_records",
    metadata,
    Column("id", String(100), primary_key=True),  # tx hash + index
    Column("wallet", String(42), nullable=False),
    Column("kind", String(20), nullable=False, server_default="mint"),  # mint | claim
    Column("collection_address", String(42), nullable=True),
    Column("token_uri", Text, nullable=True),
    Column("tx_hash", String(66), nullable=True),
    Column("status", String(20), nullable=False, server_default="confirmed"),  # confirmed | submitted
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("idx_mint_records_wallet_created", "wallet", "created_at"),
)

# Snapshot of the ledger subscription, for analytics and outage fallback.
subscription_mirror = Table(
    "subscription_mirror",
    metadata,
    Column("wallet", String(42), primary_key=True),
    Column("plan", String(20), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=True),
    Column("auto_renew", Boolean, nullable=False, server_default="0"),
    Column("minted_this_period", Integer, nullable=False, server_default="0"),
    Column("last_tx_hash", String(66), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

collections = Table(
    "collections",
    metadata,
    Column("address", String(42), primary_key=True),
    Column("owner", String(42), nullable=False),
    Column("name", String(200), nullable=False),
    Column("symbol", String(32), nullable=False),
    Column("royalty_bps", Integer, nullable=False, server_default="0"),
    Column("tx_hash", String(66), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("idx_collections_owner", "owner"),
)

drops = Table(
    "drops",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("title", String(200), nullable=False),
    Column("claim_code", String(100), nullable=False),  # stored lowercased
    Column("metadata_uri", Text, nullable=False),
    Column("max_claims", Integer, nullable=False, server_default="0"),  # 0 = unlimited
    Column("start_time", DateTime(timezone=True), nullable=True),
    Column("end_time", DateTime(timezone=True), nullable=True),
    Column("status", String(20), nullable=False, server_default="draft"),  # draft | published | unpublished
    Column("contract_address", String(42), nullable=True),
    Column("registration_state", String(20), nullable=False, server_default="unregistered"),
    Column("registration_tx_hash", String(66), nullable=True),
    Column("deploy_tx_hash", String(66), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("claim_code", name="uq_drops_claim_code"),
)

drop_claims = Table(
    "drop_claims",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("drop_id", String(36), nullable=False),
    Column("wallet", String(42), nullable=False),
    Column("tx_hash", String(66), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("drop_id", "wallet", name="uq_drop_claims_drop_wallet"),
)

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("key", String(200), primary_key=True),
    Column("scope", String(50), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
