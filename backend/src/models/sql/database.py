"""Database configuration and session management.

This module provides the engine and session factory used by the SQL-backed
question logic repository. All question logic tables live in one database:
- Questions and their window counters
- Triggers and their activation log
- Frequency harmonizers
- Priority weights
- Per-period question analytics
"""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from src.config import get_database_url


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def create_db_engine(url: Optional[str] = None) -> Engine:
    """Create an engine for the given URL (defaults to DATABASE_URL).

    SQLite gets a single shared connection so in-memory databases survive
    across sessions; other backends use a pre-pinged connection pool.
    """
    url = url or get_database_url()
    if url.startswith("sqlite"):
        return create_engine(
            url,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        url,
        future=True,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before using
    )


# ============================================================================
# Application Database Engine
# ============================================================================

engine = create_db_engine()

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)
