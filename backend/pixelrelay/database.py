"""Database engine, session factory and FastAPI dependency.

WHAT:
    Builds the SQLAlchemy engine from DATABASE_URL and exposes `get_db()`
    for request-scoped sessions.

WHY:
    The ingestion pipeline is request-scoped: every request gets its own
    session, and nothing is cached between requests.

USAGE:
    from pixelrelay.database import SessionLocal, get_db

    @router.post("/track")
    async def track(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - pixelrelay/services/ingestion_pipeline.py (main consumer)
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
"""

import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string (PostgreSQL in production)

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from pixelrelay.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    # Heroku-style URLs are not accepted by SQLAlchemy 2.x
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# Connection pool configuration:
# - pool_size / max_overflow: tracking traffic is bursty (page loads)
# - pool_recycle: recreate connections after 1 hour to prevent stale connections
# - pool_pre_ping: check connection health before use
#
# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in pixelrelay.models to ensure a single registry
from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance, closed when the request finishes
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
