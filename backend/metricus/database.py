"""Database engine and session configuration.

WHAT:
    Builds the SQLAlchemy engine and session factory from settings and
    exposes a FastAPI dependency that yields one session per request.

WHY:
    Each request is one invocation with its own explicitly passed session;
    nothing holds a module-level client across invocations. The engine is
    built on first use so a missing DATABASE_URL is reported by the
    configuration check rather than at import.

USAGE:
    from metricus.database import get_db

    @router.get("/items")
    def get_items(db: Session = Depends(get_db)):
        return db.query(Item).all()

REFERENCES:
    - metricus/deps.py (Settings, require_configured)
    - metricus/routers/ (consumers of these sessions)
"""

from functools import lru_cache
from typing import Generator, Optional

from fastapi import Depends
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .deps import Settings, get_settings, require_configured


def _normalize_url(url: str) -> str:
    # Hosted Postgres often hands out Heroku-style URLs
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@lru_cache()
def get_engine() -> Engine:
    """Create the engine for DATABASE_URL (cached per process).

    NOTE: SQLite engines (used in some tests/dev) do not support pool_size/max_overflow.
    """
    database_url = get_settings().DATABASE_URL
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Ensure backend/.env is loaded or env var is exported.")

    database_url = _normalize_url(database_url)
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


@lru_cache()
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_db(settings: Settings = Depends(require_configured)) -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Depends on the configuration check so a missing DATABASE_URL surfaces as
    the configuration report, not a stack trace.
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def get_db_if_configured(settings: Settings = Depends(get_settings)) -> Generator[Optional[Session], None, None]:
    """Yield a session when configuration is complete, otherwise None.

    For routes such as the configuration selftest that must answer even when
    required variables are missing.
    """
    if settings.missing_required():
        yield None
        return
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
