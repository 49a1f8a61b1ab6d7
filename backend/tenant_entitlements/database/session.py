"""
Database engine and session factory.

The engine is a module-level singleton built from settings.database_url
(DATABASE_URL). The subscription store opens one short-lived session per
operation from the factory returned here.

Usage:
    from tenant_entitlements.database.session import get_session_factory
    from tenant_entitlements.repositories.subscription_store import SqlAlchemySubscriptionStore

    store = SqlAlchemySubscriptionStore(get_session_factory())
"""

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from tenant_entitlements.config.settings import get_settings
from tenant_entitlements.entitlements.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def normalize_database_url(database_url: str) -> str:
    """
    Point driverless PostgreSQL URLs at psycopg 3.

    Many hosts issue postgres:// URLs, which SQLAlchemy does not accept.
    """
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return "postgresql+psycopg://" + database_url[len(prefix):]
    return database_url


def build_engine(database_url: str) -> Engine:
    """
    Create an engine with pooling suited to the backend.

    PostgreSQL gets a bounded pool with pre-ping and recycling; SQLite uses
    the dialect defaults.
    """
    database_url = normalize_database_url(database_url)
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connection health
        pool_recycle=1800,   # Recycle connections after 30 minutes
    )


def get_engine() -> Engine:
    """Get or create the database engine singleton."""
    global _engine
    if _engine is None:
        database_url = get_settings().database_url
        if not database_url:
            raise ConfigurationError("DATABASE_URL environment variable is not set")
        _engine = build_engine(database_url)
        logger.info("Database engine created")
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
        )
    return _SessionLocal


def reset_engine() -> None:
    """
    Dispose of the engine singleton (for testing).

    WARNING: Only use in tests!
    """
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
