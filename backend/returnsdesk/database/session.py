"""
Database engine and session factory.

Production runs on PostgreSQL via DATABASE_URL. SQLite is supported for local
development and tests; in-memory SQLite uses a single shared connection so
every session sees the same database.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from returnsdesk.config.settings import normalize_database_url
from returnsdesk.db_base import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for DATABASE_URL."""
    if not database_url:
        raise ValueError("DATABASE_URL is required")

    database_url = normalize_database_url(database_url)

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory used by the credential store; one short session per operation."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def init_db(engine: Engine) -> None:
    """Create missing tables."""
    # Import models to register them with Base
    import returnsdesk.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(
        "Database schema ensured",
        extra={"tables": sorted(Base.metadata.tables.keys())},
    )
