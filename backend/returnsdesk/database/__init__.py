"""Database engine and session helpers."""

from returnsdesk.database.session import build_session_factory, create_db_engine, init_db

__all__ = ["build_session_factory", "create_db_engine", "init_db"]
