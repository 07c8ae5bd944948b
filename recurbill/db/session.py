"""Database connection and session configuration.

This module sets up the SQLAlchemy engine and the session_local factory based on DATABASE_URL.
It also provides a context manager for database sessions to ensure proper cleanup.
"""

import os
from contextlib import contextmanager
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session

database_url = os.getenv("DATABASE_URL", "sqlite:///./billing.db")

connect_args = {}
if database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(database_url, connect_args=connect_args)

session_local = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)


def enable_sqlite_foreign_keys(bind) -> None:
    """Turn on ON DELETE CASCADE support for SQLite connections of ``bind``."""
    if bind.dialect.name != "sqlite":
        return

    @event.listens_for(bind, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


enable_sqlite_foreign_keys(engine)


@contextmanager
def get_db_session(factory=None):
    """Context manager for database sessions.

    Ensures that sessions are committed on success, rolled back on
    exceptions and always closed.

    Args:
        factory (sessionmaker, optional): Session factory to use instead of
            the module-level ``session_local``.

    Yields:
        Session: SQLAlchemy Session object.
    """
    session: Session = (factory or session_local)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
