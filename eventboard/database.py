"""Engine and session wiring for the EventBoard document store.

The module keeps one active engine and session factory. ``configure_engine``
swaps both, which is how the CLI, Alembic and the tests point the store at a
different SQLite file.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings

engine: Engine | None = None
SessionLocal: scoped_session | None = None


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless enabled per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def database_url(database_path: str | Path) -> str:
    return f"sqlite:///{database_path}"


def create_db_engine(database_path: str | Path) -> Engine:
    """Build a thread-shareable SQLite engine with foreign keys enforced."""
    db_engine = create_engine(
        database_url(database_path),
        connect_args={"check_same_thread": False},
        future=True,
    )
    event.listen(db_engine, "connect", _enable_foreign_keys)
    return db_engine


def configure_engine(database_path: str | Path) -> Engine:
    """Make the SQLite file at ``database_path`` the active store backend."""
    global engine, SessionLocal
    if SessionLocal is not None:
        SessionLocal.remove()
    if engine is not None:
        engine.dispose()
    engine = create_db_engine(database_path)
    SessionLocal = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    return engine


@contextmanager
def get_session():
    """Yield a session that commits on success and rolls back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


configure_engine(settings.database_path)
