"""Shared pytest fixtures for EventBoard."""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

TEST_BASE_DIR = Path(tempfile.mkdtemp(prefix="eventboard-tests-"))
os.environ.setdefault("EVENTBOARD_BASE_DIR", str(TEST_BASE_DIR))
os.environ.setdefault("EVENTBOARD_ENABLE_SCHEDULER", "false")

from eventboard import database  # noqa: E402
from eventboard.documents import DocumentStore  # noqa: E402
from eventboard.models import Base  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def configure_test_db():
    """Point the store at a throwaway SQLite file.

    A file rather than ``:memory:`` so the projection engine's worker threads
    each get their own connection.
    """

    engine = database.configure_engine(TEST_BASE_DIR / "eventboard-test.db")
    Base.metadata.create_all(bind=engine)
    yield
    database.SessionLocal.remove()
    engine.dispose()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def store() -> DocumentStore:
    return DocumentStore("test")
