"""Shared pytest fixtures for Turnout."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from turnout import database
from turnout.crud import create_event
from turnout.models import Base
from turnout.notifications import RecordingNotificationSink
from turnout.transitions import RSVPTransitionController


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def sink():
    return RecordingNotificationSink()


@pytest.fixture()
def controller(sink):
    return RSVPTransitionController(notifier=sink, near_full_ratio=0.9, conflict_retries=1)


@pytest.fixture()
def make_event():
    """Create and commit an event, returning its id."""

    def _make(
        *,
        max_attendees: int | None = None,
        waitlist_enabled: bool = False,
        waitlist_limit: int | None = None,
        title: str = "Capacity Test",
        factory=None,
    ) -> str:
        with database.get_session(factory) as db:
            event = create_event(
                db,
                title=title,
                max_attendees=max_attendees,
                waitlist_enabled=waitlist_enabled,
                waitlist_limit=waitlist_limit,
            )
            return event.id

    return _make


@pytest.fixture()
def file_session_factory(tmp_path):
    """Session factory on a file-backed SQLite database.

    Each session gets its own connection, so concurrent writers really contend
    for the database lock.
    """

    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
    yield factory
    engine.dispose()
