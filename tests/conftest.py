"""
Pytest fixtures for the test suite.

Tests use an in-memory SQLite engine and a session that rolls back after
each test, so tests do not affect each other. Every test that needs a
directory gets the seeded demo organisation from `scopeguard.db.init_db`.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from scopeguard.audit.sink import InMemoryAuditSink
from scopeguard.capability.policy import CapabilityPolicy
from scopeguard.directory.store import SqlDirectoryStore
from scopeguard.engine import AuthorizationEngine
from scopeguard.settings import Settings


TEST_DB_URL = "sqlite:///:memory:"


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite engine for each test."""
    return create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        echo=False,
    )


@pytest.fixture
def tables(engine):
    """Create all ORM tables on the test engine."""
    from scopeguard.db.base import Base
    from scopeguard.models import audit, directory, organization  # noqa: F401
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session(tables):
    """
    Provide a Session bound to the test DB; roll back after each test.

    The transaction is rolled back so the next test gets a clean state.
    """
    connection = tables.connect()
    transaction = connection.begin()
    TestSession = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        class_=Session,
    )
    session = TestSession()
    yield session
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def demo(db_session):
    """Seeded demo organisation (see `seed_demo`)."""
    from scopeguard.db.init_db import seed_demo
    return seed_demo(db_session)


@pytest.fixture
def directory(db_session):
    return SqlDirectoryStore(db_session)


@pytest.fixture
def policy():
    """The packaged capability policy."""
    return CapabilityPolicy.from_yaml(Settings().resolved_capabilities_path())


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 9, 2, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def authz_engine(policy, audit_sink, clock):
    return AuthorizationEngine(policy, audit_sink, clock=clock)


@pytest.fixture
def authz(authz_engine, directory, demo):
    """A request context over the seeded directory."""
    return authz_engine.context(directory)
