"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite database with a session factory
- A platform connection owned by a test tenant
- A scripted platform client and a fixed clock
"""

import os

# Must be set before src.db.connection is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.db.models import Base, PlatformConnection
from tests.helpers.fake_platform import FIXED_NOW, TENANT_ID, FakeClock, FakePlatformClient


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """Create an in-memory SQLite database and return its session factory.

    StaticPool keeps one connection, so every session sees the same
    in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Yield a session on the test database."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def connection(db_session: Session) -> PlatformConnection:
    """Create a platform connection for TENANT_ID."""
    conn = PlatformConnection(
        tenant_id=TENANT_ID,
        display_name="Test Store",
        api_key="pk_test_0123456789",
        vip_threshold=500.0,
        aov=80.0,
    )
    db_session.add(conn)
    db_session.commit()
    db_session.refresh(conn)
    return conn


# ============================================================================
# Platform Fixtures
# ============================================================================


@pytest.fixture
def platform() -> FakePlatformClient:
    """Scripted platform client that creates every segment."""
    return FakePlatformClient()


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at FIXED_NOW; tests move it forward explicitly."""
    return FakeClock(FIXED_NOW)
