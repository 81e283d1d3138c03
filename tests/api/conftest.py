"""Pytest fixtures for API tests.

Provides a TestClient wired to a file-backed SQLite database, a job
runner using the scripted platform client, and helpers for waiting on
background passes.
"""

import time
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sse_starlette.sse import AppStatus

from src.api.main import app
from src.cli.config import EngineConfig, SegmentsConfig
from src.db.connection import get_db
from src.db.models import Base
from src.services.batch_engine import EngineSettings
from src.services.job_runner import SegmentJobRunner
from src.services.notification_service import NotificationService
from tests.helpers.fake_platform import TEST_CATALOG, no_sleep


@pytest.fixture
def session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """File-backed database so request threads and the app loop get their own connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'api.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def runner(session_factory, platform, clock) -> SegmentJobRunner:
    return SegmentJobRunner(
        session_factory=session_factory,
        client_factory=platform.factory,
        settings=EngineSettings(batch_size=4),
        catalog=TEST_CATALOG,
        sleep=no_sleep,
        clock=clock,
    )


@pytest.fixture
def client(session_factory, runner) -> Generator[TestClient, None, None]:
    """Create a TestClient with the test runner and database.

    The retry sweeper is disabled; tests resume jobs explicitly.
    """

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.state.config = SegmentsConfig(engine=EngineConfig(sweep_interval_seconds=0))
    app.state.runner = runner
    app.state.notifications = NotificationService(session_factory, hooks=[])
    app.dependency_overrides[get_db] = override_get_db
    # sse-starlette keeps a module-level exit event bound to the first loop
    AppStatus.should_exit_event = None
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
        for name in ("config", "runner", "notifications"):
            if hasattr(app.state, name):
                delattr(app.state, name)


@pytest.fixture
def wait_for_passes(runner) -> Callable[[], None]:
    """Block until the runner has no pass task in flight."""

    def _wait(timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        while runner.running_job_ids:
            if time.monotonic() > deadline:
                raise TimeoutError(f"passes still running: {runner.running_job_ids}")
            time.sleep(0.01)

    return _wait
