"""Shared FastAPI dependencies for the segment engine routes."""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from src.db.connection import get_db
from src.orchestrator.batch.broadcaster import ProgressBroadcaster
from src.services.job_history import JobHistoryService
from src.services.job_runner import SegmentJobRunner


def get_runner(request: Request) -> SegmentJobRunner:
    """Return the runner created by the application lifespan."""
    return request.app.state.runner


def get_broadcaster(runner: SegmentJobRunner = Depends(get_runner)) -> ProgressBroadcaster:
    return runner.broadcaster


def get_history_service(
    db: Session = Depends(get_db),
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster),
) -> JobHistoryService:
    """Dependency to get JobHistoryService instance."""
    return JobHistoryService(db, broadcaster)
