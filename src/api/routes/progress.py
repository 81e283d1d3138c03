"""FastAPI routes for job progress.

Provides a snapshot endpoint and a Server-Sent Events (SSE) stream that
pushes every committed job snapshot to web clients.
"""

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Query, Request
from sse_starlette.sse import EventSourceResponse

from src.api.dependencies import get_runner
from src.api.schemas import JobSnapshotResponse
from src.db.models import TERMINAL_STATUSES
from src.errors.domain import NotFoundError
from src.orchestrator.batch.broadcaster import Subscription
from src.orchestrator.batch.models import JobSnapshot
from src.services.job_runner import SegmentJobRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/segment-jobs", tags=["progress"])

# Seconds without a pushed snapshot before the stream re-reads the job
IDLE_TIMEOUT_SECONDS = 15.0

_TERMINAL = {s.value for s in TERMINAL_STATUSES}


def _owned_snapshot(runner: SegmentJobRunner, job_id: str, tenant_id: str) -> JobSnapshot:
    snapshot = runner.get_snapshot(job_id)
    if snapshot.tenant_id != tenant_id:
        raise NotFoundError("Job", job_id)
    return snapshot


def _snapshot_event(snapshot: JobSnapshot) -> dict:
    return {"data": json.dumps({"event": "snapshot", "data": snapshot.to_dict()})}


async def _event_generator(
    request: Request,
    runner: SegmentJobRunner,
    sub: Subscription,
    initial: JobSnapshot,
    idle_timeout: float = IDLE_TIMEOUT_SECONDS,
) -> AsyncGenerator[dict, None]:
    """Generate SSE events from the job's snapshot subscription.

    Sends the current snapshot first. Snapshots older than the last one
    sent are dropped. When nothing arrives for ``idle_timeout`` seconds the
    job is re-read and sent if its version moved (a publish may have been
    missed), otherwise a ping keeps the connection alive. The stream ends
    after a terminal snapshot.

    Args:
        request: FastAPI request object for disconnect detection.
        runner: Runner used to re-read the job.
        sub: Broadcaster subscription for the job.
        initial: Snapshot read right after subscribing.
        idle_timeout: Seconds to wait before falling back to a re-read.

    Yields:
        Event dictionaries with a JSON ``data`` payload.
    """
    last_version = initial.version
    try:
        yield _snapshot_event(initial)
        if initial.status in _TERMINAL:
            return

        while True:
            if await request.is_disconnected():
                break

            try:
                snapshot = await asyncio.wait_for(sub.get(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                snapshot = runner.get_snapshot(sub.job_id)
                if snapshot.version <= last_version:
                    yield {"data": json.dumps({"event": "ping"})}
                    continue

            if snapshot.version <= last_version:
                continue
            last_version = snapshot.version
            yield _snapshot_event(snapshot)
            if snapshot.status in _TERMINAL:
                break
    finally:
        # Always unsubscribe when generator exits
        runner.broadcaster.unsubscribe(sub)


@router.get("/{job_id}/progress/stream")
async def stream_progress(
    request: Request,
    job_id: str,
    tenant_id: str = Query(..., min_length=1),
    runner: SegmentJobRunner = Depends(get_runner),
) -> EventSourceResponse:
    """Stream job snapshots via Server-Sent Events.

    Raises:
        NotFoundError: Unknown job or owned by another tenant (404).
    """
    _owned_snapshot(runner, job_id, tenant_id)

    # Subscribe before reading so no commit falls between the two
    sub = runner.broadcaster.subscribe(job_id)
    try:
        initial = runner.get_snapshot(job_id)
    except Exception:
        runner.broadcaster.unsubscribe(sub)
        raise

    return EventSourceResponse(
        _event_generator(request, runner, sub, initial),
        media_type="text/event-stream",
    )


@router.get("/{job_id}/progress", response_model=JobSnapshotResponse)
def get_progress(
    job_id: str,
    tenant_id: str = Query(..., min_length=1),
    runner: SegmentJobRunner = Depends(get_runner),
) -> JobSnapshotResponse:
    """Get the job's current snapshot (for initial load or non-SSE clients)."""
    snapshot = _owned_snapshot(runner, job_id, tenant_id)
    return JobSnapshotResponse(**snapshot.to_dict())
