"""FastAPI routes for segment-creation jobs.

Provides REST API endpoints for submitting selections, the owner's job
history, per-segment results, cancellation and manual resumption.
Passes run as server-owned tasks; submission returns immediately.
"""

import logging

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_history_service, get_runner
from src.api.schemas import (
    JobFilterEnum,
    JobListResponse,
    JobSnapshotResponse,
    JobStatsResponse,
    JobSummaryResponse,
    SegmentJobCreate,
    SegmentResultListResponse,
    SegmentResultResponse,
    SubmissionResponse,
)
from src.orchestrator.batch.models import JobSnapshot
from src.services.job_history import JobFilter, JobHistoryService
from src.services.job_runner import SegmentJobRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/segment-jobs", tags=["segment-jobs"])


def _snapshot_response(snapshot: JobSnapshot) -> JobSnapshotResponse:
    return JobSnapshotResponse(**snapshot.to_dict())


@router.post("", response_model=SubmissionResponse, status_code=202)
async def submit_job(
    payload: SegmentJobCreate,
    runner: SegmentJobRunner = Depends(get_runner),
) -> SubmissionResponse:
    """Submit a selection of segments and bundles for creation.

    Creates a job (or merges into ``existing_job_id``) and schedules a pass
    in the background. Progress is available from the progress endpoints.

    Args:
        payload: Selection, connection and custom inputs.
        runner: Job runner dependency.

    Returns:
        The job snapshot and whether a pass was scheduled.
    """
    snapshot, should_run = runner.submit(
        selection_ids=payload.selection_ids,
        connection_id=payload.connection_id,
        custom_inputs=payload.custom_inputs,
        existing_job_id=payload.existing_job_id,
    )
    if should_run:
        runner.start_pass(snapshot.job_id)
    return SubmissionResponse(job=_snapshot_response(snapshot), pass_scheduled=should_run)


@router.get("", response_model=JobListResponse)
def list_jobs(
    tenant_id: str = Query(..., min_length=1),
    connection_id: str | None = Query(None),
    job_filter: JobFilterEnum = Query(JobFilterEnum.all, alias="filter"),
    history: JobHistoryService = Depends(get_history_service),
) -> JobListResponse:
    """List the tenant's jobs, newest first, with aggregate stats.

    Args:
        tenant_id: Owning tenant.
        connection_id: Restrict to one platform connection (optional).
        job_filter: all, active, completed, failed or cancelled.
        history: History service dependency.

    Returns:
        Up to 100 jobs and stats computed over them.
    """
    jobs = history.list_jobs(tenant_id, connection_id, JobFilter(job_filter.value))
    stats = history.compute_stats(jobs)
    return JobListResponse(
        jobs=[JobSummaryResponse.model_validate(j) for j in jobs],
        stats=JobStatsResponse(**vars(stats)),
    )


@router.get("/{job_id}", response_model=JobSnapshotResponse)
def get_job(
    job_id: str,
    tenant_id: str = Query(..., min_length=1),
    history: JobHistoryService = Depends(get_history_service),
) -> JobSnapshotResponse:
    """Get a job's current state.

    Raises:
        NotFoundError: Unknown job or owned by another tenant (404).
    """
    job = history.get_job(job_id, tenant_id)
    return _snapshot_response(JobSnapshot.from_job(job))


@router.get("/{job_id}/results", response_model=SegmentResultListResponse)
def get_job_results(
    job_id: str,
    tenant_id: str = Query(..., min_length=1),
    history: JobHistoryService = Depends(get_history_service),
) -> SegmentResultListResponse:
    """Get the per-segment attempt history of a job."""
    results = history.get_segment_results(job_id, tenant_id)
    return SegmentResultListResponse(
        job_id=job_id,
        results=[SegmentResultResponse.model_validate(r) for r in results],
    )


@router.post("/{job_id}/cancel", response_model=JobSnapshotResponse)
def cancel_job(
    job_id: str,
    tenant_id: str = Query(..., min_length=1),
    history: JobHistoryService = Depends(get_history_service),
) -> JobSnapshotResponse:
    """Cancel a job. A running pass stops at its next batch boundary.

    Raises:
        NotFoundError: Unknown job or owned by another tenant (404).
        ConflictError: Job already finished (409).
    """
    job = history.cancel_job(job_id, tenant_id)
    return _snapshot_response(JobSnapshot.from_job(job))


@router.post("/{job_id}/resume", response_model=SubmissionResponse, status_code=202)
async def resume_job(
    job_id: str,
    tenant_id: str = Query(..., min_length=1),
    history: JobHistoryService = Depends(get_history_service),
    runner: SegmentJobRunner = Depends(get_runner),
) -> SubmissionResponse:
    """Resume a paused job whose retry time has passed.

    Calling early is harmless: nothing is scheduled and the current state
    is returned.
    """
    job = history.get_job(job_id, tenant_id)
    should_run = runner.is_resumable(job.id)
    if should_run:
        runner.start_pass(job.id)
    return SubmissionResponse(
        job=_snapshot_response(JobSnapshot.from_job(job)), pass_scheduled=should_run
    )
