"""Job history queries for the owner's job list view."""

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.orm import Session

from src.db.models import ACTIVE_STATUSES, JobStatus, SegmentJob, SegmentResult
from src.orchestrator.batch.broadcaster import ProgressBroadcaster
from src.services.job_service import SegmentJobService

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


class JobFilter(str, Enum):
    """Status filters offered by the history view."""

    all = "all"
    active = "active"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


_FILTER_STATUSES: dict[JobFilter, tuple[JobStatus, ...] | None] = {
    JobFilter.all: None,
    JobFilter.active: ACTIVE_STATUSES,
    JobFilter.completed: (JobStatus.completed,),
    JobFilter.failed: (JobStatus.failed,),
    JobFilter.cancelled: (JobStatus.cancelled,),
}


@dataclass
class JobStats:
    """Aggregates over a job list.

    Attributes:
        total_jobs: Number of listed jobs.
        total_segments_created: Segments created by completed jobs.
        success_rate: Percent of requested segments created, 0 when none requested.
        active_jobs: Listed jobs still pending, running or paused.
    """

    total_jobs: int
    total_segments_created: int
    success_rate: int
    active_jobs: int


def compute_stats(jobs: list[SegmentJob]) -> JobStats:
    """Compute history stats over already-listed jobs."""
    requested = sum(job.total_segments for job in jobs)
    succeeded = sum(job.success_count for job in jobs)
    active_values = {s.value for s in ACTIVE_STATUSES}
    return JobStats(
        total_jobs=len(jobs),
        total_segments_created=sum(
            job.success_count for job in jobs if job.status == JobStatus.completed.value
        ),
        success_rate=round(100 * succeeded / requested) if requested else 0,
        active_jobs=sum(1 for job in jobs if job.status in active_values),
    )


class JobHistoryService:
    """Read side of the job store, scoped to one owner."""

    def __init__(self, db: Session, broadcaster: ProgressBroadcaster | None = None) -> None:
        self.db = db
        self._jobs = SegmentJobService(db, broadcaster)

    def list_jobs(
        self,
        tenant_id: str,
        connection_id: str | None = None,
        job_filter: JobFilter = JobFilter.all,
        limit: int = HISTORY_LIMIT,
    ) -> list[SegmentJob]:
        """List the owner's jobs newest first."""
        return self._jobs.list_jobs(
            tenant_id=tenant_id,
            connection_id=connection_id,
            statuses=_FILTER_STATUSES[JobFilter(job_filter)],
            limit=min(limit, HISTORY_LIMIT),
        )

    def compute_stats(self, jobs: list[SegmentJob]) -> JobStats:
        return compute_stats(jobs)

    def get_job(self, job_id: str, tenant_id: str) -> SegmentJob:
        return self._jobs.get_owned_job(job_id, tenant_id)

    def cancel_job(self, job_id: str, tenant_id: str) -> SegmentJob:
        """Cancel any non-terminal job owned by ``tenant_id``.

        Raises:
            NotFoundError: Unknown job or owned by another tenant.
            ConflictError: Job already completed, failed or cancelled.
        """
        job = self._jobs.request_cancel(job_id, tenant_id)
        logger.info("Job %s cancelled by tenant %s", job_id, tenant_id)
        return job

    def get_segment_results(self, job_id: str, tenant_id: str) -> list[SegmentResult]:
        """Return the per-segment attempt history of an owned job."""
        self._jobs.get_owned_job(job_id, tenant_id)
        return self._jobs.get_results(job_id)
