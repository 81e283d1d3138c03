"""Segment job store with state machine and partition validation.

This module provides the persistence layer for segment-creation jobs.
Every write goes through ``update_job``, which performs a compare-and-swap
on the row version, validates the state transition and the segment
partition, commits, and publishes a snapshot to progress subscribers.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from src.db.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    SegmentJob,
    SegmentResult,
)
from src.errors.domain import ConflictError, NotFoundError
from src.orchestrator.batch.broadcaster import ProgressBroadcaster
from src.orchestrator.batch.models import JobSnapshot, PerSegmentResult
from src.services.rate_limits import is_retry_due
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition.

    Attributes:
        current_state: The current state of the job.
        attempted_state: The state that was attempted.
        allowed_transitions: List of valid transition targets from current state.
    """

    def __init__(
        self,
        current_state: JobStatus,
        attempted_state: JobStatus,
        allowed_transitions: list[JobStatus],
    ) -> None:
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(s.value for s in allowed_transitions) or "none (terminal)"
        super().__init__(
            f"Cannot transition from '{current_state.value}' to '{attempted_state.value}'. "
            f"Allowed transitions: {allowed_str}"
        )


class StaleJobError(Exception):
    """Raised when a job changed since the caller read it (E-4002)."""

    error_code = "E-4002"

    def __init__(self, job_id: str, expected: int, actual: int | None) -> None:
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Job {job_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )


class PartitionInvariantError(Exception):
    """Raised when an update would break the segment partition (E-4003)."""

    error_code = "E-4003"

    def __init__(self, job_id: str, reason: str) -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} segment lists are inconsistent: {reason}")


# Valid state transitions for job lifecycle
VALID_TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.pending: [JobStatus.in_progress, JobStatus.cancelled, JobStatus.failed],
    JobStatus.in_progress: [
        JobStatus.waiting_retry,
        JobStatus.completed,
        JobStatus.failed,
        JobStatus.cancelled,
    ],
    JobStatus.waiting_retry: [JobStatus.in_progress, JobStatus.cancelled],
    JobStatus.completed: [],  # terminal
    JobStatus.failed: [],  # terminal
    JobStatus.cancelled: [],  # terminal
}

_UPDATABLE_FIELDS = frozenset({
    "status",
    "segments_to_create",
    "pending_segment_ids",
    "completed_segment_ids",
    "failed_segment_ids",
    "rate_limit_type",
    "retry_after",
    "last_error_message",
    "retry_count",
})


def _utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(timezone.utc).isoformat()


def terminal_status(total: int, failed: int) -> JobStatus:
    """Classify a job whose pending list is empty.

    A job fails only when every requested segment failed.
    """
    if total > 0 and failed >= total:
        return JobStatus.failed
    return JobStatus.completed


def check_partition(
    segments_to_create: list[str],
    pending: list[str],
    completed: list[str],
    failed: list[str],
) -> str | None:
    """Return why the lists do not partition segments_to_create, or None."""
    for name, ids in (("pending", pending), ("completed", completed), ("failed", failed)):
        if len(set(ids)) != len(ids):
            return f"{name} list contains duplicates"
    if len(set(segments_to_create)) != len(segments_to_create):
        return "requested list contains duplicates"

    pending_set, completed_set, failed_set = set(pending), set(completed), set(failed)
    overlap = (pending_set & completed_set) | (pending_set & failed_set) | (completed_set & failed_set)
    if overlap:
        return f"segments in more than one list: {sorted(overlap)}"

    union = pending_set | completed_set | failed_set
    requested = set(segments_to_create)
    if union != requested:
        missing = sorted(requested - union)
        extra = sorted(union - requested)
        return f"missing={missing} unexpected={extra}"
    return None


class SegmentJobService:
    """Service for segment job persistence and lifecycle.

    Attributes:
        db: SQLAlchemy session for database operations.
        broadcaster: Receives a snapshot after every committed change.
    """

    def __init__(self, db: Session, broadcaster: ProgressBroadcaster | None = None) -> None:
        """Initialize the job service.

        Args:
            db: SQLAlchemy session for database operations.
            broadcaster: Optional progress broadcaster for snapshot publishing.
        """
        self.db = db
        self.broadcaster = broadcaster

    # =========================================================================
    # Job CRUD Operations
    # =========================================================================

    def create_job(
        self,
        tenant_id: str,
        connection_id: str,
        segment_ids: list[str],
        custom_inputs: dict[str, str] | None = None,
    ) -> SegmentJob:
        """Create a pending job for an already-resolved segment list.

        Args:
            tenant_id: Owning tenant.
            connection_id: Platform account to create segments in.
            segment_ids: Resolved, deduplicated segment IDs.
            custom_inputs: Tenant-supplied definition parameters.

        Returns:
            The created SegmentJob with every segment pending.
        """
        now = _utc_now_iso()
        ids = list(dict.fromkeys(segment_ids))
        job = SegmentJob(
            tenant_id=tenant_id,
            connection_id=connection_id,
            status=JobStatus.pending.value,
            total_segments=len(ids),
            created_at=now,
            updated_at=now,
        )
        job.segments_to_create = ids
        job.pending_segment_ids = ids
        job.completed_segment_ids = []
        job.failed_segment_ids = []
        job.custom_inputs = custom_inputs or {}

        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info("Created job %s with %d segment(s)", job.id, len(ids))
        self._publish(job)
        return job

    def get_job(self, job_id: str) -> SegmentJob | None:
        """Get a job by ID, reloading its columns from the database.

        Args:
            job_id: The UUID of the job to retrieve.

        Returns:
            The SegmentJob if found, None otherwise.
        """
        return (
            self.db.query(SegmentJob)
            .populate_existing()
            .filter(SegmentJob.id == job_id)
            .first()
        )

    def get_owned_job(self, job_id: str, tenant_id: str) -> SegmentJob:
        """Get a job that must belong to ``tenant_id``.

        Raises:
            NotFoundError: If the job does not exist or belongs to another tenant.
        """
        job = self.get_job(job_id)
        if job is None or job.tenant_id != tenant_id:
            raise NotFoundError("Job", job_id)
        return job

    def list_jobs(
        self,
        tenant_id: str | None = None,
        connection_id: str | None = None,
        statuses: Iterable[JobStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SegmentJob]:
        """List jobs newest first with optional owner and status filters."""
        query = self.db.query(SegmentJob)
        if tenant_id is not None:
            query = query.filter(SegmentJob.tenant_id == tenant_id)
        if connection_id is not None:
            query = query.filter(SegmentJob.connection_id == connection_id)
        if statuses is not None:
            query = query.filter(SegmentJob.status.in_([s.value for s in statuses]))
        return (
            query.order_by(SegmentJob.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    # =========================================================================
    # Compare-and-swap update
    # =========================================================================

    def can_transition(self, current: JobStatus, target: JobStatus) -> bool:
        return target in VALID_TRANSITIONS.get(current, [])

    def update_job(self, job_id: str, expected_version: int, **changes: Any) -> SegmentJob:
        """Apply a partial update if the job is still at ``expected_version``.

        Counters are recomputed from the segment lists. Timestamps follow
        the status: ``started_at`` on the first move to in_progress,
        ``completed_at`` on any terminal status.

        Args:
            job_id: The UUID of the job to update.
            expected_version: Version the caller last observed.
            **changes: Fields to set (status, segment lists, retry fields).

        Returns:
            The updated SegmentJob.

        Raises:
            NotFoundError: If the job does not exist.
            StaleJobError: If the job's version moved on.
            InvalidStateTransition: If the status change is not allowed.
            PartitionInvariantError: If the segment lists would stop partitioning
                the requested set, or the status contradicts them.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        if job.version != expected_version:
            raise StaleJobError(job_id, expected_version, job.version)

        current_status = JobStatus(job.status)
        new_status = JobStatus(changes.get("status", current_status))
        if new_status != current_status and not self.can_transition(current_status, new_status):
            raise InvalidStateTransition(
                current_state=current_status,
                attempted_state=new_status,
                allowed_transitions=VALID_TRANSITIONS.get(current_status, []),
            )

        segments = list(changes.get("segments_to_create", job.segments_to_create))
        pending = list(changes.get("pending_segment_ids", job.pending_segment_ids))
        completed = list(changes.get("completed_segment_ids", job.completed_segment_ids))
        failed = list(changes.get("failed_segment_ids", job.failed_segment_ids))
        retry_after = changes.get("retry_after", job.retry_after)

        reason = check_partition(segments, pending, completed, failed)
        if reason is None:
            reason = self._check_status_consistency(new_status, pending, retry_after)
        if reason is not None:
            logger.error("Refusing update of job %s: %s", job_id, reason)
            raise PartitionInvariantError(job_id, reason)

        now = _utc_now_iso()
        job.status = new_status.value
        job.segments_to_create = segments
        job.pending_segment_ids = pending
        job.completed_segment_ids = completed
        job.failed_segment_ids = failed
        job.total_segments = len(segments)
        job.success_count = len(completed)
        job.error_count = len(failed)
        job.segments_processed = len(completed) + len(failed)
        job.retry_after = retry_after
        if "rate_limit_type" in changes:
            job.rate_limit_type = changes["rate_limit_type"]
        if "last_error_message" in changes:
            job.last_error_message = sanitize_error_message(changes["last_error_message"])
        if "retry_count" in changes:
            job.retry_count = changes["retry_count"]
        job.updated_at = now

        if new_status == JobStatus.in_progress and job.started_at is None:
            job.started_at = now
        if new_status in TERMINAL_STATUSES and new_status != current_status:
            job.completed_at = now

        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleJobError(job_id, expected_version, None) from e

        self.db.refresh(job)
        if new_status != current_status:
            logger.info("Job %s: %s -> %s", job_id, current_status.value, new_status.value)
        self._publish(job)
        return job

    @staticmethod
    def _check_status_consistency(
        status: JobStatus, pending: list[str], retry_after: str | None
    ) -> str | None:
        if status in (JobStatus.completed, JobStatus.failed) and pending:
            return f"{status.value} job still has {len(pending)} pending segment(s)"
        if status == JobStatus.waiting_retry:
            if not pending:
                return "waiting_retry job has no pending segments"
            if not retry_after:
                return "waiting_retry job has no retry_after"
        return None

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    def claim_job(self, job_id: str) -> SegmentJob | None:
        """Take the exclusive execution lease on a job.

        Moves a pending or waiting_retry job to in_progress with a
        compare-and-swap. Returns None when the job is already being
        processed, is terminal, or another worker won the race.
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)

        if job.status not in (JobStatus.pending.value, JobStatus.waiting_retry.value):
            logger.info("Job %s not claimable (status=%s)", job_id, job.status)
            return None

        try:
            return self.update_job(
                job_id,
                job.version,
                status=JobStatus.in_progress,
                retry_after=None,
                rate_limit_type=None,
            )
        except StaleJobError:
            logger.info("Lost claim race for job %s", job_id)
            return None

    def request_cancel(self, job_id: str, tenant_id: str, max_attempts: int = 3) -> SegmentJob:
        """Cancel a job on behalf of its owner.

        Segment lists are left untouched; the executor stops at the next
        batch boundary.

        Raises:
            NotFoundError: Unknown job or not owned by tenant_id.
            ConflictError: Job already terminal.
        """
        for _ in range(max_attempts):
            job = self.get_owned_job(job_id, tenant_id)
            if job.is_terminal:
                raise ConflictError(f"Job {job_id} is already {job.status}")
            try:
                return self.update_job(
                    job_id,
                    job.version,
                    status=JobStatus.cancelled,
                    retry_after=None,
                    last_error_message="Cancelled by user",
                )
            except StaleJobError:
                logger.info("Cancel of job %s raced with an update, retrying", job_id)
        raise ConflictError(f"Job {job_id} is changing too quickly to cancel, retry shortly")

    def merge_resubmission(self, job_id: str, segment_ids: list[str]) -> SegmentJob:
        """Add newly requested segments to a pending or paused job.

        IDs already in any list (pending, completed, failed) are ignored,
        so resubmitting a selection never re-creates a resolved segment.

        Raises:
            NotFoundError: Unknown job.
            ConflictError: Job is not pending or waiting_retry.
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        if job.status not in (JobStatus.pending.value, JobStatus.waiting_retry.value):
            raise ConflictError(f"Job {job_id} is {job.status}; cannot add segments")

        known = set(job.segments_to_create)
        new_ids = [s for s in dict.fromkeys(segment_ids) if s not in known]
        if not new_ids:
            return job

        logger.info("Adding %d segment(s) to job %s", len(new_ids), job_id)
        return self.update_job(
            job_id,
            job.version,
            segments_to_create=job.segments_to_create + new_ids,
            pending_segment_ids=job.pending_segment_ids + new_ids,
        )

    def find_due_jobs(self, now: datetime, limit: int = 5) -> list[SegmentJob]:
        """Return paused jobs whose retry time has passed, oldest first."""
        candidates = (
            self.db.query(SegmentJob)
            .filter(SegmentJob.status == JobStatus.waiting_retry.value)
            .order_by(SegmentJob.created_at.asc())
            .all()
        )
        return [j for j in candidates if is_retry_due(j.retry_after, now)][:limit]

    def recover_interrupted(self) -> list[SegmentJob]:
        """Release leases held by a process that died mid-pass.

        Jobs left in_progress with pending segments become waiting_retry,
        eligible immediately. Jobs whose pending list is already empty are
        finalized.

        Returns:
            The recovered jobs.
        """
        stuck = self.list_jobs(statuses=[JobStatus.in_progress], limit=1000)
        recovered: list[SegmentJob] = []
        for job in stuck:
            try:
                if job.pending_segment_ids:
                    updated = self.update_job(
                        job.id,
                        job.version,
                        status=JobStatus.waiting_retry,
                        retry_after=_utc_now_iso(),
                        last_error_message="Interrupted by a restart; resuming automatically.",
                    )
                else:
                    updated = self.update_job(
                        job.id,
                        job.version,
                        status=terminal_status(job.total_segments, len(job.failed_segment_ids)),
                    )
            except StaleJobError:
                logger.warning("Job %s changed during recovery, skipping", job.id)
                continue
            logger.warning("Recovered interrupted job %s -> %s", job.id, updated.status)
            recovered.append(updated)
        return recovered

    # =========================================================================
    # Per-segment results
    # =========================================================================

    def record_result(
        self, job_id: str, result: PerSegmentResult, rate_limited: bool = False
    ) -> SegmentResult:
        """Persist one segment attempt outcome."""
        row = SegmentResult(
            job_id=job_id,
            segment_id=result.segment_id,
            status=result.status,
            external_id=result.external_id,
            segment_name=result.name,
            error=sanitize_error_message(result.error),
            rate_limited=rate_limited,
            attempted_at=_utc_now_iso(),
        )
        self.db.add(row)
        self.db.commit()
        return row

    def get_results(self, job_id: str) -> list[SegmentResult]:
        """Return the job's segment attempt history, oldest first."""
        return (
            self.db.query(SegmentResult)
            .filter(SegmentResult.job_id == job_id)
            .order_by(SegmentResult.attempted_at.asc())
            .all()
        )

    # =========================================================================
    # Snapshots
    # =========================================================================

    def snapshot(self, job: SegmentJob) -> JobSnapshot:
        return JobSnapshot.from_job(job)

    def _publish(self, job: SegmentJob) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(JobSnapshot.from_job(job))


__all__ = [
    "ACTIVE_STATUSES",
    "InvalidStateTransition",
    "PartitionInvariantError",
    "SegmentJobService",
    "StaleJobError",
    "VALID_TRANSITIONS",
    "check_partition",
    "terminal_status",
]
