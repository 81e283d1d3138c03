"""Data models for segment batch execution.

Defines dataclasses for per-segment results, the job snapshots pushed to
progress subscribers, and submission results.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from src.db.models import SegmentJob


@dataclass
class PerSegmentResult:
    """Outcome of one segment within a pass."""

    segment_id: str
    """Catalog segment ID."""

    status: str
    """created, exists, skipped or error."""

    external_id: str | None = None
    """Platform segment ID when created."""

    name: str | None = None
    """Rendered segment name."""

    error: str | None = None
    """Error detail for skipped/error outcomes."""

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class JobSnapshot:
    """Full, immutable copy of a job's progress fields.

    Snapshots are what progress subscribers receive. Each carries the
    job version so a consumer can drop anything older than what it has
    already seen.
    """

    job_id: str
    tenant_id: str
    connection_id: str
    status: str
    version: int
    total_segments: int
    segments_processed: int
    success_count: int
    error_count: int
    pending_segment_ids: tuple[str, ...]
    completed_segment_ids: tuple[str, ...]
    failed_segment_ids: tuple[str, ...]
    rate_limit_type: str | None
    retry_after: str | None
    last_error_message: str | None
    created_at: str
    updated_at: str
    completed_at: str | None

    @classmethod
    def from_job(cls, job: SegmentJob) -> "JobSnapshot":
        """Copy the progress fields of a loaded job."""
        return cls(
            job_id=job.id,
            tenant_id=job.tenant_id,
            connection_id=job.connection_id,
            status=job.status,
            version=job.version,
            total_segments=job.total_segments,
            segments_processed=job.segments_processed,
            success_count=job.success_count,
            error_count=job.error_count,
            pending_segment_ids=tuple(job.pending_segment_ids),
            completed_segment_ids=tuple(job.completed_segment_ids),
            failed_segment_ids=tuple(job.failed_segment_ids),
            rate_limit_type=job.rate_limit_type,
            retry_after=job.retry_after,
            last_error_message=job.last_error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )

    @property
    def percent(self) -> int:
        if not self.total_segments:
            return 0
        return round(self.segments_processed / self.total_segments * 100)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("pending_segment_ids", "completed_segment_ids", "failed_segment_ids"):
            data[key] = list(data[key])
        data["percent"] = self.percent
        return data


@dataclass
class SubmissionResult:
    """Result of a create/resubmit call."""

    job_id: str
    """Job the selection was recorded on."""

    results: list[PerSegmentResult] = field(default_factory=list)
    """Per-segment outcomes of the pass run for this submission."""

    snapshot: JobSnapshot | None = None
    """Job state after the submission."""
