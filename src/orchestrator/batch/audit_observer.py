"""Batch observer that records pass events in the job audit log."""

import logging

from sqlalchemy.orm import Session

from src.orchestrator.batch.models import PerSegmentResult
from src.services.audit_service import AuditService

logger = logging.getLogger(__name__)


class AuditTrailObserver:
    """BatchEventObserver writing one audit entry per pass event.

    Attributes:
        audit: AuditService bound to the executor's session.
    """

    def __init__(self, db: Session) -> None:
        self.audit = AuditService(db)

    async def on_pass_started(self, job_id: str, pending: int) -> None:
        self.audit.log_state_change(
            job_id, "claimed", "in_progress", reason=f"{pending} segment(s) pending"
        )

    async def on_segment_result(self, job_id: str, result: PerSegmentResult) -> None:
        self.audit.log_segment_event(
            job_id, result.segment_id, result.status, details=result.to_dict()
        )

    async def on_segment_throttled(self, job_id: str, segment_id: str, detail: str) -> None:
        self.audit.log_segment_event(job_id, segment_id, "throttled", details={"detail": detail})

    async def on_pass_paused(self, job_id: str, rate_limit_type: str, retry_after: str) -> None:
        self.audit.log_state_change(
            job_id,
            "in_progress",
            "waiting_retry",
            reason=f"{rate_limit_type} rate limit, retry after {retry_after}",
        )

    async def on_pass_completed(
        self, job_id: str, status: str, success_count: int, error_count: int
    ) -> None:
        self.audit.log_state_change(
            job_id,
            "in_progress",
            status,
            reason=f"{success_count} succeeded, {error_count} failed",
        )

    async def on_pass_failed(self, job_id: str, error_code: str, error_message: str) -> None:
        self.audit.log_job_error(job_id, error_code, error_message)
