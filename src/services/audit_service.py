"""Audit logging service for segment-creation jobs.

This module provides job-scoped audit logging with automatic redaction of
credentials. Supports plain text export for debugging and support tickets.

Usage:
    from src.db.connection import get_db, init_db
    from src.services.audit_service import AuditService, LogLevel, EventType

    init_db()
    db = next(get_db())
    audit = AuditService(db)

    audit.log_state_change(job_id, 'pending', 'in_progress')
    audit.log_segment_event(job_id, 'vip-customers', 'created', {...})

    export = audit.export_logs_text(job_id)
"""

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from src.db.models import AuditLog, EventType, LogLevel
from src.utils.redaction import redact_for_logging

# Re-export enums for convenience
__all__ = [
    "AuditService",
    "LogLevel",
    "EventType",
]


def _utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(timezone.utc).isoformat()


class AuditService:
    """Service for job-scoped audit logging with credential redaction.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def log(
        self,
        job_id: str,
        level: LogLevel,
        event_type: EventType,
        message: str,
        details: dict[str, Any] | None = None,
        segment_id: str | None = None,
    ) -> AuditLog:
        """Create an audit log entry.

        Core logging method that all other log methods delegate to.
        Redacts sensitive data in details before storage.

        Args:
            job_id: UUID of the job this log belongs to.
            level: Severity level (INFO, WARNING, ERROR).
            event_type: Category of event.
            message: Human-readable event description.
            details: Optional structured data (redacted and JSON-encoded).
            segment_id: Optional segment ID for segment-specific events.

        Returns:
            The created AuditLog entry.
        """
        details_json: str | None = None
        if details is not None:
            details_json = json.dumps(redact_for_logging(details))

        log_entry = AuditLog(
            job_id=job_id,
            timestamp=_utc_now_iso(),
            level=level.value,
            event_type=event_type.value,
            message=message,
            details=details_json,
            segment_id=segment_id,
        )

        self.db.add(log_entry)
        self.db.commit()
        self.db.refresh(log_entry)

        return log_entry

    def log_state_change(
        self, job_id: str, old_state: str, new_state: str, reason: str | None = None
    ) -> AuditLog:
        """Log a job state transition."""
        details: dict[str, Any] = {"old_state": old_state, "new_state": new_state}
        if reason:
            details["reason"] = reason
        return self.log(
            job_id=job_id,
            level=LogLevel.INFO,
            event_type=EventType.state_change,
            message=f"Job state changed: {old_state} -> {new_state}",
            details=details,
        )

    def log_segment_event(
        self,
        job_id: str,
        segment_id: str,
        outcome: str,
        details: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Log a per-segment outcome (created, exists, skipped, error, throttled)."""
        level = LogLevel.ERROR if outcome == "error" else LogLevel.INFO
        if outcome in ("skipped", "throttled"):
            level = LogLevel.WARNING

        return self.log(
            job_id=job_id,
            level=level,
            event_type=EventType.segment_event,
            message=f"Segment {segment_id} {outcome}",
            details=details,
            segment_id=segment_id,
        )

    def log_job_error(
        self,
        job_id: str,
        error_code: str,
        error_message: str,
        details: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Log a job-level error.

        Args:
            job_id: UUID of the job.
            error_code: Error code (e.g., 'E-3001').
            error_message: Human-readable error description.
            details: Optional structured error context.

        Returns:
            The created AuditLog entry.
        """
        error_details = {"error_code": error_code, "error_message": error_message}
        if details:
            error_details.update(details)

        return self.log(
            job_id=job_id,
            level=LogLevel.ERROR,
            event_type=EventType.error,
            message=f"{error_code}: {error_message}",
            details=error_details,
        )

    # Query methods

    def get_logs(
        self,
        job_id: str,
        level: LogLevel | None = None,
        event_type: EventType | None = None,
        limit: int = 1000,
    ) -> list[AuditLog]:
        """Get audit logs for a job, oldest first, with optional filters."""
        query = self.db.query(AuditLog).filter(AuditLog.job_id == job_id)

        if level is not None:
            query = query.filter(AuditLog.level == level.value)

        if event_type is not None:
            query = query.filter(AuditLog.event_type == event_type.value)

        return query.order_by(AuditLog.timestamp.asc()).limit(limit).all()

    def export_logs_text(self, job_id: str) -> str:
        """Export all logs for a job as plain text.

        Example output:
            [2025-01-23T10:30:45Z] [INFO] [state_change] Job state changed: pending -> in_progress
            [2025-01-23T10:30:46Z] [INFO] [segment_event] [vip-customers] Segment vip-customers created
                {
                    "external_id": "XyZ123"
                }
        """
        lines = []

        for log_entry in self.get_logs(job_id):
            segment_prefix = f"[{log_entry.segment_id}] " if log_entry.segment_id else ""
            lines.append(
                f"[{log_entry.timestamp}] [{log_entry.level}] "
                f"[{log_entry.event_type}] {segment_prefix}{log_entry.message}"
            )

            if log_entry.details:
                try:
                    details_formatted = json.dumps(json.loads(log_entry.details), indent=4)
                except json.JSONDecodeError:
                    details_formatted = log_entry.details
                for detail_line in details_formatted.split("\n"):
                    lines.append(f"    {detail_line}")

        return "\n".join(lines)
