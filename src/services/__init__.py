"""Service layer for the segment engine.

Provides the job store, the batch engine and runner, history queries,
notifications and audit logging.
"""

from src.services.audit_service import AuditService, EventType, LogLevel
from src.services.job_service import (
    InvalidStateTransition,
    PartitionInvariantError,
    SegmentJobService,
    StaleJobError,
)

__all__ = [
    "SegmentJobService",
    "InvalidStateTransition",
    "StaleJobError",
    "PartitionInvariantError",
    "AuditService",
    "LogLevel",
    "EventType",
]
