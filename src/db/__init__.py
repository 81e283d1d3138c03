"""Database module for segment engine state management and persistence."""

from src.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from src.db.models import (
    AuditLog,
    EventType,
    JobNotification,
    JobStatus,
    LogLevel,
    PlatformConnection,
    RateLimitType,
    SegmentJob,
    SegmentOutcome,
    SegmentResult,
)

__all__ = [
    # Models
    "SegmentJob",
    "SegmentResult",
    "PlatformConnection",
    "JobNotification",
    "AuditLog",
    # Enums
    "JobStatus",
    "RateLimitType",
    "SegmentOutcome",
    "LogLevel",
    "EventType",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
