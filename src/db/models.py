"""SQLAlchemy ORM models for the segment engine state database.

This module defines the core data models for segment-creation jobs,
per-segment outcomes, connected platform accounts, notification
deduplication and audit logging. Uses SQLAlchemy 2.0 style with Mapped
and mapped_column.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class JobStatus(str, Enum):
    """Status values for segment-creation jobs.

    Lifecycle: pending -> in_progress -> completed/failed/cancelled
               in_progress -> waiting_retry -> in_progress (on resume)
    """

    pending = "pending"
    in_progress = "in_progress"
    waiting_retry = "waiting_retry"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


ACTIVE_STATUSES = (JobStatus.pending, JobStatus.in_progress, JobStatus.waiting_retry)
TERMINAL_STATUSES = (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)


class RateLimitType(str, Enum):
    """Kinds of platform throttling that pause a job."""

    steady = "steady"  # short sliding-window limit, retry in minutes
    daily = "daily"  # daily creation quota, retry after UTC midnight


class SegmentOutcome(str, Enum):
    """Outcome of a single segment creation attempt."""

    created = "created"
    exists = "exists"
    skipped = "skipped"
    error = "error"


class LogLevel(str, Enum):
    """Severity levels for audit log entries."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class EventType(str, Enum):
    """Categories of events logged in the audit trail."""

    state_change = "state_change"
    segment_event = "segment_event"
    error = "error"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _load_ids(raw: str | None) -> list[str]:
    return json.loads(raw) if raw else []


def _dump_ids(value: list[str]) -> str:
    return json.dumps(list(value))


# Models


class PlatformConnection(Base):
    """A tenant's connected marketing platform account.

    Holds the API key used for segment creation and the per-tenant
    thresholds that parameterized segment definitions are rendered with.

    Attributes:
        id: UUID primary key
        tenant_id: Owning tenant
        display_name: Human-readable account name
        api_key: Private API key for the platform
        currency_symbol: Symbol used in rendered segment names
        aov: Average order value for the account
        vip_threshold: Lifetime value above which a customer is a big spender
        high_value_threshold: Lifetime value for high-value customers
        new_customer_days: Window in days for "new customer" segments
        lapsed_days: Days without purchase before a customer is lapsed
        churned_days: Days without purchase before a customer is churned
    """

    __tablename__ = "platform_connections"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(Text, nullable=False)
    currency_symbol: Mapped[str] = mapped_column(
        String(8), nullable=False, default="$"
    )
    aov: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    vip_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=500.0)
    high_value_threshold: Mapped[float] = mapped_column(
        Float, nullable=False, default=300.0
    )
    new_customer_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    lapsed_days: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    churned_days: Mapped[int] = mapped_column(Integer, nullable=False, default=180)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    jobs: Mapped[list["SegmentJob"]] = relationship(
        "SegmentJob", back_populates="connection"
    )

    __table_args__ = (Index("idx_platform_connections_tenant", "tenant_id"),)

    def settings(self) -> dict[str, float | int | str]:
        """Return the thresholds used to render segment definitions."""
        return {
            "currency_symbol": self.currency_symbol,
            "aov": self.aov,
            "vip_threshold": self.vip_threshold,
            "high_value_threshold": self.high_value_threshold,
            "new_customer_days": self.new_customer_days,
            "lapsed_days": self.lapsed_days,
            "churned_days": self.churned_days,
        }

    def __repr__(self) -> str:
        return f"<PlatformConnection(id={self.id!r}, tenant={self.tenant_id!r})>"


class SegmentJob(Base):
    """Bulk segment-creation job record.

    The three segment ID lists partition ``segments_to_create`` at every
    committed state. Counters are derived from the lists and kept in
    columns for cheap history queries. ``version`` is the optimistic
    concurrency token; every ORM update checks it.

    Attributes:
        id: UUID primary key
        tenant_id: Owning tenant
        connection_id: Platform account the segments are created in
        status: Current job status
        segments_to_create_json: Ordered, deduplicated requested segment IDs
        pending_segment_ids_json: IDs not yet resolved
        completed_segment_ids_json: IDs created or already present
        failed_segment_ids_json: IDs that failed or could not be created
        custom_inputs_json: Tenant-supplied definition parameters
        total_segments: Size of the requested set
        segments_processed: success_count + error_count
        success_count: Size of the completed list
        error_count: Size of the failed list
        rate_limit_type: steady or daily while paused
        last_error_message: Latest user-facing error or pause message
        retry_after: ISO8601 timestamp after which a paused job may resume
        retry_count: Number of rate-limit pauses so far
        version: Row version for compare-and-swap updates
    """

    __tablename__ = "segment_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("platform_connections.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.pending.value
    )

    # Segment ID partitions (JSON arrays)
    segments_to_create_json: Mapped[str] = mapped_column(
        Text, nullable=False, default="[]"
    )
    pending_segment_ids_json: Mapped[str] = mapped_column(
        Text, nullable=False, default="[]"
    )
    completed_segment_ids_json: Mapped[str] = mapped_column(
        Text, nullable=False, default="[]"
    )
    failed_segment_ids_json: Mapped[str] = mapped_column(
        Text, nullable=False, default="[]"
    )
    custom_inputs_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Counters
    total_segments: Mapped[int] = mapped_column(default=0, nullable=False)
    segments_processed: Mapped[int] = mapped_column(default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(default=0, nullable=False)

    # Rate limiting
    rate_limit_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_after: Mapped[str | None] = mapped_column(String(50), nullable=True)
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Timestamps (ISO8601 strings for SQLite compatibility)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    started_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    # Relationships
    connection: Mapped["PlatformConnection"] = relationship(
        "PlatformConnection", back_populates="jobs"
    )
    results: Mapped[list["SegmentResult"]] = relationship(
        "SegmentResult", back_populates="job", cascade="all, delete-orphan"
    )
    audit_logs: Mapped[list["AuditLog"]] = relationship(
        "AuditLog", back_populates="job", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_segment_jobs_status", "status"),
        Index("idx_segment_jobs_owner", "tenant_id", "connection_id"),
        Index("idx_segment_jobs_created_at", "created_at"),
        Index("idx_segment_jobs_retry_after", "retry_after"),
    )

    @property
    def segments_to_create(self) -> list[str]:
        return _load_ids(self.segments_to_create_json)

    @segments_to_create.setter
    def segments_to_create(self, value: list[str]) -> None:
        self.segments_to_create_json = _dump_ids(value)

    @property
    def pending_segment_ids(self) -> list[str]:
        return _load_ids(self.pending_segment_ids_json)

    @pending_segment_ids.setter
    def pending_segment_ids(self, value: list[str]) -> None:
        self.pending_segment_ids_json = _dump_ids(value)

    @property
    def completed_segment_ids(self) -> list[str]:
        return _load_ids(self.completed_segment_ids_json)

    @completed_segment_ids.setter
    def completed_segment_ids(self, value: list[str]) -> None:
        self.completed_segment_ids_json = _dump_ids(value)

    @property
    def failed_segment_ids(self) -> list[str]:
        return _load_ids(self.failed_segment_ids_json)

    @failed_segment_ids.setter
    def failed_segment_ids(self, value: list[str]) -> None:
        self.failed_segment_ids_json = _dump_ids(value)

    @property
    def custom_inputs(self) -> dict[str, str]:
        """Parse custom inputs JSON into a dict."""
        return json.loads(self.custom_inputs_json) if self.custom_inputs_json else {}

    @custom_inputs.setter
    def custom_inputs(self, value: dict[str, str]) -> None:
        self.custom_inputs_json = json.dumps(value) if value else None

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}

    def __repr__(self) -> str:
        return (
            f"<SegmentJob(id={self.id!r}, status={self.status!r}, "
            f"processed={self.segments_processed}/{self.total_segments})>"
        )


class SegmentResult(Base):
    """Outcome of one segment creation attempt within a job.

    Attributes:
        id: UUID primary key
        job_id: Foreign key to parent job
        segment_id: Catalog segment ID
        status: created, exists, skipped or error
        external_id: Platform-side segment ID when created
        segment_name: Rendered segment name sent to the platform
        error: Error detail for skipped/error outcomes
        rate_limited: Whether the attempt was throttled (segment stays pending)
        attempted_at: ISO8601 timestamp of the attempt
    """

    __tablename__ = "segment_results"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("segment_jobs.id", ondelete="CASCADE"), nullable=False
    )
    segment_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    segment_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    rate_limited: Mapped[bool] = mapped_column(nullable=False, default=False)
    attempted_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    job: Mapped["SegmentJob"] = relationship("SegmentJob", back_populates="results")

    __table_args__ = (
        Index("idx_segment_results_job_id", "job_id"),
        Index("idx_segment_results_segment", "job_id", "segment_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SegmentResult(job_id={self.job_id!r}, segment={self.segment_id!r}, "
            f"status={self.status!r})>"
        )


class JobNotification(Base):
    """Ledger of notifications raised for a job.

    The unique (job_id, notification_key) pair turns at-least-once snapshot
    delivery into exactly-once notifications.
    """

    __tablename__ = "job_notifications"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("segment_jobs.id", ondelete="CASCADE"), nullable=False
    )
    notification_key: Mapped[str] = mapped_column(String(64), nullable=False)
    sent_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint("job_id", "notification_key", name="uq_job_notification"),
    )

    def __repr__(self) -> str:
        return f"<JobNotification(job_id={self.job_id!r}, key={self.notification_key!r})>"


class AuditLog(Base):
    """Audit log entry for job activity tracking.

    Records significant events during job execution including state
    changes, platform API calls, per-segment outcomes, and errors.

    Attributes:
        id: UUID primary key
        job_id: Foreign key to parent job
        timestamp: ISO8601 timestamp of event
        level: Log severity (INFO, WARNING, ERROR)
        event_type: Category of event (state_change, segment_event, error)
        message: Human-readable event description
        details: JSON blob with structured event data (request/response payloads)
        segment_id: Optional segment ID for segment-specific events
    """

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("segment_jobs.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # Structured data (JSON blob for request/response payloads)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Segment context (optional, for segment-specific events)
    segment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    job: Mapped["SegmentJob"] = relationship("SegmentJob", back_populates="audit_logs")

    __table_args__ = (
        Index("idx_audit_logs_job_id", "job_id"),
        Index("idx_audit_logs_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id!r}, job_id={self.job_id!r}, level={self.level!r}, type={self.event_type!r})>"
