"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the segment engine REST API:
job submission, job snapshots and history, per-segment results and the
read-only catalog.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Enums for API validation


class JobStatusEnum(str, Enum):
    """Job status values exposed by the API."""

    pending = "pending"
    in_progress = "in_progress"
    waiting_retry = "waiting_retry"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class JobFilterEnum(str, Enum):
    """History view filters."""

    all = "all"
    active = "active"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


# Job schemas


class SegmentJobCreate(BaseModel):
    """Request schema for submitting a selection."""

    connection_id: str = Field(..., min_length=1)
    selection_ids: list[str] = Field(..., min_length=1)
    custom_inputs: dict[str, str] = Field(default_factory=dict)
    existing_job_id: str | None = None

    @field_validator("selection_ids")
    @classmethod
    def _strip_ids(cls, v: list[str]) -> list[str]:
        """Drop blank IDs so an all-blank selection fails resolution."""
        return [s.strip() for s in v if s and s.strip()]


class JobSnapshotResponse(BaseModel):
    """Response schema for a job's progress state."""

    job_id: str
    tenant_id: str
    connection_id: str
    status: JobStatusEnum
    version: int
    total_segments: int
    segments_processed: int
    success_count: int
    error_count: int
    percent: int
    pending_segment_ids: list[str]
    completed_segment_ids: list[str]
    failed_segment_ids: list[str]
    rate_limit_type: str | None = None
    retry_after: str | None = None
    last_error_message: str | None = None
    created_at: str
    updated_at: str
    completed_at: str | None = None


class JobSummaryResponse(BaseModel):
    """Response schema for a job in the history list."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    connection_id: str
    status: JobStatusEnum
    total_segments: int
    segments_processed: int
    success_count: int
    error_count: int
    rate_limit_type: str | None = None
    retry_after: str | None = None
    last_error_message: str | None = None
    retry_count: int
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None


class JobStatsResponse(BaseModel):
    """Aggregates shown above the history list."""

    total_jobs: int
    total_segments_created: int
    success_rate: int
    active_jobs: int


class JobListResponse(BaseModel):
    """Response schema for the job history list."""

    jobs: list[JobSummaryResponse]
    stats: JobStatsResponse


class SubmissionResponse(BaseModel):
    """Response schema for an accepted submission."""

    job: JobSnapshotResponse
    pass_scheduled: bool


class SegmentResultResponse(BaseModel):
    """Response schema for a stored segment attempt."""

    model_config = ConfigDict(from_attributes=True)

    segment_id: str
    status: str
    external_id: str | None = None
    segment_name: str | None = None
    error: str | None = None
    rate_limited: bool
    attempted_at: str


class SegmentResultListResponse(BaseModel):
    job_id: str
    results: list[SegmentResultResponse]


# Catalog schemas


class CustomInputResponse(BaseModel):
    key: str
    label: str
    default: str


class SegmentDefinitionResponse(BaseModel):
    """Catalog entry as shown to tenants."""

    id: str
    name: str
    category: str
    description: str
    requires_input: CustomInputResponse | None = None
    unavailable: bool
    metric_keys: list[str]


class BundleResponse(BaseModel):
    id: str
    name: str
    description: str
    segment_ids: list[str]


class CatalogResponse(BaseModel):
    segments: list[SegmentDefinitionResponse]
    bundles: list[BundleResponse]

