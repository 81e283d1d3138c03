"""Error code registry with E-XXXX format codes.

This module defines the error code system for the segment engine, organizing
errors into categories:
- E-1xxx: Selection and source data errors
- E-2xxx: Validation errors
- E-3xxx: Marketing platform API errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DATA = "data"  # E-1xxx: Selection and source data errors
    VALIDATION = "validation"  # E-2xxx: Validation errors
    PLATFORM_API = "platform_api"  # E-3xxx: Marketing platform errors
    SYSTEM = "system"  # E-4xxx: System/internal errors
    AUTH = "auth"  # E-5xxx: Authentication errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Data errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DATA,
        title="Nothing To Create",
        message_template="None of the selected segments can be created. {detail}",
        remediation="Select at least one available segment or bundle and retry.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.DATA,
        title="Unknown Segment",
        message_template="Segment '{segment_id}' is not in the catalog.",
        remediation="Refresh the catalog and choose a listed segment.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.DATA,
        title="Missing Source Data",
        message_template="Segment '{segment_id}' needs account metrics that are not available: {metrics}.",
        remediation="Connect the integration that tracks these events, then resubmit the segment.",
    ),
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Custom Input",
        message_template="Custom input '{field}' is invalid: {reason}.",
        remediation="Provide a numeric value for the custom input and retry.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Job State",
        message_template="Job {job_id} cannot be {action} while it is {status}.",
        remediation="Refresh the job and retry the action if it still applies.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Not Found",
        message_template="{resource_type} '{identifier}' not found.",
        remediation="Check the ID and that it belongs to your account.",
    ),
    # Platform API errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.PLATFORM_API,
        title="Platform Unavailable",
        message_template="The marketing platform is unreachable: {platform_message}",
        remediation="Check network connectivity and the platform status page, then resubmit.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.PLATFORM_API,
        title="Per-Minute Limit Reached",
        message_template="Per-minute limit reached. Automatic retry in {minutes} minutes.",
        remediation="No action needed. The job resumes automatically.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.PLATFORM_API,
        title="Daily Quota Reached",
        message_template="Daily limit reached. Automatic retry scheduled for {retry_date}.",
        remediation="No action needed. The job resumes after the quota resets at midnight UTC.",
        is_retryable=True,
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.PLATFORM_API,
        title="Segment Rejected",
        message_template="The marketing platform rejected the segment: {platform_message}",
        remediation="Review the segment definition and custom inputs.",
    ),
    "E-3005": ErrorCode(
        code="E-3005",
        category=ErrorCategory.PLATFORM_API,
        title="Platform Unknown Error",
        message_template="Unexpected marketing platform error: {platform_message}",
        remediation="Contact support with this error message for assistance.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Database Error",
        message_template="Failed to save job state: {error}",
        remediation="Check disk space and database permissions.",
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Stale Job Version",
        message_template="Job {job_id} was modified concurrently (expected version {expected}).",
        remediation="Reload the job and retry.",
        is_retryable=True,
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.SYSTEM,
        title="Job Bookkeeping Error",
        message_template="Job {job_id} segment lists are inconsistent: {reason}",
        remediation="Contact support with the job ID.",
    ),
    "E-4004": ErrorCode(
        code="E-4004",
        category=ErrorCategory.SYSTEM,
        title="Unexpected Error",
        message_template="An unexpected error occurred: {error}",
        remediation="Retry the operation. If it persists, contact support.",
    ),
    # Auth errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Invalid API Key",
        message_template="The marketing platform rejected the API key: {platform_message}",
        remediation="Reconnect the account with a valid private API key.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Missing API Scopes",
        message_template="The API key lacks permission for this operation: {platform_message}",
        remediation="Grant segments and metrics read/write scopes to the API key.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)
