"""SegmentEngineError, the application error built from registry codes.

Pass-level and per-segment failures in the batch engine are built from
registry codes as ``SegmentEngineError``, so persisted job messages and
API error bodies carry the same code, message and remediation.
"""

from dataclasses import dataclass, field

from src.errors.registry import get_error


@dataclass
class SegmentEngineError(Exception):
    """Application error with code, message, and context.

    Attributes:
        code: Error code in E-XXXX format.
        message: Human-readable error message.
        remediation: Action user should take to resolve.
        segment_ids: Segment IDs affected by the error.
        is_retryable: Whether the operation can be retried without user action.
        details: Additional context dictionary.
    """

    code: str
    message: str
    remediation: str
    segment_ids: list[str] = field(default_factory=list)
    is_retryable: bool = False
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        """Return string representation of the error."""
        return f"{self.code}: {self.message}"

    @classmethod
    def from_code(cls, code: str, **kwargs: object) -> "SegmentEngineError":
        """Create error from registry code with context substitution.

        Args:
            code: Error code in E-XXXX format.
            **kwargs: Context values for message template substitution.
                Special keys 'segment_ids' and 'details' populate the
                matching fields rather than the message.

        Returns:
            SegmentEngineError instance with formatted message.
        """
        segment_ids = kwargs.get("segment_ids", [])
        if not isinstance(segment_ids, list):
            segment_ids = []
        details = kwargs.get("details", {})
        if not isinstance(details, dict):
            details = {}

        error_def = get_error(code)
        if not error_def:
            return cls(
                code=code,
                message=f"Unknown error: {code}",
                remediation="Contact support.",
                segment_ids=segment_ids,
                details=details,
            )

        template_kwargs = {
            k: v for k, v in kwargs.items() if k not in ("segment_ids", "details")
        }
        try:
            message = error_def.message_template.format(**template_kwargs)
        except KeyError:
            # Keep template if some placeholders are missing
            message = error_def.message_template

        return cls(
            code=error_def.code,
            message=message,
            remediation=error_def.remediation,
            is_retryable=error_def.is_retryable,
            segment_ids=segment_ids,
            details=details,
        )
