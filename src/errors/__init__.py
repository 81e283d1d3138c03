"""Error handling framework for the segment engine.

This package provides:
- Error code registry with E-XXXX format codes
- Marketing platform error translation to friendly messages
- SegmentEngineError, built from registry codes

Error categories:
- E-1xxx: Selection and source data errors
- E-2xxx: Validation errors
- E-3xxx: Marketing platform API errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication errors
"""

from src.errors.registry import (
    ErrorCategory,
    ErrorCode,
    ERROR_REGISTRY,
    get_error,
)
from src.errors.platform_translation import (
    PLATFORM_STATUS_MAP,
    extract_platform_error,
    translate_platform_error,
)
from src.errors.formatter import SegmentEngineError

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    # Platform translation
    "translate_platform_error",
    "extract_platform_error",
    "PLATFORM_STATUS_MAP",
    # Errors
    "SegmentEngineError",
]
