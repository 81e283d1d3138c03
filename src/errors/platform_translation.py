"""Marketing platform error translation to engine error codes.

Maps HTTP statuses and error texts returned by the marketing platform to the
engine's error code system, providing user-friendly messages with actionable
remediation steps.
"""

from src.errors.registry import get_error

# HTTP status codes with a fixed meaning on the platform API
PLATFORM_STATUS_MAP: dict[int, str] = {
    400: "E-3004",
    401: "E-5001",
    403: "E-5002",
    422: "E-3004",
    429: "E-3002",
    500: "E-3005",
    502: "E-3001",
    503: "E-3001",
    504: "E-3001",
}

# Error texts that require pattern matching
PLATFORM_MESSAGE_PATTERNS: dict[str, str] = {
    "per day": "E-3003",
    "daily": "E-3003",
    "throttled": "E-3002",
    "rate limit": "E-3002",
    "too many requests": "E-3002",
    "invalid api key": "E-5001",
    "not authorized": "E-5001",
    "missing scope": "E-5002",
    "service unavailable": "E-3001",
}


def translate_platform_error(
    status_code: int | None,
    platform_message: str | None,
    context: dict | None = None,
) -> tuple[str, str, str]:
    """Translate a platform error to an engine error.

    Message patterns win over the status code so that a 429 carrying a
    daily-quota text maps to the daily code.

    Args:
        status_code: HTTP status returned by the platform, if any.
        platform_message: Error detail text from the platform.
        context: Additional template context (segment_id, retry_date...).

    Returns:
        Tuple of (error_code, formatted_message, remediation).
    """
    context = dict(context or {})
    context.setdefault("platform_message", platform_message or f"HTTP {status_code}")

    code: str | None = None
    if platform_message:
        lowered = platform_message.lower()
        for pattern, mapped in PLATFORM_MESSAGE_PATTERNS.items():
            if pattern in lowered:
                code = mapped
                break

    if code is None and status_code is not None:
        code = PLATFORM_STATUS_MAP.get(status_code)

    error = get_error(code or "E-3005")
    if error:
        return (error.code, _format_message(error.message_template, **context), error.remediation)

    return (
        "E-3005",
        f"Platform error: {platform_message or status_code or 'Unknown'}",
        "Contact support with this error message for assistance.",
    )


def _format_message(template: str, **kwargs: object) -> str:
    """Format a message template with context, ignoring missing keys."""
    try:
        return template.format(**kwargs)
    except KeyError:
        return template


def extract_platform_error(response: dict) -> str | None:
    """Extract the first error detail from a JSON:API error response.

    Args:
        response: Decoded response body.

    Returns:
        The ``detail`` (or ``title``) of the first error, or None.
    """
    errors = response.get("errors") if isinstance(response, dict) else None
    if errors and isinstance(errors, list):
        first = errors[0] or {}
        return first.get("detail") or first.get("title")
    return None
