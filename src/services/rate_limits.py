"""Rate-limit classification and retry scheduling.

The platform throttles segment creation in two ways: a short sliding
window (steady) and a daily creation quota (daily). Both surface as error
texts on creation calls; this module decides which one a pass hit and
when the paused job may resume.
"""

import re
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from src.db.models import JobStatus, RateLimitType

RATE_LIMIT_PATTERNS = (
    "throttled",
    "segment processing limit",
    "rate limit",
    "too many requests",
    "expected available in",
)

DAILY_PATTERNS = (
    "daily",
    "per day",
    "/day",
    "24 hours",
)

# Wait hints longer than this can only come from the daily quota
DAILY_WAIT_THRESHOLD_SECONDS = 3600

DEFAULT_STEADY_DELAY = timedelta(minutes=2)

_WAIT_HINT = re.compile(r"expected available in (\d+) second", re.IGNORECASE)
# A bare status in the text ("HTTP 429"), not digits inside an ID or amount
_STATUS_429 = re.compile(r"\b429\b")


def is_rate_limit_error(text: str | None, status_code: int | None = None) -> bool:
    """Return True if an error response means "throttled", not "failed"."""
    if status_code == 429:
        return True
    if not text:
        return False
    lowered = text.lower()
    if any(pattern in lowered for pattern in RATE_LIMIT_PATTERNS):
        return True
    return _STATUS_429.search(text) is not None


def parse_wait_seconds(text: str | None) -> int | None:
    """Extract the "Expected available in N second(s)" hint, if present."""
    if not text:
        return None
    match = _WAIT_HINT.search(text)
    return int(match.group(1)) if match else None


def classify_rate_limit(texts: Iterable[str | None]) -> RateLimitType | None:
    """Classify the rate-limit errors seen during a pass.

    Daily wins over steady: one daily signature anywhere means the quota
    is exhausted and retrying in minutes would only burn calls.

    Args:
        texts: Error texts of throttled calls.

    Returns:
        daily, steady, or None when no text is a rate-limit error.
    """
    kind: RateLimitType | None = None
    for text in texts:
        if not is_rate_limit_error(text):
            continue
        lowered = (text or "").lower()
        wait = parse_wait_seconds(text)
        if any(p in lowered for p in DAILY_PATTERNS) or (
            wait is not None and wait > DAILY_WAIT_THRESHOLD_SECONDS
        ):
            return RateLimitType.daily
        kind = RateLimitType.steady
    return kind


def next_utc_midnight(now: datetime) -> datetime:
    """Return the first instant of the next UTC calendar day."""
    now_utc = now.astimezone(UTC)
    return datetime(now_utc.year, now_utc.month, now_utc.day, tzinfo=UTC) + timedelta(days=1)


def compute_retry_after(
    kind: RateLimitType,
    now: datetime,
    steady_delay: timedelta = DEFAULT_STEADY_DELAY,
) -> datetime:
    """Return when a job paused for ``kind`` may resume."""
    if kind == RateLimitType.daily:
        return next_utc_midnight(now)
    return now + steady_delay


def pause_message(kind: RateLimitType, steady_delay: timedelta = DEFAULT_STEADY_DELAY) -> str:
    """User-facing explanation stored on the paused job."""
    if kind == RateLimitType.daily:
        return "Daily limit reached. Automatic retry scheduled for tomorrow (after midnight UTC)."
    minutes = max(1, int(steady_delay.total_seconds() // 60))
    return f"Per-minute limit reached. Automatic retry in {minutes} minutes."


def schedule_retry(
    kind: RateLimitType,
    now: datetime,
    steady_delay: timedelta = DEFAULT_STEADY_DELAY,
) -> dict[str, Any]:
    """Build the job update that pauses a job until its retry time.

    Returns:
        Partial job fields for ``SegmentJobService.update_job``.
    """
    return {
        "status": JobStatus.waiting_retry,
        "rate_limit_type": kind.value,
        "retry_after": compute_retry_after(kind, now, steady_delay).isoformat(),
        "last_error_message": pause_message(kind, steady_delay),
    }


def is_retry_due(retry_after: str | None, now: datetime) -> bool:
    """Return True when a stored retry_after timestamp has elapsed."""
    if not retry_after:
        return False
    return datetime.fromisoformat(retry_after) <= now
