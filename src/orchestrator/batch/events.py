"""Observer pattern for segment pass lifecycle events.

Provides the BatchEventObserver protocol and BatchEventEmitter class for
notifying observers of per-segment outcomes during an execution pass.
Job-level progress is published separately as snapshots by the
ProgressBroadcaster.
"""

import logging
from typing import Protocol

from src.orchestrator.batch.models import PerSegmentResult

logger = logging.getLogger(__name__)


class BatchEventObserver(Protocol):
    """Observer protocol for pass lifecycle events.

    Implementations can subscribe via BatchEventEmitter to audit or log
    activity.
    """

    async def on_pass_started(self, job_id: str, pending: int) -> None:
        """Called when a pass claims a job.

        Args:
            job_id: Job being processed.
            pending: Number of pending segments at the start of the pass.
        """
        ...

    async def on_segment_result(self, job_id: str, result: PerSegmentResult) -> None:
        """Called once per resolved segment (created, exists, skipped, error)."""
        ...

    async def on_segment_throttled(self, job_id: str, segment_id: str, detail: str) -> None:
        """Called when a creation call is rate-limited; the segment stays pending."""
        ...

    async def on_pass_paused(self, job_id: str, rate_limit_type: str, retry_after: str) -> None:
        """Called when a pass ends with the job waiting for a retry.

        Args:
            job_id: Job being processed.
            rate_limit_type: steady or daily.
            retry_after: ISO8601 time the job becomes eligible again.
        """
        ...

    async def on_pass_completed(
        self, job_id: str, status: str, success_count: int, error_count: int
    ) -> None:
        """Called when a pass leaves the job in a terminal state."""
        ...

    async def on_pass_failed(self, job_id: str, error_code: str, error_message: str) -> None:
        """Called when a pass fails as a whole (platform unreachable, auth)."""
        ...


class BatchEventEmitter:
    """Emits pass lifecycle events to registered observers.

    Exceptions from individual observers are caught and logged to prevent
    one broken observer from stopping event delivery to others.
    """

    def __init__(self) -> None:
        self._observers: list[BatchEventObserver] = []

    def add_observer(self, observer: BatchEventObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: BatchEventObserver) -> None:
        self._observers.remove(observer)

    async def _emit(self, hook: str, *args: object) -> None:
        for observer in self._observers:
            try:
                await getattr(observer, hook)(*args)
            except Exception as e:
                logger.error(
                    "Observer %s failed %s: %s",
                    type(observer).__name__,
                    hook,
                    e,
                )

    async def emit_pass_started(self, job_id: str, pending: int) -> None:
        await self._emit("on_pass_started", job_id, pending)

    async def emit_segment_result(self, job_id: str, result: PerSegmentResult) -> None:
        await self._emit("on_segment_result", job_id, result)

    async def emit_segment_throttled(self, job_id: str, segment_id: str, detail: str) -> None:
        await self._emit("on_segment_throttled", job_id, segment_id, detail)

    async def emit_pass_paused(self, job_id: str, rate_limit_type: str, retry_after: str) -> None:
        await self._emit("on_pass_paused", job_id, rate_limit_type, retry_after)

    async def emit_pass_completed(
        self, job_id: str, status: str, success_count: int, error_count: int
    ) -> None:
        await self._emit("on_pass_completed", job_id, status, success_count, error_count)

    async def emit_pass_failed(self, job_id: str, error_code: str, error_message: str) -> None:
        await self._emit("on_pass_failed", job_id, error_code, error_message)
