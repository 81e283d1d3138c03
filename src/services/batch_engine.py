"""Batch engine for segment-creation passes.

One pass claims a job, detects the account's metrics once, then walks the
pending segment IDs in fixed-size batches with delays between calls.
Outcomes are persisted after every batch, so a crash loses at most one
batch of bookkeeping.

The first throttle that survives the in-call retry ends the pass: the
throttled segment and every segment not yet attempted stay pending, and
the job pauses until its retry time. No further calls are made against a
window (or daily quota) the platform has just reported as exhausted.

Example:
    engine = SegmentBatchEngine(db_session=session, client_factory=make_client)
    results = await engine.run_pass(job_id)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from src.catalog.resolver import (
    DEFAULT_CATALOG,
    SegmentCatalog,
    build_segment_payload,
    map_metric_ids,
    missing_metrics,
)
from src.db.models import JobStatus, PlatformConnection, RateLimitType, SegmentJob, SegmentOutcome
from src.errors.domain import ValidationError
from src.errors.formatter import SegmentEngineError
from src.errors.platform_translation import translate_platform_error
from src.orchestrator.batch.broadcaster import ProgressBroadcaster
from src.orchestrator.batch.events import BatchEventEmitter
from src.orchestrator.batch.models import PerSegmentResult
from src.services.job_service import SegmentJobService, StaleJobError, terminal_status
from src.services.platform_client import (
    PlatformAPIError,
    PlatformClient,
    PlatformConnectionError,
    SegmentCreateResponse,
)
from src.services.rate_limits import (
    DEFAULT_STEADY_DELAY,
    classify_rate_limit,
    is_rate_limit_error,
    parse_wait_seconds,
    schedule_retry,
)

logger = logging.getLogger(__name__)

# Builds a platform client for a connection; the engine closes it after the pass
ClientFactory = Callable[[PlatformConnection], PlatformClient]
Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]

# Attempts at persisting a batch before giving up on a contended job row
MAX_PERSIST_ATTEMPTS = 3


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class EngineSettings:
    """Pacing and retry knobs for a pass.

    Attributes:
        batch_size: Segments per batch.
        intra_batch_delay: Seconds between calls inside a batch.
        inter_batch_delay: Seconds between batches.
        steady_retry_delay: Pause after a per-minute throttle.
        max_call_attempts: In-call attempts for a steady throttle.
        backoff_base: First in-call backoff in seconds, doubled per attempt.
        max_wait_hint: Longest "expected available in" hint waited in-call.
        name_suffix: Branding appended to every segment name.
    """

    batch_size: int = 4
    intra_batch_delay: float = 0.5
    inter_batch_delay: float = 3.0
    steady_retry_delay: timedelta = DEFAULT_STEADY_DELAY
    max_call_attempts: int = 3
    backoff_base: float = 2.0
    max_wait_hint: float = 60.0
    name_suffix: str = ""


class SegmentThrottled(Exception):
    """A creation call was rate-limited; the segment stays pending."""

    def __init__(self, segment_id: str, detail: str) -> None:
        self.segment_id = segment_id
        self.detail = detail
        super().__init__(f"{segment_id} throttled: {detail}")


@dataclass
class _PassState:
    """Outcomes of the current batch that are not yet persisted."""

    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    throttle_texts: list[str] = field(default_factory=list)
    results: list[PerSegmentResult] = field(default_factory=list)

    @property
    def rate_limited(self) -> bool:
        return bool(self.throttle_texts)

    def record(self, result: PerSegmentResult) -> None:
        self.results.append(result)
        if result.status in (SegmentOutcome.created.value, SegmentOutcome.exists.value):
            self.completed.append(result.segment_id)
        else:
            # Skipped segments cannot be created for this account; retrying would loop
            self.failed.append(result.segment_id)

    def clear_batch(self) -> None:
        self.completed = []
        self.failed = []


class SegmentBatchEngine:
    """Executes segment-creation passes for jobs.

    Attributes:
        _db: Database session for job and result updates.
        _jobs: Job store bound to the same session.
    """

    def __init__(
        self,
        db_session,
        client_factory: ClientFactory,
        broadcaster: ProgressBroadcaster | None = None,
        settings: EngineSettings | None = None,
        catalog: SegmentCatalog = DEFAULT_CATALOG,
        emitter: BatchEventEmitter | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = _utc_now,
    ) -> None:
        """Initialize the engine.

        Args:
            db_session: SQLAlchemy session for state updates.
            client_factory: Builds a platform client for a connection.
            broadcaster: Receives job snapshots after every commit.
            settings: Pacing and retry settings.
            catalog: Segment definitions to render.
            emitter: Observer fan-out for per-segment events.
            sleep: Awaitable sleep, replaced in tests.
            clock: Current UTC time, replaced in tests.
        """
        self._db = db_session
        self._jobs = SegmentJobService(db_session, broadcaster)
        self._client_factory = client_factory
        self._settings = settings or EngineSettings()
        self._catalog = catalog
        self._emitter = emitter or BatchEventEmitter()
        self._sleep = sleep
        self._clock = clock

    async def run_pass(self, job_id: str) -> list[PerSegmentResult]:
        """Run one execution pass over a job's pending segments.

        No-op when the job cannot be claimed (already running, terminal,
        or lost a claim race).

        Args:
            job_id: Job to process.

        Returns:
            Per-segment outcomes produced by this pass.
        """
        job = self._jobs.claim_job(job_id)
        if job is None:
            return []

        state = _PassState()
        pending = list(job.pending_segment_ids)
        logger.info("Pass started for job %s: %d pending segment(s)", job_id, len(pending))
        await self._emitter.emit_pass_started(job_id, len(pending))

        connection = self._db.get(PlatformConnection, job.connection_id)
        if connection is None:
            error = SegmentEngineError.from_code(
                "E-4003", job_id=job_id, reason=f"connection {job.connection_id} not found"
            )
            await self._fail_pass(job_id, state, error.code, error.message)
            return state.results

        try:
            async with self._client_factory(connection) as client:
                metric_ids = map_metric_ids(await client.list_metrics())
                await self._run_batches(job, connection, client, metric_ids, pending, state)
        except PlatformConnectionError as e:
            error = SegmentEngineError.from_code("E-3001", platform_message=e.reason)
            await self._fail_pass(job_id, state, error.code, error.message)
        except PlatformAPIError as e:
            code, message, _ = translate_platform_error(e.status_code, e.detail)
            await self._fail_pass(job_id, state, code, message)
        except Exception as e:
            logger.exception("Unexpected error in pass for job %s", job_id)
            error = SegmentEngineError.from_code("E-4004", error=str(e))
            await self._fail_pass(job_id, state, error.code, error.message)
            raise

        return state.results

    # =========================================================================
    # Batches
    # =========================================================================

    async def _run_batches(
        self,
        job: SegmentJob,
        connection: PlatformConnection,
        client: PlatformClient,
        metric_ids: dict[str, str],
        pending: list[str],
        state: _PassState,
    ) -> None:
        size = max(1, self._settings.batch_size)
        batches = [pending[i:i + size] for i in range(0, len(pending), size)]
        settings = connection.settings()
        custom_inputs = job.custom_inputs

        for index, batch in enumerate(batches):
            current = self._jobs.get_job(job.id)
            if current is None or current.status == JobStatus.cancelled.value:
                logger.info("Job %s cancelled, stopping before batch %d", job.id, index + 1)
                return

            logger.info(
                "Job %s: batch %d/%d (%d segment(s))", job.id, index + 1, len(batches), len(batch)
            )
            for position, segment_id in enumerate(batch):
                if position > 0:
                    await self._sleep(self._settings.intra_batch_delay)
                try:
                    result = await self._process_segment(
                        client, segment_id, settings, custom_inputs, metric_ids
                    )
                except SegmentThrottled as throttled:
                    state.throttle_texts.append(throttled.detail)
                    self._jobs.record_result(
                        job.id,
                        PerSegmentResult(
                            segment_id=segment_id,
                            status=SegmentOutcome.error.value,
                            error=throttled.detail,
                        ),
                        rate_limited=True,
                    )
                    await self._emitter.emit_segment_throttled(job.id, segment_id, throttled.detail)
                    break

                state.record(result)
                self._jobs.record_result(job.id, result)
                await self._emitter.emit_segment_result(job.id, result)

            updated = self._persist_batch(job.id, state)
            if updated is None:
                return
            if state.rate_limited:
                break
            if index < len(batches) - 1:
                await self._sleep(self._settings.inter_batch_delay)

        await self._finish_pass(job.id, state)

    async def _process_segment(
        self,
        client: PlatformClient,
        segment_id: str,
        settings: dict,
        custom_inputs: dict[str, str],
        metric_ids: dict[str, str],
    ) -> PerSegmentResult:
        definition = self._catalog.get(segment_id)
        if definition is None or definition.unavailable:
            error = SegmentEngineError.from_code("E-1002", segment_id=segment_id)
            return PerSegmentResult(segment_id, SegmentOutcome.error.value, error=error.message)

        try:
            payload = build_segment_payload(
                definition, settings, custom_inputs, metric_ids, self._settings.name_suffix
            )
        except ValidationError as e:
            return PerSegmentResult(segment_id, SegmentOutcome.error.value, error=str(e))

        if payload is None:
            error = SegmentEngineError.from_code(
                "E-1003",
                segment_id=segment_id,
                metrics=", ".join(missing_metrics(definition, metric_ids)),
            )
            logger.info("Skipping %s: %s", segment_id, error.message)
            return PerSegmentResult(
                segment_id, SegmentOutcome.skipped.value, error=error.message
            )

        response = await self._create_with_retry(client, segment_id, payload.name, payload.definition)
        detail = response.detail or ""

        if response.ok:
            logger.info("Created segment %s (%s)", segment_id, response.external_id)
            return PerSegmentResult(
                segment_id,
                SegmentOutcome.created.value,
                external_id=response.external_id,
                name=payload.name,
            )
        if response.status_code == 409 or "already exists" in detail.lower():
            return PerSegmentResult(segment_id, SegmentOutcome.exists.value, name=payload.name)

        code, message, _ = translate_platform_error(
            response.status_code, detail, {"segment_id": segment_id}
        )
        logger.warning("Segment %s failed [%s]: %s", segment_id, code, detail)
        return PerSegmentResult(
            segment_id, SegmentOutcome.error.value, name=payload.name, error=message
        )

    async def _create_with_retry(
        self, client: PlatformClient, segment_id: str, name: str, definition: dict
    ) -> SegmentCreateResponse:
        """Create a segment, absorbing short steady throttles in-call.

        Raises:
            SegmentThrottled: Still throttled after the allowed attempts, or
                the throttle is the daily quota.
        """
        attempts = max(1, self._settings.max_call_attempts)
        for attempt in range(1, attempts + 1):
            response = await client.create_segment(name, definition)
            if response.ok or not is_rate_limit_error(response.detail, response.status_code):
                return response

            detail = response.detail or f"HTTP {response.status_code}"
            if classify_rate_limit([detail]) == RateLimitType.daily or attempt == attempts:
                raise SegmentThrottled(segment_id, detail)

            wait = parse_wait_seconds(detail)
            if wait is not None and wait > self._settings.max_wait_hint:
                raise SegmentThrottled(segment_id, detail)
            delay = wait if wait is not None else self._settings.backoff_base * 2 ** (attempt - 1)
            logger.info(
                "Segment %s throttled (attempt %d/%d), waiting %.1fs",
                segment_id, attempt, attempts, delay,
            )
            await self._sleep(delay)

        raise SegmentThrottled(segment_id, "rate limited")

    # =========================================================================
    # Persistence
    # =========================================================================

    def _persist_batch(self, job_id: str, state: _PassState, **changes) -> SegmentJob | None:
        """Fold the batch's outcomes into the job's segment lists.

        Returns:
            The updated job, or None when the job was cancelled meanwhile.
        """
        for _ in range(MAX_PERSIST_ATTEMPTS):
            job = self._jobs.get_job(job_id)
            if job is None or job.status == JobStatus.cancelled.value:
                logger.info("Job %s cancelled during pass; lists left as they were", job_id)
                state.clear_batch()
                return None

            resolved = set(state.completed) | set(state.failed)
            completed = job.completed_segment_ids + [
                s for s in state.completed if s not in job.completed_segment_ids
            ]
            failed = job.failed_segment_ids + [
                s for s in state.failed if s not in job.failed_segment_ids
            ]
            pending = [s for s in job.pending_segment_ids if s not in resolved]
            try:
                updated = self._jobs.update_job(
                    job_id,
                    job.version,
                    pending_segment_ids=pending,
                    completed_segment_ids=completed,
                    failed_segment_ids=failed,
                    **changes,
                )
            except StaleJobError:
                logger.info("Job %s changed while persisting batch, reloading", job_id)
                continue
            state.clear_batch()
            return updated

        raise StaleJobError(job_id, -1, None)

    async def _finish_pass(self, job_id: str, state: _PassState) -> None:
        """Pause or finalize the job, reloading when another writer got in first."""
        for _ in range(MAX_PERSIST_ATTEMPTS):
            job = self._jobs.get_job(job_id)
            if job is None or job.status == JobStatus.cancelled.value:
                logger.info("Job %s cancelled before the pass finished", job_id)
                return

            pending = job.pending_segment_ids
            if pending and state.rate_limited:
                kind = classify_rate_limit(state.throttle_texts) or RateLimitType.steady
                update = schedule_retry(kind, self._clock(), self._settings.steady_retry_delay)
                try:
                    job = self._jobs.update_job(
                        job_id, job.version, retry_count=job.retry_count + 1, **update
                    )
                except StaleJobError:
                    logger.info("Job %s changed while pausing, reloading", job_id)
                    continue
                logger.info(
                    "Job %s paused (%s): %d pending, retry after %s",
                    job_id, kind.value, len(pending), job.retry_after,
                )
                await self._emitter.emit_pass_paused(job_id, kind.value, job.retry_after)
                return

            if pending:
                logger.error(
                    "Job %s ended a pass with %d pending segment(s) and no rate limit; "
                    "failing them",
                    job_id, len(pending),
                )
                state.failed.extend(pending)
                job = self._persist_batch(job_id, state)
                if job is None:
                    return

            status = terminal_status(job.total_segments, len(job.failed_segment_ids))
            message = "No requested segment could be created." if status == JobStatus.failed else None
            try:
                job = self._jobs.update_job(
                    job_id, job.version, status=status, last_error_message=message
                )
            except StaleJobError:
                logger.info("Job %s changed while finishing, reloading", job_id)
                continue
            logger.info(
                "Job %s %s: %d succeeded, %d failed",
                job_id, status.value, job.success_count, job.error_count,
            )
            await self._emitter.emit_pass_completed(
                job_id, status.value, job.success_count, job.error_count
            )
            return

        raise StaleJobError(job_id, -1, None)

    async def _fail_pass(self, job_id: str, state: _PassState, code: str, message: str) -> None:
        """Fail the job as a whole; pending segments move to failed."""
        logger.error("Pass failed for job %s [%s]: %s", job_id, code, message)
        for _ in range(MAX_PERSIST_ATTEMPTS):
            job = self._jobs.get_job(job_id)
            if job is None or job.is_terminal:
                return
            completed = job.completed_segment_ids + [
                s for s in state.completed if s not in job.completed_segment_ids
            ]
            failed = job.failed_segment_ids + [
                s for s in state.failed
                if s not in job.failed_segment_ids and s not in completed
            ]
            failed += [
                s for s in job.pending_segment_ids if s not in completed and s not in failed
            ]
            try:
                self._jobs.update_job(
                    job_id,
                    job.version,
                    status=JobStatus.failed,
                    pending_segment_ids=[],
                    completed_segment_ids=completed,
                    failed_segment_ids=failed,
                    retry_after=None,
                    last_error_message=f"{code}: {message}",
                )
            except StaleJobError:
                continue
            state.clear_batch()
            await self._emitter.emit_pass_failed(job_id, code, message)
            return
