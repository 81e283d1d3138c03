"""Segment job runner.

Entry point shared by the REST routes, the CLI and the retry sweep. The
runner resolves selections into jobs, owns execution passes as
server-side asyncio tasks (so they outlive the submitting request), and
resumes paused jobs once their retry time has passed.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from src.catalog.resolver import DEFAULT_CATALOG, SegmentCatalog, resolve_selection
from src.db.connection import SessionLocal
from src.db.models import JobStatus, PlatformConnection
from src.errors.domain import ConflictError, NotFoundError
from src.orchestrator.batch.audit_observer import AuditTrailObserver
from src.orchestrator.batch.broadcaster import ProgressBroadcaster
from src.orchestrator.batch.events import BatchEventEmitter
from src.orchestrator.batch.models import JobSnapshot, PerSegmentResult, SubmissionResult
from src.services.batch_engine import ClientFactory, EngineSettings, SegmentBatchEngine, Sleep
from src.services.job_service import SegmentJobService
from src.services.platform_client import make_client_factory
from src.services.rate_limits import is_retry_due

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SegmentJobRunner:
    """Creates jobs and runs their passes.

    Each pass opens its own session, so concurrent passes for different
    jobs never share ORM state.

    Attributes:
        broadcaster: Progress broadcaster shared with SSE routes.
        settings: Engine pacing settings.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        client_factory: ClientFactory | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        settings: EngineSettings | None = None,
        catalog: SegmentCatalog = DEFAULT_CATALOG,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._client_factory = client_factory or make_client_factory()
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.settings = settings or EngineSettings()
        self._catalog = catalog
        self._sleep = sleep
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(
        self,
        selection_ids: list[str],
        connection_id: str,
        custom_inputs: dict[str, str] | None = None,
        existing_job_id: str | None = None,
    ) -> tuple[JobSnapshot, bool]:
        """Record a selection as a new job or merge it into an existing one.

        Args:
            selection_ids: Segment and bundle IDs picked by the tenant.
            connection_id: Platform connection to create segments in.
            custom_inputs: Values for segments that take a custom input.
            existing_job_id: Job to resume instead of creating a new one.

        Returns:
            Tuple of (job snapshot, whether a pass should run now). No pass
            runs when the existing job is already in progress, or is paused
            and its retry time has not come yet.

        Raises:
            NothingToCreateError: Selection has no creatable segment.
            NotFoundError: Unknown connection or job.
            ConflictError: Existing job is already finished.
        """
        segment_ids = resolve_selection(selection_ids, self._catalog)

        with self._session_factory() as db:
            jobs = SegmentJobService(db, self.broadcaster)
            connection = db.get(PlatformConnection, connection_id)
            if connection is None:
                raise NotFoundError("Connection", connection_id)

            if existing_job_id is None:
                job = jobs.create_job(
                    connection.tenant_id, connection.id, segment_ids, custom_inputs
                )
                return jobs.snapshot(job), True

            job = jobs.get_owned_job(existing_job_id, connection.tenant_id)
            if job.connection_id != connection.id:
                raise NotFoundError("Job", existing_job_id)
            if job.status == JobStatus.in_progress.value:
                logger.info("Job %s already running; resubmission is a no-op", job.id)
                return jobs.snapshot(job), False
            if job.is_terminal:
                raise ConflictError(f"Job {job.id} is already {job.status}")

            job = jobs.merge_resubmission(job.id, segment_ids)
            if job.status == JobStatus.waiting_retry.value and not is_retry_due(
                job.retry_after, self._clock()
            ):
                logger.info("Job %s paused until %s; new segments wait for the retry",
                            job.id, job.retry_after)
                return jobs.snapshot(job), False
            return jobs.snapshot(job), True

    async def create_segments(
        self,
        selection_ids: list[str],
        connection_id: str,
        custom_inputs: dict[str, str] | None = None,
        existing_job_id: str | None = None,
    ) -> SubmissionResult:
        """Submit a selection and run its pass to the end.

        Returns:
            The job ID, per-segment outcomes of this pass, and the job's
            state afterwards.
        """
        snapshot, should_run = self.submit(
            selection_ids, connection_id, custom_inputs, existing_job_id
        )
        results: list[PerSegmentResult] = []
        if should_run:
            results = await self.run_pass(snapshot.job_id)
        return SubmissionResult(
            job_id=snapshot.job_id,
            results=results,
            snapshot=self.get_snapshot(snapshot.job_id),
        )

    # =========================================================================
    # Passes
    # =========================================================================

    async def run_pass(self, job_id: str) -> list[PerSegmentResult]:
        """Run one pass for a job in a dedicated session."""
        with self._session_factory() as db:
            emitter = BatchEventEmitter()
            emitter.add_observer(AuditTrailObserver(db))
            engine = SegmentBatchEngine(
                db_session=db,
                client_factory=self._client_factory,
                broadcaster=self.broadcaster,
                settings=self.settings,
                catalog=self._catalog,
                emitter=emitter,
                sleep=self._sleep,
                clock=self._clock,
            )
            return await engine.run_pass(job_id)

    def start_pass(self, job_id: str) -> asyncio.Task:
        """Schedule a pass as a background task owned by the runner.

        A job with a running task gets that task back instead of a second one.
        """
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self.run_pass(job_id), name=f"segment-pass-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_task_done(job_id, t))
        return task

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            logger.warning("Pass task for job %s was cancelled", job_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Pass task for job %s failed: %s", job_id, exc)

    @property
    def running_job_ids(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def shutdown(self) -> None:
        """Cancel running pass tasks.

        Interrupted jobs stay in_progress and are released by
        ``recover_interrupted_jobs`` on the next start.
        """
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Resumption
    # =========================================================================

    def is_resumable(self, job_id: str) -> bool:
        """Return True if the job is paused and its retry time has passed."""
        with self._session_factory() as db:
            job = SegmentJobService(db).get_job(job_id)
            if job is None:
                logger.warning("Resume requested for unknown job %s", job_id)
                return False
            if job.status != JobStatus.waiting_retry.value:
                logger.debug("Job %s is %s; nothing to resume", job_id, job.status)
                return False
            if not is_retry_due(job.retry_after, self._clock()):
                logger.debug("Job %s not due until %s", job_id, job.retry_after)
                return False
        return True

    async def resume(self, job_id: str) -> None:
        """Run a pass if the job is paused and its retry time has passed.

        Safe to call at any time: early, repeated or concurrent calls no-op.
        """
        if self.is_resumable(job_id):
            await self.run_pass(job_id)

    async def resume_due_jobs(self, limit: int = 5) -> list[str]:
        """Resume up to ``limit`` paused jobs whose retry time has passed.

        Returns:
            IDs of the jobs a pass was attempted for.
        """
        with self._session_factory() as db:
            due = [job.id for job in SegmentJobService(db).find_due_jobs(self._clock(), limit)]

        if due:
            logger.info("Resuming %d due job(s)", len(due))
        for job_id in due:
            await self.resume(job_id)
        return due

    def recover_interrupted_jobs(self) -> list[str]:
        """Release jobs left in_progress by a previous process."""
        with self._session_factory() as db:
            recovered = SegmentJobService(db, self.broadcaster).recover_interrupted()
            return [job.id for job in recovered]

    def get_snapshot(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as db:
            job = SegmentJobService(db).get_job(job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            return JobSnapshot.from_job(job)
