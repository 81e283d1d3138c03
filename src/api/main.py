"""FastAPI application for the segment engine API.

Provides the main application instance with routers, exception handlers,
startup recovery, the notification consumer and the optional in-process
retry sweeper.
"""

import asyncio
import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("src").setLevel(logging.INFO)
from fastapi.responses import JSONResponse

from src.api.routes import catalog, progress, segment_jobs
from src.cli.config import SegmentsConfig, load_config
from src.db.connection import SessionLocal, init_db
from src.db.models import ACTIVE_STATUSES, SegmentJob
from src.errors import SegmentEngineError, get_error
from src.errors.domain import ConflictError, DomainError, NotFoundError, ValidationError
from src.services.job_service import InvalidStateTransition, PartitionInvariantError, StaleJobError
from src.services.job_runner import SegmentJobRunner
from src.services.notification_service import (
    LoggingNotificationHook,
    NotificationHook,
    NotificationService,
    WebhookNotificationHook,
)
from src.services.platform_client import make_client_factory

logger = logging.getLogger(__name__)

# Module-level state for health endpoint
_startup_time: float = 0.0


def build_runner(config: SegmentsConfig, session_factory=SessionLocal) -> SegmentJobRunner:
    """Build a job runner from configuration."""
    return SegmentJobRunner(
        session_factory=session_factory,
        client_factory=make_client_factory(
            base_url=config.platform.base_url,
            revision=config.platform.revision,
            timeout=config.platform.timeout_seconds,
        ),
        settings=config.engine_settings(),
    )


def build_notification_service(
    config: SegmentsConfig, session_factory=SessionLocal
) -> NotificationService:
    """Build the notification service with the configured hooks."""
    hooks: list[NotificationHook] = [LoggingNotificationHook()]
    if config.notifications.webhook_url:
        hooks.append(WebhookNotificationHook(config.notifications.webhook_url))
    return NotificationService(
        session_factory=session_factory,
        hooks=hooks,
        milestone_every=config.notifications.milestone_every,
    )


async def run_retry_sweeper(runner: SegmentJobRunner, interval: float, max_jobs: int) -> None:
    """Resume due jobs every ``interval`` seconds until cancelled."""
    logger.info("Retry sweeper started (every %ss, up to %d jobs)", interval, max_jobs)
    while True:
        await asyncio.sleep(interval)
        try:
            await runner.resume_due_jobs(limit=max_jobs)
        except Exception:
            logger.exception("Retry sweep failed")


def run_startup_recovery(runner: SegmentJobRunner) -> list[str]:
    """Release jobs stranded in_progress by a previous process."""
    recovered = runner.recover_interrupted_jobs()
    if recovered:
        logger.warning(
            "Startup recovery: %d interrupted job(s) will resume: %s",
            len(recovered), ", ".join(recovered),
        )
    return recovered


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: startup recovery, background consumers, shutdown cleanup."""
    global _startup_time
    _startup_time = _time.time()

    config: SegmentsConfig = getattr(app.state, "config", None) or load_config()
    app.state.config = config
    init_db()

    runner: SegmentJobRunner = getattr(app.state, "runner", None) or build_runner(config)
    app.state.runner = runner
    run_startup_recovery(runner)

    notifications = getattr(app.state, "notifications", None) or build_notification_service(config)
    app.state.notifications = notifications

    background: list[asyncio.Task] = [
        asyncio.create_task(notifications.run(runner.broadcaster), name="notifications"),
    ]
    if config.engine.sweep_interval_seconds > 0:
        background.append(
            asyncio.create_task(
                run_retry_sweeper(
                    runner,
                    config.engine.sweep_interval_seconds,
                    config.engine.sweep_max_jobs,
                ),
                name="retry-sweeper",
            )
        )

    yield

    # --- Shutdown ---
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    await runner.shutdown()


# Create FastAPI app with async lifespan for startup recovery + shutdown cleanup
app = FastAPI(
    title="Segment Engine API",
    description="Bulk creation of audience segments in a rate-limited marketing platform",
    version="0.1.0",
    lifespan=lifespan,
)


def _error_body(code: str, message: str, remediation: str | None = None, details=None) -> dict:
    return {
        "error_code": code,
        "message": message,
        "remediation": remediation,
        "details": details or None,
    }


@app.exception_handler(SegmentEngineError)
async def segment_engine_error_handler(
    request: Request, exc: SegmentEngineError
) -> JSONResponse:
    """Handle SegmentEngineError exceptions with consistent format."""
    return JSONResponse(
        status_code=503 if exc.is_retryable else 400,
        content=_error_body(exc.code, exc.message, exc.remediation, exc.details),
    )


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map domain exceptions to HTTP statuses (404, 409, 400)."""
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, ConflictError):
        status = 409
    elif isinstance(exc, ValidationError):
        status = 400
    else:
        status = 500
    error = get_error(exc.error_code)
    return JSONResponse(
        status_code=status,
        content=_error_body(exc.error_code, str(exc), error.remediation if error else None),
    )


@app.exception_handler(InvalidStateTransition)
async def invalid_transition_handler(
    request: Request, exc: InvalidStateTransition
) -> JSONResponse:
    return JSONResponse(status_code=409, content=_error_body("E-2002", str(exc)))


@app.exception_handler(StaleJobError)
async def stale_job_handler(request: Request, exc: StaleJobError) -> JSONResponse:
    return JSONResponse(status_code=409, content=_error_body(exc.error_code, str(exc)))


@app.exception_handler(PartitionInvariantError)
async def partition_error_handler(
    request: Request, exc: PartitionInvariantError
) -> JSONResponse:
    logger.error("Partition invariant violation for job %s: %s", exc.job_id, exc.reason)
    return JSONResponse(status_code=500, content=_error_body(exc.error_code, str(exc)))


# Include routers
app.include_router(segment_jobs.router, prefix="/api/v1")
app.include_router(progress.router, prefix="/api/v1")
app.include_router(catalog.router, prefix="/api/v1")


@app.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint with system status.

    Returns:
        Dictionary with health status and metrics.
    """
    uptime = int(_time.time() - _startup_time) if _startup_time else 0

    active_jobs = 0
    try:
        with SessionLocal() as db:
            active_jobs = (
                db.query(SegmentJob)
                .filter(SegmentJob.status.in_([s.value for s in ACTIVE_STATUSES]))
                .count()
            )
    except Exception as e:
        logger.warning("Health check could not count jobs: %s", e)

    try:
        version = _pkg_version("segment-engine")
    except PackageNotFoundError:
        version = "unknown"

    runner = getattr(request.app.state, "runner", None)
    return {
        "status": "healthy",
        "version": version,
        "uptime_seconds": uptime,
        "active_jobs": active_jobs,
        "running_passes": len(runner.running_job_ids) if runner else 0,
    }


@app.get("/api")
def api_root() -> dict:
    """API root with links to docs."""
    return {
        "name": "Segment Engine API",
        "version": "0.1.0",
        "docs": "/docs",
        "redoc": "/redoc",
    }
