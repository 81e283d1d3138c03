"""Job notifications raised from progress snapshots.

The notification consumer subscribes to every job's snapshots and raises
user-facing notifications on pauses, completion and progress milestones.
Snapshot delivery is at-least-once (a job can publish the same status
many times), so each logical notification is claimed in the
``job_notifications`` ledger before it is sent.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.db.connection import SessionLocal
from src.db.models import JobNotification, JobStatus, RateLimitType
from src.orchestrator.batch.broadcaster import ProgressBroadcaster
from src.orchestrator.batch.models import JobSnapshot

logger = logging.getLogger(__name__)

# Segments between two progress notifications
DEFAULT_MILESTONE_EVERY = 10


class NotificationHook(Protocol):
    """Delivery channel for job notifications."""

    async def notify_paused(self, job: JobSnapshot, message: str) -> None:
        ...

    async def notify_completed(self, job: JobSnapshot, message: str) -> None:
        ...

    async def notify_progress(self, job: JobSnapshot, message: str) -> None:
        ...


def pause_notice(job: JobSnapshot) -> str:
    """Describe a paused job for its owner."""
    done = f"{job.success_count} of {job.total_segments} segments created"
    remaining = len(job.pending_segment_ids)
    if job.rate_limit_type == RateLimitType.daily.value:
        return (
            f"Daily segment limit reached ({done}). The remaining {remaining} "
            f"will be created automatically after midnight UTC."
        )
    return (
        f"The platform asked us to slow down ({done}). The remaining {remaining} "
        f"will be created automatically in a few minutes."
    )


def completion_notice(job: JobSnapshot) -> str:
    message = f"Segment creation finished: {job.success_count} of {job.total_segments} created"
    if job.error_count:
        message += f", {job.error_count} could not be created"
    return message + "."


class LoggingNotificationHook:
    """Writes notifications to the application log."""

    async def notify_paused(self, job: JobSnapshot, message: str) -> None:
        logger.info("[notify] job %s paused: %s", job.job_id, message)

    async def notify_completed(self, job: JobSnapshot, message: str) -> None:
        logger.info("[notify] job %s completed: %s", job.job_id, message)

    async def notify_progress(self, job: JobSnapshot, message: str) -> None:
        logger.info("[notify] job %s progress: %s", job.job_id, message)


class WebhookNotificationHook:
    """POSTs notifications as JSON to a webhook URL.

    Attributes:
        url: Webhook endpoint.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._transport = transport

    async def _post(self, event: str, job: JobSnapshot, message: str) -> None:
        body = {
            "event": event,
            "message": message,
            "job": job.to_dict(),
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()

    async def notify_paused(self, job: JobSnapshot, message: str) -> None:
        await self._post("job.paused", job, message)

    async def notify_completed(self, job: JobSnapshot, message: str) -> None:
        await self._post("job.completed", job, message)

    async def notify_progress(self, job: JobSnapshot, message: str) -> None:
        await self._post("job.progress", job, message)


class NotificationService:
    """Turns job snapshots into deduplicated notifications.

    Attributes:
        hooks: Delivery channels, each called for every notification.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        hooks: list[NotificationHook] | None = None,
        milestone_every: int = DEFAULT_MILESTONE_EVERY,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_factory = session_factory
        self.hooks: list[NotificationHook] = hooks if hooks is not None else [LoggingNotificationHook()]
        self._milestone_every = milestone_every
        self._clock = clock

    def claim(self, job_id: str, key: str) -> bool:
        """Record that notification ``key`` was raised for a job.

        Returns:
            True the first time a key is claimed for the job, False after.
        """
        with self._session_factory() as db:
            db.add(JobNotification(job_id=job_id, notification_key=key))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def pending_notifications(self, job: JobSnapshot) -> list[tuple[str, str, str]]:
        """Return (key, hook method, message) for what the snapshot calls for."""
        if job.status == JobStatus.completed.value:
            return [("completed", "notify_completed", completion_notice(job))]

        found: list[tuple[str, str, str]] = []
        if job.status == JobStatus.waiting_retry.value:
            if job.rate_limit_type == RateLimitType.daily.value:
                key = f"paused_daily_{self._clock().astimezone(UTC).date().isoformat()}"
            else:
                key = "paused_steady"
            found.append((key, "notify_paused", pause_notice(job)))

        if job.status in (JobStatus.in_progress.value, JobStatus.waiting_retry.value):
            milestone = job.success_count - job.success_count % self._milestone_every
            if milestone > 0:
                found.append((
                    f"progress_{milestone}",
                    "notify_progress",
                    f"{milestone} of {job.total_segments} segments created.",
                ))
        return found

    async def handle(self, job: JobSnapshot) -> list[str]:
        """Raise every notification the snapshot calls for, once each.

        Returns:
            Keys of the notifications raised by this call.
        """
        raised: list[str] = []
        for key, method, message in self.pending_notifications(job):
            if not self.claim(job.job_id, key):
                continue
            raised.append(key)
            for hook in self.hooks:
                try:
                    await getattr(hook, method)(job, message)
                except Exception as e:
                    logger.error(
                        "Notification hook %s failed %s for job %s: %s",
                        type(hook).__name__, method, job.job_id, e,
                    )
        return raised

    async def run(self, broadcaster: ProgressBroadcaster) -> None:
        """Consume every job's snapshots until cancelled."""
        sub = broadcaster.subscribe_all()
        logger.info("Notification consumer started")
        try:
            while True:
                snapshot = await sub.get()
                try:
                    await self.handle(snapshot)
                except Exception:
                    logger.exception("Failed to process notifications for job %s", snapshot.job_id)
        except asyncio.CancelledError:
            logger.info("Notification consumer stopped")
            raise
        finally:
            broadcaster.unsubscribe(sub)
