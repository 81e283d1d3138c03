"""Progress broadcaster for job snapshots.

Push-based fan-out of ``JobSnapshot`` objects to per-job subscribers
(SSE connections) and to all-jobs subscribers (the notification
consumer). Publishing is safe from any thread: snapshots are handed to
each subscriber's event loop with ``call_soon_threadsafe``, which keeps
per-job delivery in publish order.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field

from src.orchestrator.batch.models import JobSnapshot

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Subscription:
    """A single subscriber's queue.

    Attributes:
        job_id: Job being watched, or None for all jobs.
        queue: Snapshots in publish order.
    """

    job_id: str | None
    queue: asyncio.Queue[JobSnapshot] = field(default_factory=asyncio.Queue)
    loop: asyncio.AbstractEventLoop | None = None

    async def get(self) -> JobSnapshot:
        return await self.queue.get()


class ProgressBroadcaster:
    """Fan-out of job snapshots to subscribers.

    Multiple subscribers per job are supported (several browser tabs
    watching the same job). Each subscriber gets its own queue.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_job: dict[str, list[Subscription]] = {}
        self._all: list[Subscription] = []

    def subscribe(self, job_id: str) -> Subscription:
        """Create a subscription for a single job.

        Must be called from the event loop that will consume the queue.

        Args:
            job_id: Job to watch.

        Returns:
            Subscription whose queue receives the job's snapshots.
        """
        sub = Subscription(job_id=job_id, loop=asyncio.get_running_loop())
        with self._lock:
            self._by_job.setdefault(job_id, []).append(sub)
        logger.debug("Created progress subscription for job %s", job_id)
        return sub

    def subscribe_all(self) -> Subscription:
        """Create a subscription receiving every job's snapshots."""
        sub = Subscription(job_id=None, loop=asyncio.get_running_loop())
        with self._lock:
            self._all.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Remove a subscription. No-op if already removed."""
        with self._lock:
            if sub.job_id is None:
                if sub in self._all:
                    self._all.remove(sub)
                return
            subs = self._by_job.get(sub.job_id, [])
            if sub in subs:
                subs.remove(sub)
                logger.debug("Removed progress subscription for job %s", sub.job_id)
            if not subs:
                self._by_job.pop(sub.job_id, None)

    def has_subscribers(self, job_id: str) -> bool:
        with self._lock:
            return bool(self._by_job.get(job_id))

    def publish(self, snapshot: JobSnapshot) -> None:
        """Deliver a snapshot to the job's subscribers and all-jobs subscribers.

        Args:
            snapshot: Committed job state.
        """
        with self._lock:
            targets = list(self._by_job.get(snapshot.job_id, ())) + list(self._all)

        for sub in targets:
            self._deliver(sub, snapshot)

    @staticmethod
    def _deliver(sub: Subscription, snapshot: JobSnapshot) -> None:
        loop = sub.loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            sub.queue.put_nowait(snapshot)
        else:
            try:
                loop.call_soon_threadsafe(sub.queue.put_nowait, snapshot)
            except RuntimeError:
                # Loop shut down between the check and the call
                logger.debug("Dropped snapshot for closed loop (job %s)", snapshot.job_id)
