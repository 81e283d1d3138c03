"""Batch pass support for the segment engine.

Provides job snapshots and their push-based broadcaster, plus
event-driven observers for per-segment outcomes.
"""

from src.orchestrator.batch.broadcaster import ProgressBroadcaster, Subscription
from src.orchestrator.batch.events import BatchEventEmitter, BatchEventObserver
from src.orchestrator.batch.models import JobSnapshot, PerSegmentResult, SubmissionResult

__all__ = [
    "ProgressBroadcaster",
    "Subscription",
    "BatchEventObserver",
    "BatchEventEmitter",
    "JobSnapshot",
    "PerSegmentResult",
    "SubmissionResult",
]
