"""Tests for the segment batch engine.

Tests cover:
- Batched creation with pacing between calls and batches
- Steady and daily throttles pausing the job with pending segments
- Resumption, cancellation between batches and whole-pass failures
- Per-segment outcomes (created, exists, skipped, error)
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.db.models import JobStatus, SegmentOutcome
from src.orchestrator.batch.events import BatchEventEmitter
from src.services.batch_engine import EngineSettings, SegmentBatchEngine
from src.services.job_service import SegmentJobService, check_partition
from src.services.platform_client import (
    PlatformAuthError,
    PlatformConnectionError,
    SegmentCreateResponse,
)
from tests.helpers.fake_platform import (
    DAILY_THROTTLE,
    FIXED_NOW,
    STEADY_THROTTLE,
    TEN_SEGMENTS,
    TENANT_ID,
    TEST_CATALOG,
    no_sleep,
)

SETTINGS = EngineSettings(batch_size=4, intra_batch_delay=0.5, inter_batch_delay=3.0)


@pytest.fixture
def jobs(db_session):
    return SegmentJobService(db_session)


@pytest.fixture
def broadcaster():
    return MagicMock()


@pytest.fixture
def make_engine(db_session, platform, clock, broadcaster):
    """Build an engine against the fake platform."""

    def _make(sleep=no_sleep, emitter=None, settings=SETTINGS):
        return SegmentBatchEngine(
            db_session=db_session,
            client_factory=platform.factory,
            broadcaster=broadcaster,
            settings=settings,
            catalog=TEST_CATALOG,
            emitter=emitter,
            sleep=sleep,
            clock=clock,
        )

    return _make


class TestSuccessfulPass:
    """Tests for a pass that creates every segment."""

    async def test_creates_all_segments(self, jobs, connection, platform, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, TEN_SEGMENTS)

        results = await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.completed.value
        assert job.completed_segment_ids == TEN_SEGMENTS
        assert job.pending_segment_ids == []
        assert job.success_count == 10
        assert job.completed_at is not None
        assert [r.status for r in results] == [SegmentOutcome.created.value] * 10
        assert platform.created[0] == "Segment 01"

    async def test_paces_calls_and_batches(self, jobs, connection, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, TEN_SEGMENTS)
        sleeps: list[float] = []

        async def recording_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        await make_engine(sleep=recording_sleep).run_pass(job.id)

        # batches of 4, 4, 2: three intra-batch gaps, three, one; two inter-batch gaps
        assert sleeps.count(0.5) == 7
        assert sleeps.count(3.0) == 2

    async def test_records_results(self, jobs, connection, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02"])

        await make_engine().run_pass(job.id)

        rows = jobs.get_results(job.id)
        assert [r.segment_id for r in rows] == ["seg-01", "seg-02"]
        assert rows[0].external_id == "ext-1"
        assert rows[0].segment_name == "Segment 01"

    async def test_unclaimable_job_is_noop(self, jobs, connection, platform, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, TEN_SEGMENTS)
        jobs.request_cancel(job.id, TENANT_ID)

        assert await make_engine().run_pass(job.id) == []
        platform.list_metrics.assert_not_awaited()


def _no_change(platform) -> None:
    return None


def _throttle_ninth(platform) -> None:
    platform.throttle["Segment 09"] = STEADY_THROTTLE


def _lose_connection_after_five(platform) -> None:
    calls = {"n": 0}
    create = platform.create_segment.side_effect

    async def flaky_create(name, definition):
        calls["n"] += 1
        if calls["n"] > 5:
            raise PlatformConnectionError("connection reset")
        return await create(name, definition)

    platform.create_segment.side_effect = flaky_create


class TestObservedStates:
    """Every snapshot a subscriber sees partitions the requested segments."""

    @pytest.mark.parametrize(
        "setup, final_status",
        [
            (_no_change, "completed"),
            (_throttle_ninth, "waiting_retry"),
            (_lose_connection_after_five, "failed"),
        ],
        ids=["completed", "rate_limited", "failed"],
    )
    async def test_published_snapshots_keep_partition(
        self, jobs, connection, platform, make_engine, broadcaster, setup, final_status
    ):
        job = jobs.create_job(TENANT_ID, connection.id, TEN_SEGMENTS)
        setup(platform)

        await make_engine().run_pass(job.id)

        snapshots = [c.args[0] for c in broadcaster.publish.call_args_list]
        assert snapshots
        for snapshot in snapshots:
            assert check_partition(
                TEN_SEGMENTS,
                list(snapshot.pending_segment_ids),
                list(snapshot.completed_segment_ids),
                list(snapshot.failed_segment_ids),
            ) is None
            assert snapshot.total_segments == 10
            assert snapshot.segments_processed == snapshot.success_count + snapshot.error_count
        versions = [s.version for s in snapshots]
        assert versions == sorted(set(versions))
        assert snapshots[-1].status == final_status


class TestRateLimitedPass:
    """Tests for throttles that end a pass."""

    async def test_steady_throttle_pauses_then_resume_completes(
        self, jobs, connection, platform, clock, make_engine
    ):
        job = jobs.create_job(TENANT_ID, connection.id, TEN_SEGMENTS)
        platform.throttle["Segment 09"] = STEADY_THROTTLE

        first = await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.waiting_retry.value
        assert job.completed_segment_ids == TEN_SEGMENTS[:8]
        assert job.pending_segment_ids == ["seg-09", "seg-10"]
        assert job.failed_segment_ids == []
        assert job.rate_limit_type == "steady"
        assert job.retry_after == (FIXED_NOW + timedelta(minutes=2)).isoformat()
        assert job.retry_count == 1
        assert "Per-minute limit" in job.last_error_message
        assert len(first) == 8
        # seg-10 is never attempted once seg-09 is throttled
        assert platform.create_segment.await_count == 9

        platform.throttle.clear()
        clock.now = FIXED_NOW + timedelta(minutes=3)
        second = await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.completed.value
        assert job.completed_segment_ids == TEN_SEGMENTS
        assert job.success_count == 10
        assert job.retry_after is None
        assert job.rate_limit_type is None
        assert [r.segment_id for r in second] == ["seg-09", "seg-10"]

    async def test_last_two_throttled_leaves_both_pending(
        self, jobs, connection, platform, make_engine
    ):
        job = jobs.create_job(TENANT_ID, connection.id, TEN_SEGMENTS)
        platform.throttle["Segment 09"] = STEADY_THROTTLE
        platform.throttle["Segment 10"] = STEADY_THROTTLE

        await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.waiting_retry.value
        assert job.success_count == 8
        assert job.error_count == 0
        assert job.pending_segment_ids == ["seg-09", "seg-10"]
        assert job.rate_limit_type == "steady"
        assert job.retry_after == (FIXED_NOW + timedelta(minutes=2)).isoformat()
        # The pass ends at the first throttle; seg-10 is not called against the spent window
        assert platform.create_segment.await_count == 9
        assert [r.segment_id for r in jobs.get_results(job.id) if r.rate_limited] == ["seg-09"]

    async def test_throttled_attempt_recorded(self, jobs, connection, platform, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01"])
        platform.throttle["Segment 01"] = STEADY_THROTTLE

        await make_engine().run_pass(job.id)

        rows = jobs.get_results(job.id)
        assert len(rows) == 1
        assert rows[0].rate_limited is True
        assert rows[0].status == SegmentOutcome.error.value

    async def test_daily_throttle_waits_until_midnight(
        self, jobs, connection, platform, make_engine
    ):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02", "seg-03"])
        platform.throttle["Segment 02"] = DAILY_THROTTLE

        await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.waiting_retry.value
        assert job.rate_limit_type == "daily"
        assert job.retry_after == "2026-03-02T00:00:00+00:00"
        assert job.pending_segment_ids == ["seg-02", "seg-03"]
        # Daily throttles are not retried in-call
        assert platform.create_segment.await_count == 2

    async def test_short_wait_hint_retried_in_call(self, jobs, connection, platform, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01"])
        platform.create_segment.side_effect = [
            SegmentCreateResponse(429, detail="Request was throttled. Expected available in 1 second."),
            SegmentCreateResponse(201, external_id="ext-late"),
        ]
        sleeps: list[float] = []

        async def recording_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        results = await make_engine(sleep=recording_sleep).run_pass(job.id)

        assert results[0].external_id == "ext-late"
        assert sleeps == [1]
        assert jobs.get_job(job.id).status == JobStatus.completed.value

    async def test_exponential_backoff_without_hint(self, jobs, connection, platform, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01"])
        platform.create_segment.side_effect = [
            SegmentCreateResponse(429, detail="Too many requests"),
            SegmentCreateResponse(429, detail="Too many requests"),
            SegmentCreateResponse(201, external_id="ext-1"),
        ]
        sleeps: list[float] = []

        async def recording_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        await make_engine(sleep=recording_sleep).run_pass(job.id)

        assert sleeps == [2.0, 4.0]
        assert jobs.get_job(job.id).status == JobStatus.completed.value


class TestSegmentOutcomes:
    """Tests for per-segment outcome handling."""

    async def test_existing_segment_counts_as_completed(
        self, jobs, connection, platform, make_engine
    ):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02"])
        platform.existing.add("Segment 01")

        results = await make_engine().run_pass(job.id)

        assert results[0].status == SegmentOutcome.exists.value
        job = jobs.get_job(job.id)
        assert job.completed_segment_ids == ["seg-01", "seg-02"]
        assert job.status == JobStatus.completed.value

    async def test_missing_metric_skips_segment(self, jobs, connection, platform, make_engine):
        platform.metrics = {}
        job = jobs.create_job(TENANT_ID, connection.id, ["buyers", "seg-01"])

        results = await make_engine().run_pass(job.id)

        assert results[0].status == SegmentOutcome.skipped.value
        assert "placed-order" in results[0].error
        job = jobs.get_job(job.id)
        assert job.failed_segment_ids == ["buyers"]
        assert job.completed_segment_ids == ["seg-01"]
        assert job.status == JobStatus.completed.value

    async def test_unknown_segment_fails(self, jobs, connection, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "ghost"])

        results = await make_engine().run_pass(job.id)

        assert results[1].status == SegmentOutcome.error.value
        assert jobs.get_job(job.id).failed_segment_ids == ["ghost"]

    async def test_all_rejected_fails_job(self, jobs, connection, platform, make_engine):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02"])
        platform.reject = {
            "Segment 01": "Invalid filter operator",
            "Segment 02": "Invalid filter operator",
        }

        results = await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.failed.value
        assert job.failed_segment_ids == ["seg-01", "seg-02"]
        assert job.last_error_message == "No requested segment could be created."
        assert "rejected" in results[0].error


class TestPassFailures:
    """Tests for errors that end the whole pass."""

    async def test_auth_failure_fails_job(self, jobs, connection, platform, make_engine):
        platform.list_metrics.side_effect = PlatformAuthError(401, "Invalid API key")
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02"])

        await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.failed.value
        assert job.pending_segment_ids == []
        assert job.failed_segment_ids == ["seg-01", "seg-02"]
        assert job.last_error_message.startswith("E-5001")
        platform.create_segment.assert_not_awaited()

    async def test_connection_loss_keeps_unpersisted_successes(
        self, jobs, connection, platform, make_engine
    ):
        job = jobs.create_job(TENANT_ID, connection.id, TEN_SEGMENTS)
        responses = iter([
            SegmentCreateResponse(201, external_id="ext-1"),
            SegmentCreateResponse(201, external_id="ext-2"),
        ])

        async def flaky_create(name, definition):
            try:
                return next(responses)
            except StopIteration:
                raise PlatformConnectionError("connection reset") from None

        platform.create_segment.side_effect = flaky_create

        await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.failed.value
        assert job.completed_segment_ids == ["seg-01", "seg-02"]
        assert job.failed_segment_ids == TEN_SEGMENTS[2:]
        assert job.last_error_message.startswith("E-3001")

    async def test_unexpected_error_fails_job_and_propagates(
        self, jobs, connection, platform, make_engine
    ):
        platform.create_segment.side_effect = RuntimeError("boom")
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01"])

        with pytest.raises(RuntimeError):
            await make_engine().run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.failed.value
        assert job.last_error_message.startswith("E-4004")


class TestCancellation:
    """Tests for cancellation observed between batches."""

    async def test_cancel_stops_at_next_batch(
        self, db_session, jobs, connection, platform, make_engine
    ):
        job = jobs.create_job(TENANT_ID, connection.id, TEN_SEGMENTS)

        async def cancelling_sleep(seconds: float) -> None:
            if seconds == SETTINGS.inter_batch_delay:
                current = jobs.get_job(job.id)
                if not current.is_terminal:
                    SegmentJobService(db_session).request_cancel(job.id, TENANT_ID)

        await make_engine(sleep=cancelling_sleep).run_pass(job.id)

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.cancelled.value
        assert job.completed_segment_ids == TEN_SEGMENTS[:4]
        assert job.pending_segment_ids == TEN_SEGMENTS[4:]
        assert platform.create_segment.await_count == 4

    async def _run_with_cancel_before(self, engine, jobs, job_id, should_race):
        """Run a pass, cancelling the job just before the first update ``should_race`` picks."""
        update_job = engine._jobs.update_job
        raced: list[bool] = []

        def cancel_then_update(target_id, expected_version, **changes):
            if not raced and should_race(changes):
                raced.append(True)
                jobs.request_cancel(target_id, TENANT_ID)
            return update_job(target_id, expected_version, **changes)

        engine._jobs.update_job = cancel_then_update
        results = await engine.run_pass(job_id)
        assert raced
        return results

    async def test_cancel_landing_before_pause_is_kept(
        self, jobs, connection, platform, make_engine
    ):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02"])
        platform.throttle["Segment 02"] = STEADY_THROTTLE

        await self._run_with_cancel_before(
            make_engine(), jobs, job.id, lambda changes: "retry_count" in changes
        )

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.cancelled.value
        assert job.completed_segment_ids == ["seg-01"]
        assert job.pending_segment_ids == ["seg-02"]
        assert job.retry_after is None
        assert job.last_error_message == "Cancelled by user"

    async def test_cancel_landing_before_completion_is_kept(
        self, jobs, connection, make_engine
    ):
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02"])

        await self._run_with_cancel_before(
            make_engine(),
            jobs,
            job.id,
            lambda changes: changes.get("status") == JobStatus.completed,
        )

        job = jobs.get_job(job.id)
        assert job.status == JobStatus.cancelled.value
        assert job.completed_segment_ids == ["seg-01", "seg-02"]
        assert job.pending_segment_ids == []


class TestEvents:
    """Tests for observer notifications."""

    async def test_emits_lifecycle_events(self, jobs, connection, platform, make_engine):
        observer = AsyncMock()
        emitter = BatchEventEmitter()
        emitter.add_observer(observer)
        job = jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02"])
        platform.throttle["Segment 02"] = STEADY_THROTTLE

        await make_engine(emitter=emitter).run_pass(job.id)

        observer.on_pass_started.assert_awaited_once_with(job.id, 2)
        observer.on_segment_result.assert_awaited_once()
        observer.on_segment_throttled.assert_awaited_once_with(job.id, "seg-02", STEADY_THROTTLE)
        observer.on_pass_paused.assert_awaited_once()
        observer.on_pass_completed.assert_not_awaited()
