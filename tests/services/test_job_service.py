"""Tests for the segment job store.

Tests cover:
- Job creation and the segment partition
- Compare-and-swap updates and state transitions
- Claiming, cancellation, resubmission and restart recovery
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from src.db.models import JobStatus
from src.errors.domain import ConflictError, NotFoundError
from src.services.job_service import (
    InvalidStateTransition,
    PartitionInvariantError,
    SegmentJobService,
    StaleJobError,
    check_partition,
    terminal_status,
)
from tests.helpers.fake_platform import FIXED_NOW, OTHER_TENANT_ID, TENANT_ID

IDS = ["seg-01", "seg-02", "seg-03"]


@pytest.fixture
def service(db_session):
    return SegmentJobService(db_session)


@pytest.fixture
def job(service, connection):
    return service.create_job(TENANT_ID, connection.id, IDS)


class TestCheckPartition:
    """Tests for the partition check helper."""

    def test_valid_partition(self):
        assert check_partition(IDS, ["seg-01"], ["seg-02"], ["seg-03"]) is None

    def test_overlap(self):
        reason = check_partition(IDS, ["seg-01", "seg-02"], ["seg-02"], ["seg-03"])
        assert "more than one list" in reason

    def test_missing_segment(self):
        reason = check_partition(IDS, ["seg-01"], ["seg-02"], [])
        assert "missing=['seg-03']" in reason

    def test_unexpected_segment(self):
        reason = check_partition(IDS, IDS, ["seg-99"], [])
        assert "unexpected=['seg-99']" in reason

    def test_duplicates(self):
        assert "duplicates" in check_partition(IDS, IDS + ["seg-01"], [], [])


class TestTerminalStatus:
    def test_completed_with_some_failures(self):
        assert terminal_status(total=3, failed=2) == JobStatus.completed

    def test_failed_when_everything_failed(self):
        assert terminal_status(total=3, failed=3) == JobStatus.failed


class TestCreateJob:
    """Tests for job creation."""

    def test_new_job_is_pending_with_all_ids_pending(self, job):
        assert job.status == JobStatus.pending.value
        assert job.segments_to_create == IDS
        assert job.pending_segment_ids == IDS
        assert job.completed_segment_ids == []
        assert job.failed_segment_ids == []
        assert job.total_segments == 3
        assert job.segments_processed == 0
        assert job.version == 1

    def test_duplicate_ids_collapsed(self, service, connection):
        created = service.create_job(TENANT_ID, connection.id, ["seg-01", "seg-01", "seg-02"])
        assert created.segments_to_create == ["seg-01", "seg-02"]

    def test_custom_inputs_stored(self, service, connection):
        created = service.create_job(
            TENANT_ID, connection.id, IDS, {"location-country": "Canada"}
        )
        assert created.custom_inputs == {"location-country": "Canada"}

    def test_publishes_snapshot(self, db_session, connection):
        broadcaster = MagicMock()
        created = SegmentJobService(db_session, broadcaster).create_job(
            TENANT_ID, connection.id, IDS
        )
        snapshot = broadcaster.publish.call_args.args[0]
        assert snapshot.job_id == created.id
        assert snapshot.version == created.version


class TestUpdateJob:
    """Tests for compare-and-swap updates."""

    def test_moves_segments_and_recomputes_counters(self, service, job):
        updated = service.update_job(
            job.id,
            job.version,
            status=JobStatus.in_progress,
            pending_segment_ids=["seg-03"],
            completed_segment_ids=["seg-01"],
            failed_segment_ids=["seg-02"],
        )
        assert updated.version == 2
        assert updated.success_count == 1
        assert updated.error_count == 1
        assert updated.segments_processed == 2
        assert updated.started_at is not None

    def test_stale_version_rejected(self, service, job):
        service.update_job(job.id, job.version, status=JobStatus.in_progress)
        with pytest.raises(StaleJobError):
            service.update_job(job.id, 1, status=JobStatus.cancelled)

    def test_invalid_transition_rejected(self, service, job):
        with pytest.raises(InvalidStateTransition) as exc_info:
            service.update_job(
                job.id, job.version, status=JobStatus.waiting_retry,
                retry_after=FIXED_NOW.isoformat(),
            )
        assert exc_info.value.current_state == JobStatus.pending

    def test_terminal_job_cannot_move(self, service, job):
        running = service.update_job(job.id, job.version, status=JobStatus.in_progress)
        done = service.update_job(
            running.id,
            running.version,
            status=JobStatus.completed,
            pending_segment_ids=[],
            completed_segment_ids=IDS,
        )
        assert done.completed_at is not None
        with pytest.raises(InvalidStateTransition):
            service.update_job(done.id, done.version, status=JobStatus.in_progress)

    def test_partition_violation_rejected_and_not_written(self, service, job):
        with pytest.raises(PartitionInvariantError):
            service.update_job(
                job.id,
                job.version,
                pending_segment_ids=["seg-01", "seg-02"],
                completed_segment_ids=["seg-02", "seg-03"],
            )
        reloaded = service.get_job(job.id)
        assert reloaded.pending_segment_ids == IDS
        assert reloaded.version == 1

    def test_completed_with_pending_rejected(self, service, job):
        running = service.update_job(job.id, job.version, status=JobStatus.in_progress)
        with pytest.raises(PartitionInvariantError):
            service.update_job(running.id, running.version, status=JobStatus.completed)

    def test_waiting_retry_requires_retry_after(self, service, job):
        running = service.update_job(job.id, job.version, status=JobStatus.in_progress)
        with pytest.raises(PartitionInvariantError):
            service.update_job(running.id, running.version, status=JobStatus.waiting_retry)

    def test_unknown_field_rejected(self, service, job):
        with pytest.raises(ValueError):
            service.update_job(job.id, job.version, tenant_id="someone-else")

    def test_error_message_redacted(self, service, job):
        updated = service.update_job(
            job.id, job.version, last_error_message="failed with api_key=pk_abcdefghijkl"
        )
        assert "pk_abcdefghijkl" not in updated.last_error_message

    def test_unknown_job(self, service):
        with pytest.raises(NotFoundError):
            service.update_job("missing", 1, status=JobStatus.in_progress)


class TestClaimJob:
    """Tests for the execution lease."""

    def test_claims_pending_job(self, service, job):
        claimed = service.claim_job(job.id)
        assert claimed.status == JobStatus.in_progress.value

    def test_second_claim_returns_none(self, service, job):
        service.claim_job(job.id)
        assert service.claim_job(job.id) is None

    def test_claim_clears_retry_fields(self, service, job):
        running = service.claim_job(job.id)
        paused = service.update_job(
            running.id,
            running.version,
            status=JobStatus.waiting_retry,
            rate_limit_type="steady",
            retry_after=FIXED_NOW.isoformat(),
        )
        reclaimed = service.claim_job(paused.id)
        assert reclaimed.status == JobStatus.in_progress.value
        assert reclaimed.retry_after is None
        assert reclaimed.rate_limit_type is None


class TestRequestCancel:
    """Tests for owner cancellation."""

    def test_cancels_and_keeps_lists(self, service, job):
        cancelled = service.request_cancel(job.id, TENANT_ID)
        assert cancelled.status == JobStatus.cancelled.value
        assert cancelled.pending_segment_ids == IDS
        assert cancelled.last_error_message == "Cancelled by user"

    def test_other_tenant_gets_not_found(self, service, job):
        with pytest.raises(NotFoundError):
            service.request_cancel(job.id, OTHER_TENANT_ID)

    def test_terminal_job_conflict(self, service, job):
        service.request_cancel(job.id, TENANT_ID)
        with pytest.raises(ConflictError):
            service.request_cancel(job.id, TENANT_ID)


class TestMergeResubmission:
    """Tests for adding segments to an unfinished job."""

    def test_adds_only_new_ids(self, service, job):
        merged = service.merge_resubmission(job.id, ["seg-02", "seg-04", "seg-04"])
        assert merged.segments_to_create == IDS + ["seg-04"]
        assert merged.pending_segment_ids == IDS + ["seg-04"]
        assert merged.total_segments == 4

    def test_nothing_new_leaves_job_unchanged(self, service, job):
        merged = service.merge_resubmission(job.id, ["seg-01"])
        assert merged.version == job.version

    def test_running_job_conflict(self, service, job):
        service.claim_job(job.id)
        with pytest.raises(ConflictError):
            service.merge_resubmission(job.id, ["seg-04"])


class TestDueJobsAndRecovery:
    """Tests for the sweep query and restart recovery."""

    def _pause(self, service, job, retry_after):
        running = service.claim_job(job.id)
        return service.update_job(
            running.id,
            running.version,
            status=JobStatus.waiting_retry,
            rate_limit_type="steady",
            retry_after=retry_after.isoformat(),
        )

    def test_find_due_jobs(self, service, connection):
        due = service.create_job(TENANT_ID, connection.id, IDS)
        later = service.create_job(TENANT_ID, connection.id, IDS)
        self._pause(service, due, FIXED_NOW - timedelta(minutes=1))
        self._pause(service, later, FIXED_NOW + timedelta(minutes=1))

        assert [j.id for j in service.find_due_jobs(FIXED_NOW)] == [due.id]

    def test_recover_interrupted_pauses_jobs_with_pending(self, service, job):
        service.claim_job(job.id)
        recovered = service.recover_interrupted()

        assert [j.id for j in recovered] == [job.id]
        assert recovered[0].status == JobStatus.waiting_retry.value
        assert recovered[0].retry_after is not None

    def test_recover_interrupted_finalizes_resolved_jobs(self, service, job):
        running = service.claim_job(job.id)
        service.update_job(
            running.id,
            running.version,
            pending_segment_ids=[],
            completed_segment_ids=["seg-01"],
            failed_segment_ids=["seg-02", "seg-03"],
        )
        recovered = service.recover_interrupted()
        assert recovered[0].status == JobStatus.completed.value

    def test_recover_ignores_other_states(self, service, job):
        assert service.recover_interrupted() == []
