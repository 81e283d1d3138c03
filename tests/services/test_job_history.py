"""Tests for the owner-scoped job history."""

import pytest

from src.db.models import JobStatus
from src.errors.domain import ConflictError, NotFoundError
from src.orchestrator.batch.models import PerSegmentResult
from src.services.job_history import JobFilter, JobHistoryService, compute_stats
from src.services.job_service import SegmentJobService
from tests.helpers.fake_platform import OTHER_TENANT_ID, TENANT_ID


@pytest.fixture
def jobs(db_session):
    return SegmentJobService(db_session)


@pytest.fixture
def history(db_session):
    return JobHistoryService(db_session)


def _finish(jobs, job, completed, failed=()):
    running = jobs.claim_job(job.id)
    status = JobStatus.failed if not completed else JobStatus.completed
    return jobs.update_job(
        running.id,
        running.version,
        status=status,
        pending_segment_ids=[],
        completed_segment_ids=list(completed),
        failed_segment_ids=list(failed),
    )


@pytest.fixture
def mixed_jobs(jobs, connection):
    """One completed, one failed, one pending and one cancelled job."""
    done = _finish(jobs, jobs.create_job(TENANT_ID, connection.id, ["seg-01", "seg-02"]),
                   completed=["seg-01"], failed=["seg-02"])
    failed = _finish(jobs, jobs.create_job(TENANT_ID, connection.id, ["seg-03"]),
                     completed=[], failed=["seg-03"])
    pending = jobs.create_job(TENANT_ID, connection.id, ["seg-04"])
    cancelled = jobs.request_cancel(
        jobs.create_job(TENANT_ID, connection.id, ["seg-05"]).id, TENANT_ID
    )
    return {"done": done, "failed": failed, "pending": pending, "cancelled": cancelled}


class TestListJobs:
    """Tests for filtered listing."""

    def test_all(self, history, mixed_jobs):
        assert len(history.list_jobs(TENANT_ID)) == 4

    @pytest.mark.parametrize(
        "job_filter,expected",
        [
            (JobFilter.active, "pending"),
            (JobFilter.completed, "done"),
            (JobFilter.failed, "failed"),
            (JobFilter.cancelled, "cancelled"),
        ],
    )
    def test_status_filters(self, history, mixed_jobs, job_filter, expected):
        listed = history.list_jobs(TENANT_ID, job_filter=job_filter)
        assert [j.id for j in listed] == [mixed_jobs[expected].id]

    def test_other_tenant_sees_nothing(self, history, mixed_jobs):
        assert history.list_jobs(OTHER_TENANT_ID) == []

    def test_connection_filter(self, history, mixed_jobs):
        assert history.list_jobs(TENANT_ID, connection_id="other-connection") == []


class TestComputeStats:
    def test_stats_over_mixed_jobs(self, history, mixed_jobs):
        stats = history.compute_stats(history.list_jobs(TENANT_ID))

        assert stats.total_jobs == 4
        assert stats.total_segments_created == 1
        # 1 created out of 5 requested
        assert stats.success_rate == 20
        assert stats.active_jobs == 1

    def test_empty(self):
        stats = compute_stats([])
        assert stats.total_jobs == 0
        assert stats.success_rate == 0


class TestOwnership:
    """Tests for owner-scoped reads and cancellation."""

    def test_get_job_of_other_tenant(self, history, mixed_jobs):
        with pytest.raises(NotFoundError):
            history.get_job(mixed_jobs["pending"].id, OTHER_TENANT_ID)

    def test_cancel_pending_job(self, history, mixed_jobs):
        cancelled = history.cancel_job(mixed_jobs["pending"].id, TENANT_ID)
        assert cancelled.status == JobStatus.cancelled.value

    def test_cancel_finished_job_conflicts(self, history, mixed_jobs):
        with pytest.raises(ConflictError):
            history.cancel_job(mixed_jobs["done"].id, TENANT_ID)

    def test_segment_results(self, history, jobs, mixed_jobs):
        job_id = mixed_jobs["done"].id
        jobs.record_result(job_id, PerSegmentResult("seg-01", "created", external_id="ext-1"))

        rows = history.get_segment_results(job_id, TENANT_ID)
        assert [r.external_id for r in rows] == ["ext-1"]
        with pytest.raises(NotFoundError):
            history.get_segment_results(job_id, OTHER_TENANT_ID)
