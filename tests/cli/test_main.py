"""Tests for the segment engine CLI commands and output formatters.

Commands run against the process database configured by DATABASE_URL
(in-memory for the test session); each test uses its own tenant.
"""

import json
import uuid

import pytest
from typer.testing import CliRunner

from src.cli.main import app
from src.cli.output import format_catalog, format_job_detail, format_job_table
from src.db.connection import get_db_context, init_db
from src.db.models import PlatformConnection
from src.orchestrator.batch.models import JobSnapshot, PerSegmentResult
from src.services.audit_service import AuditService
from src.services.job_history import compute_stats
from src.services.job_service import SegmentJobService
from tests.helpers.fake_platform import TEST_CATALOG

runner = CliRunner()


@pytest.fixture
def tenant() -> str:
    return f"cli-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def seeded_job(tenant) -> str:
    """Create a pending job for ``tenant`` in the process database."""
    init_db()
    with get_db_context() as db:
        conn = PlatformConnection(tenant_id=tenant, display_name="CLI Store", api_key="pk_cli")
        db.add(conn)
        db.commit()
        job = SegmentJobService(db).create_job(tenant, conn.id, ["seg-01", "seg-02"])
        return job.id


class TestCommands:
    """Tests for CLI commands via CliRunner."""

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "serve" in result.output

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "segment-engine" in result.output

    def test_jobs_list_empty(self, tenant):
        result = runner.invoke(app, ["jobs", "list", "--tenant", tenant])
        assert result.exit_code == 0
        assert "No jobs found." in result.output

    def test_jobs_list(self, tenant, seeded_job):
        result = runner.invoke(app, ["jobs", "list", "--tenant", tenant])
        assert result.exit_code == 0
        assert "1 job(s), 1 active" in result.output

    def test_jobs_show(self, tenant, seeded_job):
        result = runner.invoke(app, ["jobs", "show", seeded_job, "--tenant", tenant])
        assert result.exit_code == 0
        assert "pending" in result.output

    def test_jobs_show_other_tenant(self, seeded_job):
        result = runner.invoke(app, ["jobs", "show", seeded_job, "--tenant", "someone-else"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_jobs_cancel(self, tenant, seeded_job):
        result = runner.invoke(app, ["jobs", "cancel", seeded_job, "--tenant", tenant])
        assert result.exit_code == 0
        assert "cancelled" in result.output

        again = runner.invoke(app, ["jobs", "cancel", seeded_job, "--tenant", tenant])
        assert again.exit_code == 1

    def test_jobs_logs(self, tenant, seeded_job):
        with get_db_context() as db:
            AuditService(db).log_state_change(seeded_job, "pending", "in_progress")

        result = runner.invoke(app, ["jobs", "logs", seeded_job, "--tenant", tenant])

        assert result.exit_code == 0
        assert "pending -> in_progress" in result.output

    def test_jobs_logs_empty(self, tenant, seeded_job):
        result = runner.invoke(app, ["jobs", "logs", seeded_job, "--tenant", tenant])
        assert result.exit_code == 0
        assert "No audit entries." in result.output

    def test_jobs_logs_other_tenant(self, seeded_job):
        result = runner.invoke(app, ["jobs", "logs", seeded_job, "--tenant", "someone-else"])
        assert result.exit_code == 1

    def test_catalog(self):
        result = runner.invoke(app, ["catalog", "--category", "Demographics"])
        assert result.exit_code == 0
        assert "Bundles" in result.output

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "sweep"])
        assert result.exit_code != 0


def _snapshot(**overrides) -> JobSnapshot:
    fields = dict(
        job_id="0123456789abcdef",
        tenant_id="tenant-1",
        connection_id="conn-1",
        status="waiting_retry",
        version=3,
        total_segments=3,
        segments_processed=1,
        success_count=1,
        error_count=0,
        pending_segment_ids=("seg-02", "seg-03"),
        completed_segment_ids=("seg-01",),
        failed_segment_ids=(),
        rate_limit_type="steady",
        retry_after="2026-03-01T12:02:00+00:00",
        last_error_message="Per-minute limit reached. Automatic retry in 2 minutes.",
        created_at="2026-03-01T12:00:00+00:00",
        updated_at="2026-03-01T12:00:30+00:00",
        completed_at=None,
    )
    fields.update(overrides)
    return JobSnapshot(**fields)


class TestOutputFormatters:
    """Tests for table and JSON output."""

    def test_job_table_json(self):
        data = json.loads(format_job_table([_snapshot()], as_json=True))
        assert data["jobs"][0]["status"] == "waiting_retry"
        assert data["jobs"][0]["percent"] == 33
        assert data["stats"] is None

    def test_job_table_text(self):
        output = format_job_table([_snapshot()], compute_stats([]))
        assert "Segment Jobs" in output
        assert output.endswith("0 job(s), 0 active, 0 segment(s) created, 0% success rate\n")

    def test_empty_table(self):
        assert format_job_table([], compute_stats([])) == "No jobs found."

    def test_job_detail_json_with_results(self, db_session, connection):
        jobs = SegmentJobService(db_session)
        job = jobs.create_job(connection.tenant_id, connection.id, ["seg-01"])
        jobs.record_result(job.id, PerSegmentResult("seg-01", "error", error="throttled"), True)

        data = json.loads(
            format_job_detail(jobs.snapshot(job), jobs.get_results(job.id), as_json=True)
        )

        assert data["job_id"] == job.id
        assert data["results"][0]["rate_limited"] is True

    def test_job_detail_text(self):
        output = format_job_detail(_snapshot())
        assert "steady" in output
        assert "1/3" in output

    def test_catalog_json(self):
        data = json.loads(format_catalog(TEST_CATALOG, as_json=True))
        ids = [s["id"] for s in data["segments"]]
        assert "seg-01" in ids
        assert {"id": "first-four", "name": "First Four",
                "segment_ids": ["seg-01", "seg-02", "seg-03", "seg-04"]} in data["bundles"]
