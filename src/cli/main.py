"""Segment engine CLI.

Entry point for running the API server, the retry sweep (for cron), and
inspecting or cancelling jobs directly against the database.

Usage:
    segment-engine serve                 Start the API server
    segment-engine sweep                 Resume paused jobs that are due
    segment-engine jobs list --tenant T  List a tenant's jobs
    segment-engine jobs logs JOB --tenant T  Print a job's audit trail
    segment-engine catalog               Show segments and bundles
"""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console

from src.catalog.resolver import DEFAULT_CATALOG
from src.cli.config import load_config
from src.cli.output import format_catalog, format_job_detail, format_job_table
from src.db.connection import get_db_context, init_db
from src.errors.domain import DomainError
from src.orchestrator.batch.models import JobSnapshot
from src.services.audit_service import AuditService
from src.services.job_history import JobFilter, JobHistoryService

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="segment-engine",
    help="Bulk segment creation engine",
    no_args_is_help=True,
)
jobs_app = typer.Typer(help="Inspect and cancel segment jobs")
app.add_typer(jobs_app, name="jobs")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to segments.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Segment engine CLI."""
    global _config_path
    _config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )


@app.command()
def version():
    """Show the installed version."""
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as pkg_version

    try:
        v = pkg_version("segment-engine")
    except PackageNotFoundError:
        v = "unknown"
    console.print(f"[bold]segment-engine[/bold] v{v}")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Run the API server (passes, progress streams, retry sweeper)."""
    import uvicorn

    from src.api.main import app as api_app

    cfg = load_config(config_path=_config_path)
    api_app.state.config = cfg
    uvicorn.run(
        api_app,
        host=host or cfg.daemon.host,
        port=port or cfg.daemon.port,
        log_level=cfg.daemon.log_level,
    )


@app.command()
def sweep(
    limit: Optional[int] = typer.Option(None, "--limit", help="Max jobs to resume"),
):
    """Resume paused jobs whose retry time has passed (cron entry point)."""
    from src.api.main import build_runner

    cfg = load_config(config_path=_config_path)
    init_db()
    runner = build_runner(cfg)
    resumed = asyncio.run(runner.resume_due_jobs(limit=limit or cfg.engine.sweep_max_jobs))
    if not resumed:
        console.print("No jobs due.")
        return
    for job_id in resumed:
        snapshot = runner.get_snapshot(job_id)
        console.print(f"{job_id}: {snapshot.status} ({snapshot.success_count}/{snapshot.total_segments})")


# --- Jobs commands ---


@jobs_app.command("list")
def jobs_list(
    tenant: str = typer.Option(..., "--tenant", help="Owning tenant ID"),
    connection: Optional[str] = typer.Option(None, "--connection", help="Connection ID"),
    job_filter: JobFilter = typer.Option(JobFilter.all, "--filter", help="Status filter"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List a tenant's jobs, newest first."""
    init_db()
    with get_db_context() as db:
        history = JobHistoryService(db)
        jobs = history.list_jobs(tenant, connection, job_filter)
        stats = history.compute_stats(jobs)
        snapshots = [JobSnapshot.from_job(j) for j in jobs]
    console.print(format_job_table(snapshots, stats, as_json=as_json))


@jobs_app.command("show")
def jobs_show(
    job_id: str = typer.Argument(..., help="Job ID"),
    tenant: str = typer.Option(..., "--tenant", help="Owning tenant ID"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a job and its per-segment attempts."""
    init_db()
    try:
        with get_db_context() as db:
            history = JobHistoryService(db)
            snapshot = JobSnapshot.from_job(history.get_job(job_id, tenant))
            results = history.get_segment_results(job_id, tenant)
            console.print(format_job_detail(snapshot, results, as_json=as_json))
    except DomainError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@jobs_app.command("cancel")
def jobs_cancel(
    job_id: str = typer.Argument(..., help="Job ID"),
    tenant: str = typer.Option(..., "--tenant", help="Owning tenant ID"),
):
    """Cancel a job. A running pass stops at its next batch boundary."""
    init_db()
    try:
        with get_db_context() as db:
            job = JobHistoryService(db).cancel_job(job_id, tenant)
            console.print(f"[green]Job {job.id} cancelled.[/green]")
    except DomainError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@jobs_app.command("logs")
def jobs_logs(
    job_id: str = typer.Argument(..., help="Job ID"),
    tenant: str = typer.Option(..., "--tenant", help="Owning tenant ID"),
):
    """Print a job's audit trail as plain text."""
    init_db()
    try:
        with get_db_context() as db:
            JobHistoryService(db).get_job(job_id, tenant)
            text = AuditService(db).export_logs_text(job_id)
    except DomainError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    if not text:
        console.print("No audit entries.")
        return
    console.print(text, markup=False, highlight=False, soft_wrap=True)


# --- Catalog ---


@app.command()
def catalog(
    category: Optional[str] = typer.Option(None, "--category", help="Filter by category"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the segment catalog and bundles."""
    console.print(format_catalog(DEFAULT_CATALOG, category, as_json=as_json))


if __name__ == "__main__":
    app()
