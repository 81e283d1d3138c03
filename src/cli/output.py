"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import dataclasses
import json

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.catalog.resolver import SegmentCatalog
from src.db.models import SegmentResult
from src.orchestrator.batch.models import JobSnapshot
from src.services.job_history import JobStats

console = Console()

# Status color map
STATUS_COLORS = {
    "pending": "yellow",
    "in_progress": "blue",
    "waiting_retry": "magenta",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "created": "green",
    "exists": "cyan",
    "skipped": "yellow",
    "error": "red",
}


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def _result_dict(result: SegmentResult) -> dict:
    return {
        "segment_id": result.segment_id,
        "status": result.status,
        "external_id": result.external_id,
        "segment_name": result.segment_name,
        "error": result.error,
        "rate_limited": result.rate_limited,
        "attempted_at": result.attempted_at,
    }


def format_job_table(
    jobs: list[JobSnapshot], stats: JobStats | None = None, as_json: bool = False
) -> str:
    """Format a list of jobs as a Rich table or JSON.

    Args:
        jobs: Job snapshots to display.
        stats: Aggregates shown under the table.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps(
            {
                "jobs": [j.to_dict() for j in jobs],
                "stats": dataclasses.asdict(stats) if stats else None,
            },
            indent=2,
        )

    if not jobs:
        return "No jobs found."

    table = Table(title="Segment Jobs", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Segments", justify="right")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Fail", justify="right", style="red")
    table.add_column("Pending", justify="right")
    table.add_column("Retry After")
    table.add_column("Created")

    for job in jobs:
        table.add_row(
            job.job_id[:12],
            _colored(job.status),
            str(job.total_segments),
            str(job.success_count),
            str(job.error_count),
            str(len(job.pending_segment_ids)),
            job.retry_after[:19] if job.retry_after else "-",
            job.created_at[:19] if job.created_at else "-",
        )

    output = _render(table)
    if stats:
        output += (
            f"{stats.total_jobs} job(s), {stats.active_jobs} active, "
            f"{stats.total_segments_created} segment(s) created, "
            f"{stats.success_rate}% success rate\n"
        )
    return output


def format_job_detail(
    job: JobSnapshot, results: list[SegmentResult] | None = None, as_json: bool = False
) -> str:
    """Format a single job with its segment attempts as a Rich panel or JSON."""
    results = results or []
    if as_json:
        data = job.to_dict()
        data["results"] = [_result_dict(r) for r in results]
        return json.dumps(data, indent=2)

    lines = [
        f"[bold]Job ID:[/bold]    {job.job_id}",
        f"[bold]Status:[/bold]    {_colored(job.status)}",
        f"[bold]Progress:[/bold]  {job.segments_processed}/{job.total_segments} ({job.percent}%)",
        f"[bold]Success:[/bold]   [green]{job.success_count}[/green]",
        f"[bold]Failed:[/bold]    [red]{job.error_count}[/red]",
        f"[bold]Pending:[/bold]   {len(job.pending_segment_ids)}",
    ]
    if job.rate_limit_type:
        lines.append(f"[bold]Paused:[/bold]    {job.rate_limit_type} until {job.retry_after}")
    if job.last_error_message:
        lines.append(f"[bold]Message:[/bold]   {job.last_error_message}")
    lines.append(f"[bold]Created:[/bold]   {job.created_at[:19]}")
    if job.completed_at:
        lines.append(f"[bold]Finished:[/bold]  {job.completed_at[:19]}")

    output = _render(Panel("\n".join(lines), title="Segment Job"))
    if results:
        table = Table(title="Segment Attempts")
        table.add_column("Segment", style="cyan")
        table.add_column("Outcome")
        table.add_column("Platform ID")
        table.add_column("Detail")
        for r in results:
            outcome = "throttled" if r.rate_limited else r.status
            table.add_row(r.segment_id, _colored(outcome), r.external_id or "-", r.error or "")
        output += _render(table)
    return output


def format_catalog(
    catalog: SegmentCatalog, category: str | None = None, as_json: bool = False
) -> str:
    """Format catalog segments and bundles."""
    segments = catalog.segments(category)
    if as_json:
        return json.dumps(
            {
                "segments": [
                    {
                        "id": s.id,
                        "name": s.name,
                        "category": s.category,
                        "unavailable": s.unavailable,
                    }
                    for s in segments
                ],
                "bundles": [
                    {"id": b.id, "name": b.name, "segment_ids": list(b.segment_ids)}
                    for b in catalog.bundles()
                ],
            },
            indent=2,
        )

    table = Table(title="Segments")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Available")
    for s in segments:
        table.add_row(s.id, s.name, s.category, "[red]no[/red]" if s.unavailable else "yes")

    bundles = Table(title="Bundles")
    bundles.add_column("ID", style="cyan")
    bundles.add_column("Name")
    bundles.add_column("Segments", justify="right")
    for b in catalog.bundles():
        bundles.add_row(b.id, b.name, str(len(b.segment_ids)))

    return _render(table) + _render(bundles)
