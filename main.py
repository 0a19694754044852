#!/usr/bin/env python
"""
Comicrawl CLI.

Command-line interface for running and steering crawls by hand.
Use the API for production integrations.

Usage:
    comicrawl crawl https://truyenqq.com/truyen-tranh/one-piece
    comicrawl status <job_id>
    comicrawl jobs --status running
    comicrawl pause <job_id>
    comicrawl worker
    comicrawl serve --port 8000
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console
from rich.table import Table

from comicrawl.core.config import get_settings
from comicrawl.core.runtime import CrawlRuntime, build_runtime
from comicrawl.database.connection import close_db, init_db
from comicrawl.database.models import DownloadMode, JobLevel, JobStatus
from comicrawl.utils.exceptions import CrawlError
from comicrawl.utils.logging import configure_logging

T = TypeVar("T")

# Initialize Typer app
app = typer.Typer(
    name="comicrawl",
    help="Comicrawl - hierarchical comic crawl orchestration",
    add_completion=False,
)

console = Console()


def run_async(coro):
    """Helper to run async functions in sync context."""
    return asyncio.run(coro)


def with_runtime(action: Callable[[CrawlRuntime], Awaitable[T]]) -> T:
    """
    Build a runtime, run ``action`` against it and tear everything down.

    Domain errors are printed and turned into exit code 1.
    """
    configure_logging()

    async def _run() -> T:
        await init_db()
        runtime = build_runtime()
        try:
            return await action(runtime)
        finally:
            await runtime.close()
            await close_db()

    try:
        return run_async(_run())
    except CrawlError as e:
        console.print(f"[red]✗ {e.message}[/red]")
        raise typer.Exit(1)


def _parse_enum(enum_cls, value: str | None, label: str):
    if value is None:
        return None
    try:
        return enum_cls(value.lower())
    except ValueError:
        console.print(f"[red]Invalid {label}: {value}[/red]")
        console.print(f"Valid values: {', '.join(e.value for e in enum_cls)}")
        raise typer.Exit(1)


def _status_color(status: JobStatus) -> str:
    """Get colored status string."""
    colors = {
        JobStatus.PENDING: "[yellow]pending[/yellow]",
        JobStatus.RUNNING: "[blue]running[/blue]",
        JobStatus.PAUSED: "[magenta]paused[/magenta]",
        JobStatus.COMPLETED: "[green]completed[/green]",
        JobStatus.FAILED: "[red]failed[/red]",
        JobStatus.CANCELLED: "[dim]cancelled[/dim]",
    }
    return colors.get(status, str(status.value))


def _jobs_table(title: str, jobs) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Level", style="blue")
    table.add_column("#", justify="right")
    table.add_column("Status", style="white")
    table.add_column("Progress", justify="right")
    table.add_column("Target", style="dim", max_width=48)

    for job in jobs:
        target = job.target_name or job.target_url
        table.add_row(
            str(job.id),
            job.level.value,
            str(job.item_index),
            _status_color(job.status),
            f"{job.completed_items}/{job.failed_items}/{job.skipped_items} of {job.total_items}",
            (target[:45] + "...") if len(target) > 48 else target,
        )
    return table


# ============================================================
# Crawl
# ============================================================


@app.command()
def crawl(
    url: str = typer.Argument(..., help="Comic page or category listing to crawl"),
    level: str = typer.Option("comic", "--level", "-l", help="Root level: category or comic"),
    mode: str = typer.Option(
        "full",
        "--mode",
        "-m",
        help="Download mode: full, update, partial, none",
    ),
    operator: str = typer.Option("cli", "--operator", "-o", help="Operator the job is counted against"),
    range_start: int = typer.Option(-1, "--from", help="First item to crawl (1-based)"),
    range_end: int = typer.Option(-1, "--to", help="Last item to crawl (1-based, inclusive)"),
    skip: list[int] = typer.Option([], "--skip", help="1-based item to skip (repeatable)"),
    wait: bool = typer.Option(
        True,
        "--wait/--no-wait",
        help="Drain the queue until the crawl is done instead of leaving it to the worker",
    ),
) -> None:
    """
    Create and start a crawl.

    Examples:
        comicrawl crawl https://truyenqq.com/truyen-tranh/one-piece
        comicrawl crawl https://truyenqq.com/the-loai/action --level category --no-wait
        comicrawl crawl https://truyenqq.com/truyen-tranh/abc --mode partial --from 10 --to 20
    """
    level_enum = _parse_enum(JobLevel, level, "level")
    if level_enum not in (JobLevel.CATEGORY, JobLevel.COMIC):
        console.print("[red]Root jobs are category or comic[/red]")
        raise typer.Exit(1)
    mode_enum = _parse_enum(DownloadMode, mode, "mode")

    async def _crawl(runtime: CrawlRuntime) -> None:
        settings = runtime.jobs.default_settings()
        settings.range_start = range_start
        settings.range_end = range_end
        settings.skip_items = list(skip)

        job = await runtime.jobs.create(
            url,
            level=level_enum,
            operator=operator,
            download_mode=mode_enum,
            settings=settings,
        )
        console.print(f"[blue]Created job:[/blue] {job.id} ({job.level.value}, {job.download_mode.value})")

        job = await runtime.jobs.start(job.id)
        if not wait:
            console.print("[green]✓ Job started; a worker will pick it up[/green]")
            return

        result = await runtime.processor.run_job(job.id)
        console.print(f"[blue]Root finished:[/blue] {result.status.value}")
        report = await runtime.processor.drain()
        console.print(f"[dim]Drained {report.processed} queue entries in {report.batches} batches[/dim]")

        job = await runtime.jobs.get_job(job.id)
        console.print(
            f"\n[green]Status:[/green] {_status_color(job.status)}  "
            f"completed {job.completed_items}, failed {job.failed_items}, "
            f"skipped {job.skipped_items} of {job.total_items}"
        )

    with_runtime(_crawl)


# ============================================================
# Queries
# ============================================================


@app.command()
def status(
    job_id: int = typer.Argument(..., help="Job ID to check"),
) -> None:
    """
    Show status and progress of a job.

    Example:
        comicrawl status 42
    """

    async def _status(runtime: CrawlRuntime) -> None:
        job, progress, checkpoint = await runtime.jobs.get_progress(job_id)

        table = Table(title=f"Job {job.id}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("Level", job.level.value)
        table.add_row("Status", _status_color(job.status))
        table.add_row("Mode", job.download_mode.value)
        table.add_row("URL", job.target_url)
        table.add_row("Name", job.target_name or "N/A")
        table.add_row("Parent", str(job.parent_id) if job.parent_id else "N/A")
        table.add_row("Operator", job.created_by)
        table.add_row(
            "Items",
            f"{job.completed_items} done, {job.failed_items} failed, "
            f"{job.skipped_items} skipped of {job.total_items}",
        )
        table.add_row("Percent", f"{progress.percent:.1f}%")
        table.add_row("Checkpoint", str(checkpoint.last_item_index))
        if checkpoint.failed_indices:
            table.add_row("Failed items", ", ".join(str(i) for i in checkpoint.failed_indices))
        if checkpoint.failed_nested:
            table.add_row(
                "Failed images",
                "; ".join(f"{k}: {v}" for k, v in sorted(checkpoint.failed_nested.items())),
            )
        if progress.message:
            table.add_row("Last message", progress.message)
        if job.error_message:
            table.add_row("Error", f"[red]{job.error_message}[/red]")

        console.print(table)

    with_runtime(_status)


@app.command()
def jobs(
    status_filter: str | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Filter by status: pending, running, paused, completed, failed, cancelled",
    ),
    level: str | None = typer.Option(None, "--level", help="Filter by level"),
    all_levels: bool = typer.Option(False, "--all", "-a", help="Include child jobs"),
    limit: int = typer.Option(
        20,
        "--limit",
        "-l",
        help="Maximum number of jobs to show",
    ),
) -> None:
    """
    List crawl jobs (root jobs unless --all).

    Examples:
        comicrawl jobs
        comicrawl jobs --status running
        comicrawl jobs --all --level chapter --limit 50
    """
    status_enum = _parse_enum(JobStatus, status_filter, "status")
    level_enum = _parse_enum(JobLevel, level, "level")

    async def _jobs(runtime: CrawlRuntime) -> None:
        jobs_list = await runtime.jobs.list_jobs(
            status=status_enum, level=level_enum, roots_only=not all_levels, limit=limit
        )
        if not jobs_list:
            console.print("[yellow]No jobs found[/yellow]")
            return
        console.print(_jobs_table(f"Crawl Jobs ({len(jobs_list)} shown)", jobs_list))

    with_runtime(_jobs)


@app.command()
def children(
    job_id: int = typer.Argument(..., help="Parent job ID"),
    status_filter: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(100, "--limit", "-l"),
) -> None:
    """List the child jobs of a job."""
    status_enum = _parse_enum(JobStatus, status_filter, "status")

    async def _children(runtime: CrawlRuntime) -> None:
        jobs_list = await runtime.jobs.list_children(job_id, status=status_enum, limit=limit)
        if not jobs_list:
            console.print("[yellow]No child jobs[/yellow]")
            return
        console.print(_jobs_table(f"Children of job {job_id}", jobs_list))

    with_runtime(_children)


@app.command()
def stats() -> None:
    """
    Show job and queue statistics.

    Example:
        comicrawl stats
    """

    async def _stats(runtime: CrawlRuntime) -> None:
        data = await runtime.processor.stats()

        table = Table(title="Job Statistics")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white", justify="right")

        by_status = data["jobs"]["by_status"]
        table.add_row("Total Jobs", str(data["jobs"]["total"]))
        for job_status in JobStatus:
            table.add_row(job_status.value.capitalize(), str(by_status.get(job_status.value, 0)))
        table.add_row("Success Rate", f"{data['jobs']['success_rate']:.1f}%")
        console.print(table)

        queue = Table(title="Queue")
        queue.add_column("Status", style="cyan")
        queue.add_column("Entries", justify="right")
        for queue_status, count in data["queue"].items():
            queue.add_row(queue_status, str(count))
        console.print(queue)

        limits = data["limits"]
        console.print(
            f"[dim]Running roots: {sum(data['running_roots'].values())}/{limits['total']} "
            f"(max {limits['per_operator']} per operator)[/dim]"
        )

    with_runtime(_stats)


# ============================================================
# Control
# ============================================================


@app.command()
def pause(job_id: int = typer.Argument(..., help="Running job to pause")) -> None:
    """Pause a running job and its running descendants."""

    async def _pause(runtime: CrawlRuntime) -> None:
        paused = await runtime.jobs.pause(job_id)
        console.print(f"[green]✓ Paused {len(paused)} job(s)[/green]")

    with_runtime(_pause)


@app.command()
def resume(
    job_id: int = typer.Argument(..., help="Paused job to resume"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Run it here until done"),
) -> None:
    """Resume a paused job from its checkpoint."""

    async def _resume(runtime: CrawlRuntime) -> None:
        job = await runtime.jobs.resume(job_id)
        console.print(f"[green]✓ Job {job.id} resumed[/green]")
        if wait:
            await _run_until_idle(runtime, job.id, job.parent_id is None)

    with_runtime(_resume)


@app.command()
def retry(
    job_id: int = typer.Argument(..., help="Failed job to retry"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Run it here until done"),
) -> None:
    """Retry a failed job."""

    async def _retry(runtime: CrawlRuntime) -> None:
        job = await runtime.jobs.retry(job_id)
        console.print(f"[green]✓ Job {job.id} queued for retry[/green]")
        if wait:
            await _run_until_idle(runtime, job.id, job.parent_id is None)

    with_runtime(_retry)


@app.command("retry-failed")
def retry_failed(
    job_id: int = typer.Argument(..., help="Job whose failed items to retry"),
    index: list[int] = typer.Option([], "--index", "-i", help="0-based child index (repeatable)"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Drain the queue here"),
) -> None:
    """Reset failed children of a job (all, or the given indices)."""

    async def _retry_failed(runtime: CrawlRuntime) -> None:
        count = await runtime.jobs.retry_failed_items(job_id, index or None)
        console.print(f"[green]✓ {count} failed item(s) reset[/green]")
        if wait and count:
            await _run_until_idle(runtime, job_id, False)

    with_runtime(_retry_failed)


@app.command()
def cancel(job_id: int = typer.Argument(..., help="Job to cancel")) -> None:
    """Cancel a job and every non-terminal descendant."""

    async def _cancel(runtime: CrawlRuntime) -> None:
        cancelled = await runtime.jobs.cancel(job_id)
        console.print(f"[green]✓ Cancelled {len(cancelled)} job(s)[/green]")

    with_runtime(_cancel)


@app.command()
def delete(
    job_id: int = typer.Argument(..., help="Job to delete"),
    purge: bool = typer.Option(False, "--purge", help="Permanently remove an already deleted job"),
) -> None:
    """Soft-delete a job tree, or purge one that was soft-deleted."""

    async def _delete(runtime: CrawlRuntime) -> None:
        if purge:
            count = await runtime.jobs.purge(job_id)
            console.print(f"[green]✓ Purged {count} job(s)[/green]")
        else:
            count = await runtime.jobs.soft_delete(job_id)
            console.print(f"[green]✓ Deleted {count} job(s)[/green]")

    with_runtime(_delete)


@app.command()
def restore(job_id: int = typer.Argument(..., help="Soft-deleted job to restore")) -> None:
    """Restore a soft-deleted job tree."""

    async def _restore(runtime: CrawlRuntime) -> None:
        count = await runtime.jobs.restore(job_id)
        console.print(f"[green]✓ Restored {count} job(s)[/green]")

    with_runtime(_restore)


@app.command()
def check(
    urls: list[str] = typer.Argument(..., help="URLs to check for existing crawls"),
    content_hash: bool = typer.Option(
        False,
        "--content-hash",
        help="Also compare cover images (fetches each page)",
    ),
) -> None:
    """
    Check URLs against existing jobs and catalog records.

    Example:
        comicrawl check https://truyenqq.com/truyen-tranh/abc https://mirror.example/truyen-tranh/abc
    """

    async def _check(runtime: CrawlRuntime) -> None:
        if content_hash:
            results = {
                url: await runtime.jobs.check_duplicate(url, include_content_hash=True) for url in urls
            }
            summary = runtime.services.detector.summarize(results)
        else:
            results, summary = await runtime.jobs.check_duplicates(urls)

        table = Table(title="Duplicate Check")
        table.add_column("URL", style="dim", max_width=50)
        table.add_column("Match", style="cyan")
        table.add_column("Confidence", justify="right")
        table.add_column("Job", justify="right")
        table.add_column("Comic", justify="right")
        for result in results.values():
            table.add_row(
                result.url,
                result.match_type.value,
                str(result.confidence),
                str(result.existing_job_id or "-"),
                str(result.existing_content_id or "-"),
            )
        console.print(table)
        console.print(
            f"[dim]{summary.duplicates}/{summary.total} duplicates "
            f"({summary.duplicate_percentage:.1f}%)[/dim]"
        )

    with_runtime(_check)


@app.command()
def merge(
    primary_id: int = typer.Argument(..., help="Comic record that survives"),
    secondary_id: int = typer.Argument(..., help="Comic record folded into the primary"),
) -> None:
    """Merge two catalog records."""

    async def _merge(runtime: CrawlRuntime) -> None:
        comic = await runtime.jobs.merge(primary_id, secondary_id)
        console.print(f"[green]✓ Merged {secondary_id} into {comic.id} ({comic.name})[/green]")

    with_runtime(_merge)


# ============================================================
# Workers
# ============================================================


async def _run_until_idle(runtime: CrawlRuntime, job_id: int, is_root: bool) -> None:
    if is_root:
        result = await runtime.processor.run_job(job_id)
        console.print(f"[blue]Root finished:[/blue] {result.status.value}")
    report = await runtime.processor.drain()
    console.print(f"[dim]Drained {report.processed} queue entries[/dim]")


@app.command()
def drain(
    max_batches: int | None = typer.Option(None, "--max-batches", help="Stop after this many batches"),
) -> None:
    """Run one queue drain: admit pending jobs, then process ready entries."""

    async def _drain(runtime: CrawlRuntime) -> None:
        report = await runtime.processor.drain(max_batches=max_batches)
        console.print(
            f"[green]✓ Drain finished:[/green] admitted {len(report.admitted)}, "
            f"resumed {len(report.resumed)}, "
            f"processed {report.processed} in {report.batches} batches, "
            f"recovered {report.recovered}, requeued {report.requeued}"
        )

    with_runtime(_drain)


@app.command()
def worker() -> None:
    """
    Run the recurring queue drain until interrupted.

    Example:
        comicrawl worker
    """
    settings = get_settings()
    console.print("[blue]Starting queue worker[/blue]")
    console.print(f"[dim]Interval:[/dim] {settings.drain_interval_seconds}s")
    console.print(f"[dim]Concurrency:[/dim] {settings.queue_worker_concurrency}")

    async def _worker(runtime: CrawlRuntime) -> None:
        await runtime.processor.run_forever()

    try:
        with_runtime(_worker)
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/yellow]")


@app.command()
def serve(
    host: str = typer.Option(
        "0.0.0.0",
        "--host",
        "-h",
        help="Host to bind to",
    ),
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="Port to bind to",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        "-r",
        help="Enable auto-reload for development",
    ),
) -> None:
    """
    Start the API server (with the embedded queue worker unless disabled).

    Examples:
        comicrawl serve
        comicrawl serve --port 8080
        comicrawl serve --reload  # Development mode
    """
    import uvicorn

    settings = get_settings()

    console.print("[blue]Starting Comicrawl API[/blue]")
    console.print(f"[dim]Host:[/dim] {host}")
    console.print(f"[dim]Port:[/dim] {port}")
    console.print(f"[dim]Debug:[/dim] {settings.debug}")
    console.print(f"[dim]Embedded worker:[/dim] {settings.embedded_worker}")

    if settings.debug:
        console.print(f"[dim]Docs:[/dim] http://{host}:{port}/docs")

    uvicorn.run(
        "api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="debug" if settings.debug else "info",
    )


@app.command()
def version() -> None:
    """Show version information."""
    from api.app import API_VERSION

    console.print(f"[blue]Comicrawl[/blue] v{API_VERSION}")
    console.print("[dim]Hierarchical comic crawl orchestration[/dim]")


if __name__ == "__main__":
    app()
