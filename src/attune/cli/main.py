"""Main CLI application - ties all subcommands together.

This is the entry point for the attune CLI.
"""

import mimetypes
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, NoReturn
from uuid import UUID

import typer
from arq.jobs import Job

from attune.cli.common import (
    CORAL,
    ELECTRIC_PURPLE,
    NEON_CYAN,
    console,
    create_table,
    error,
    format_status,
    info,
    open_pipeline,
    open_store,
    parse_id,
    run_async,
    spinner,
    success,
    truncate,
    warn,
)
from attune.cli.brand import app as brand_app
from attune.cli.db import app as db_app
from attune.cli.gate import app as gate_app
from attune.errors import AttuneError
from attune.jobs import queue as job_queue

app = typer.Typer(
    name="attune",
    help="Attune - tenant-isolated knowledge and behavior training",
    add_completion=False,
    no_args_is_help=True,
)

app.add_typer(brand_app, name="brand")
app.add_typer(db_app, name="db")
app.add_typer(gate_app, name="gate")


def _fail(e: AttuneError) -> NoReturn:
    error(e.message)
    raise typer.Exit(code=1) from e


async def _submit(
    label: str, connection_id: UUID | None, enqueue: Callable[[], Awaitable[Job | None]]
) -> None:
    """Queue one background job for the worker, releasing the Redis pool after."""
    if connection_id is not None:
        async with open_store() as store:
            try:
                await store.get_connection(connection_id)
            except AttuneError as e:
                _fail(e)
    try:
        job = await enqueue()
    finally:
        await job_queue.close_pool()
    if job is None:
        warn(f"{label} job was not queued")
    else:
        success(f"{label} job queued: [{ELECTRIC_PURPLE}]{job.job_id}[/{ELECTRIC_PURPLE}]")


# ============================================================================
# Connections
# ============================================================================


@app.command()
def connect(
    website_url: Annotated[str, typer.Argument(help="Root URL of the site to train on")],
    name: Annotated[str | None, typer.Option("--name", "-n", help="Display name")] = None,
) -> None:
    """Create a connection for a website."""

    @run_async
    async def _connect() -> None:
        async with open_pipeline() as pipeline:
            try:
                connection = await pipeline.create_connection(website_url, name)
            except AttuneError as e:
                _fail(e)
        success(f"Connection created: [{ELECTRIC_PURPLE}]{connection.id}[/{ELECTRIC_PURPLE}]")
        info(f"Website: {connection.website_url}")

    _connect()


# ============================================================================
# Inbound
# ============================================================================


@app.command()
def discover(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    urls: Annotated[
        list[str] | None, typer.Argument(help="URLs to queue (default: discover the site)")
    ] = None,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Re-queue URLs that were already fetched")
    ] = False,
    background: Annotated[
        bool, typer.Option("--background", "-b", help="Run site discovery on the job worker")
    ] = False,
) -> None:
    """Discover URLs for a connection, or queue specific URLs."""
    connection_id = parse_id(connection, "connection ID")
    if background and urls:
        error("--background discovers the whole site; drop the URL arguments")
        raise typer.Exit(code=1)

    @run_async
    async def _discover() -> None:
        if background:
            await _submit(
                "Discovery",
                connection_id,
                lambda: job_queue.enqueue_discovery(str(connection_id)),
            )
            return
        async with open_pipeline() as pipeline:
            try:
                if urls:
                    added = await pipeline.enqueue_discovery(connection_id, urls, force=force)
                    success(f"Queued {added} of {len(urls)} URLs")
                    return
                with spinner("Discovering...") as progress:
                    progress.add_task("Discovering site URLs...", total=None)
                    session = await pipeline.discover_site(connection_id)
            except AttuneError as e:
                _fail(e)

        method = session.method.value if session.method else "none"
        success(
            f"Discovery {format_status(session.status.value)} via {method}: "
            f"{session.total_urls} found, {session.new_urls} new"
        )
        if session.error_message:
            warn(session.error_message)

    _discover()


@app.command()
def fetch(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    limit: Annotated[int | None, typer.Option("--limit", "-l", help="Max URLs to fetch")] = None,
    background: Annotated[
        bool, typer.Option("--background", "-b", help="Fetch on the job worker")
    ] = False,
) -> None:
    """Fetch discovered pages and queue them for knowledge extraction."""
    connection_id = parse_id(connection, "connection ID")

    @run_async
    async def _fetch() -> None:
        if background:
            await _submit(
                "Fetch", connection_id, lambda: job_queue.enqueue_fetch(str(connection_id))
            )
            return
        async with open_pipeline() as pipeline:
            try:
                with spinner("Fetching...") as progress:
                    progress.add_task("Fetching pages...", total=None)
                    report = await pipeline.fetch_pending(connection_id, limit)
            except AttuneError as e:
                _fail(e)

        table = create_table("Fetch", "Metric", "Count")
        table.add_row("Fetched", str(report.fetched))
        table.add_row("Failed", str(report.failed))
        table.add_row("Duplicates", str(report.duplicates))
        table.add_row("Thin", str(report.thin))
        table.add_row("Queued", str(report.queued))
        console.print(table)

    _fetch()


@app.command()
def upload(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    file: Annotated[Path, typer.Argument(help="Document (.txt, .md, .pdf, .docx)", exists=True)],
) -> None:
    """Upload a behavior document and queue it for classification."""
    connection_id = parse_id(connection, "connection ID")
    data = file.read_bytes()
    content_type, _ = mimetypes.guess_type(file.name)

    @run_async
    async def _upload() -> None:
        async with open_pipeline() as pipeline:
            try:
                document = await pipeline.enqueue_document(
                    connection_id, file.name, data, content_type
                )
            except AttuneError as e:
                _fail(e)

        success(f"Document queued: [{ELECTRIC_PURPLE}]{document.id}[/{ELECTRIC_PURPLE}]")
        for warning in document.sanitizer_warnings:
            warn(warning)

    _upload()


@app.command()
def process(
    limit: Annotated[
        int | None, typer.Option("--limit", "-l", help="Max extractions to claim")
    ] = None,
    extraction: Annotated[
        str | None, typer.Option("--extraction", "-e", help="Process one extraction by UUID")
    ] = None,
    background: Annotated[
        bool, typer.Option("--background", "-b", help="Process on the job worker")
    ] = False,
) -> None:
    """Claim and process pending extractions."""
    extraction_id = parse_id(extraction, "extraction ID") if extraction else None

    @run_async
    async def _process() -> None:
        if background:
            if extraction_id is None:
                await _submit("Drain", None, lambda: job_queue.enqueue_drain(limit))
            else:
                await _submit(
                    "Extraction", None, lambda: job_queue.enqueue_extraction(str(extraction_id))
                )
            return

        async with open_pipeline() as pipeline:
            if extraction_id is not None:
                try:
                    outcome = await pipeline.process_extraction(extraction_id)
                except AttuneError as e:
                    _fail(e)
                if outcome is None:
                    warn("Extraction is not claimable")
                else:
                    info(f"Extraction {format_status(outcome.value)}")
                return
            with spinner("Processing...") as progress:
                progress.add_task("Processing extractions...", total=None)
                report = await pipeline.process_pending(limit)

        table = create_table("Extractions", "Outcome", "Count")
        table.add_row("Claimed", str(report.claimed))
        table.add_row("Done", format_status("done") + f" {report.done}")
        table.add_row("Failed", format_status("failed") + f" {report.failed}")
        table.add_row("Skipped", str(report.skipped))
        table.add_row("Claim conflicts", str(report.conflicts))
        console.print(table)

    _process()


# ============================================================================
# Coverage
# ============================================================================


@app.command()
def coverage(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    categorize: Annotated[
        bool,
        typer.Option("--categorize/--no-categorize", help="Categorize new pages first"),
    ] = True,
) -> None:
    """Show knowledge coverage and launch readiness."""
    connection_id = parse_id(connection, "connection ID")

    @run_async
    async def _coverage() -> None:
        async with open_pipeline() as pipeline:
            try:
                if categorize:
                    categorized = await pipeline.categorize_pages(connection_id)
                    info(
                        f"Categorized {categorized.categorized} pages "
                        f"({categorized.by_classifier} by classifier, "
                        f"{categorized.skipped} short pages filed as other)"
                    )
                report = await pipeline.coverage_report(connection_id)
                readiness = await pipeline.launch_readiness(connection_id)
            except AttuneError as e:
                _fail(e)

        table = create_table("Coverage", "Metric", "Value")
        table.add_row("Discovered pages", str(report.discovered_pages))
        table.add_row("Approved pages", str(report.approved_pages))
        table.add_row("Indexed pages", str(report.indexed_pages))
        table.add_row("Coverage", f"{report.coverage_score:.0%}")
        table.add_row("Critical coverage", f"{report.critical_score:.0%}")
        table.add_row("Risk", format_status(report.risk.value))
        for category, count in report.categories.items():
            table.add_row(f"  {category.value}", str(count))
        console.print(table)

        console.print(
            f"Launch readiness: [{ELECTRIC_PURPLE}]{readiness.score}%[/{ELECTRIC_PURPLE}] "
            f"(brand {readiness.brand_alignment}%, coverage {readiness.knowledge_coverage}%, "
            f"critical {readiness.critical_coverage}%, health {readiness.drift_health}%)"
        )
        for suggestion in readiness.suggestions:
            warn(suggestion)

    _coverage()


# ============================================================================
# Review
# ============================================================================


@app.command()
def suggestions(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    status: Annotated[
        str | None, typer.Option("--status", "-s", help="pending, accepted or rejected")
    ] = "pending",
) -> None:
    """List behavior suggestions for a connection."""
    from attune.states import SuggestionStatus

    connection_id = parse_id(connection, "connection ID")
    try:
        status_filter = SuggestionStatus(status.lower()) if status else None
    except ValueError:
        error(f"Unknown status: {status}")
        raise typer.Exit(code=1) from None

    @run_async
    async def _list() -> None:
        async with open_store() as store:
            items = await store.list_suggestions(connection_id, status=status_filter)

        if not items:
            info("No suggestions")
            return
        table = create_table("Suggestions", "ID", "Status", "Confidence", "Changes", "Reasoning")
        for item in items:
            changes = ", ".join(
                f"{field}: {change.get('from')} → {change.get('to')}"
                for field, change in item.diff.items()
            )
            table.add_row(
                str(item.id),
                format_status(item.status.value),
                f"{item.confidence_score:.2f}",
                changes,
                truncate(item.reasoning or "", 40),
            )
        console.print(table)

    _list()


@app.command()
def review(
    suggestion: Annotated[str, typer.Argument(help="Suggestion UUID")],
    decision: Annotated[str, typer.Argument(help="accept or reject")],
    reviewer: Annotated[str, typer.Option("--reviewer", "-r", help="Reviewer identity")],
    notes: Annotated[str | None, typer.Option("--notes", help="Review notes")] = None,
) -> None:
    """Accept or reject a behavior suggestion."""
    from attune.review import ReviewDecision

    suggestion_id = parse_id(suggestion, "suggestion ID")
    try:
        verdict = ReviewDecision(decision.lower())
    except ValueError:
        error(f"Decision must be accept or reject, got: {decision}")
        raise typer.Exit(code=1) from None

    @run_async
    async def _review() -> None:
        async with open_pipeline() as pipeline:
            try:
                result = await pipeline.review_suggestion(suggestion_id, verdict, reviewer, notes)
            except AttuneError as e:
                _fail(e)
        success(f"Suggestion {format_status(result.status.value)} by {result.reviewed_by}")

    _review()


# ============================================================================
# Outbound
# ============================================================================


@app.command()
def ask(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    message: Annotated[str, typer.Argument(help="End-user message")],
) -> None:
    """Print the grounded prompt that would answer a message."""
    connection_id = parse_id(connection, "connection ID")

    @run_async
    async def _ask() -> None:
        async with open_pipeline() as pipeline:
            try:
                grounded = await pipeline.retrieve_grounded_prompt(connection_id, message)
            except AttuneError as e:
                _fail(e)

        console.print(grounded.prompt_text, markup=False)
        console.print()
        if not grounded.grounded:
            console.print(f"[{CORAL}]No grounding available[/{CORAL}]")
            return
        table = create_table("Sources", "Similarity", "Title", "URL")
        for fragment in grounded.fragments_used:
            table.add_row(
                f"{fragment.similarity:.3f}",
                truncate(fragment.title or "", 40),
                fragment.source_url or "",
            )
        console.print(table)

    _ask()


# ============================================================================
# Worker
# ============================================================================


@app.command()
def worker() -> None:
    """Run the background job worker."""
    from attune.main import run_worker

    try:
        run_worker()
    except KeyboardInterrupt:
        console.print(f"\n[{NEON_CYAN}]Shutting down...[/{NEON_CYAN}]")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
