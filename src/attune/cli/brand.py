"""Brand profile and brand drift CLI commands."""

from typing import TYPE_CHECKING, Annotated

import typer

from attune.cli.common import (
    ELECTRIC_PURPLE,
    console,
    create_table,
    error,
    format_status,
    info,
    open_pipeline,
    open_store,
    parse_id,
    run_async,
    success,
    warn,
)
from attune.errors import AttuneError

if TYPE_CHECKING:
    from attune.brand import BrandDetection

app = typer.Typer(
    name="brand",
    help="Detect brand profiles and review brand drift",
    no_args_is_help=True,
)


def _print_detection(detection: "BrandDetection") -> None:
    profile = detection.profile
    table = create_table("Brand Profile", "Field", "Value")
    table.add_row("Industry", profile.industry or "")
    table.add_row("Tone", profile.tone or "")
    table.add_row("Audience", profile.target_audience or "")
    table.add_row("Primary goal", profile.primary_goal or "")
    table.add_row("Sales aggressiveness", f"{profile.sales_aggressiveness:.2f}")
    table.add_row("Reading complexity", f"{profile.reading_complexity:.2f}")
    table.add_row("Assistant role", detection.role)
    table.add_row("Confidence", f"{profile.confidence:.2f}")
    console.print(table)
    if detection.suggestion is not None:
        info(f"Behavior suggestion {detection.suggestion.id} awaits review")


@app.command("detect")
def brand_detect(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
) -> None:
    """Detect the brand profile from fetched pages."""
    connection_id = parse_id(connection, "connection ID")

    @run_async
    async def _detect() -> None:
        async with open_pipeline() as pipeline:
            try:
                detection = await pipeline.detect_brand(connection_id)
            except AttuneError as e:
                error(e.message)
                raise typer.Exit(code=1) from e
        _print_detection(detection)

    _detect()


@app.command("drift")
def brand_drift(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
) -> None:
    """Re-detect the brand if page content changed and log any drift."""
    connection_id = parse_id(connection, "connection ID")

    @run_async
    async def _drift() -> None:
        async with open_pipeline() as pipeline:
            try:
                check = await pipeline.check_brand_drift(connection_id)
            except AttuneError as e:
                error(e.message)
                raise typer.Exit(code=1) from e

        if not check.drifted:
            info(f"No drift: {check.reason}")
            return
        entry = check.entry
        warn(
            f"Brand drift {format_status(entry.severity.value)} "
            f"(score {entry.drift_score:.2f}): [{ELECTRIC_PURPLE}]{entry.id}[/{ELECTRIC_PURPLE}]"
        )
        table = create_table("Changes", "Field", "From", "To", "Weight")
        for item in entry.details:
            table.add_row(
                item["field"], str(item["from"]), str(item["to"]), f"{item['weight']:g}"
            )
        console.print(table)

    _drift()


@app.command("logs")
def brand_logs(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    status: Annotated[
        str | None, typer.Option("--status", "-s", help="pending, confirmed or ignored")
    ] = "pending",
) -> None:
    """List brand drift entries for a connection."""
    from attune.states import DriftStatus

    connection_id = parse_id(connection, "connection ID")
    try:
        status_filter = DriftStatus(status.lower()) if status else None
    except ValueError:
        error(f"Unknown status: {status}")
        raise typer.Exit(code=1) from None

    @run_async
    async def _logs() -> None:
        async with open_store() as store:
            entries = await store.list_drift_logs(connection_id, status=status_filter)

        if not entries:
            info("No drift entries")
            return
        table = create_table("Brand Drift", "ID", "Status", "Severity", "Score", "Fields")
        for entry in entries:
            table.add_row(
                str(entry.id),
                format_status(entry.status.value),
                format_status(entry.severity.value),
                f"{entry.drift_score:.2f}",
                ", ".join(item["field"] for item in entry.details),
            )
        console.print(table)

    _logs()


def _resolve(log: str, actor: str, *, confirm: bool) -> None:
    log_id = parse_id(log, "drift ID")

    @run_async
    async def _run() -> None:
        async with open_pipeline() as pipeline:
            try:
                if confirm:
                    entry = await pipeline.confirm_brand_drift(log_id, actor)
                else:
                    entry = await pipeline.ignore_brand_drift(log_id, actor)
            except AttuneError as e:
                error(e.message)
                raise typer.Exit(code=1) from e
        success(f"Drift {format_status(entry.status.value)} by {entry.resolved_by}")

    _run()


@app.command("confirm")
def brand_confirm(
    log: Annotated[str, typer.Argument(help="Drift entry UUID")],
    actor: Annotated[str, typer.Option("--actor", "-a", help="Operator identity")],
) -> None:
    """Acknowledge a brand drift entry."""
    _resolve(log, actor, confirm=True)


@app.command("ignore")
def brand_ignore(
    log: Annotated[str, typer.Argument(help="Drift entry UUID")],
    actor: Annotated[str, typer.Option("--actor", "-a", help="Operator identity")],
) -> None:
    """Dismiss a brand drift entry."""
    _resolve(log, actor, confirm=False)


@app.command("reanalyze")
def brand_reanalyze(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    actor: Annotated[str, typer.Option("--actor", "-a", help="Operator identity")],
) -> None:
    """Confirm pending drift and detect the brand again."""
    connection_id = parse_id(connection, "connection ID")

    @run_async
    async def _reanalyze() -> None:
        async with open_pipeline() as pipeline:
            try:
                detection = await pipeline.reanalyze_brand(connection_id, actor)
            except AttuneError as e:
                error(e.message)
                raise typer.Exit(code=1) from e
        _print_detection(detection)

    _reanalyze()
