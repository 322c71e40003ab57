"""Confidence gate CLI commands."""

from typing import Annotated

import typer

from attune.cli.common import (
    NEON_CYAN,
    console,
    create_table,
    error,
    format_status,
    open_store,
    parse_id,
    run_async,
    success,
)
from attune.errors import AttuneError

app = typer.Typer(
    name="gate",
    help="Inspect and reset confidence gates",
    no_args_is_help=True,
)


@app.command("status")
def gate_status(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
) -> None:
    """Show the confidence gate for a connection."""
    connection_id = parse_id(connection, "connection ID")

    @run_async
    async def _status() -> None:
        from attune.gate import GateService

        async with open_store() as store:
            try:
                state = await GateService(store).state(connection_id)
            except AttuneError as e:
                error(e.message)
                raise typer.Exit(code=1) from e

        table = create_table("Confidence Gate", "Metric", "Value")
        table.add_row("Status", format_status(state.status.value))
        table.add_row("Health", f"{state.health_score:.0f}")
        table.add_row("Drift count", str(state.drift_count))
        table.add_row("Low-confidence streak", str(state.low_confidence_streak))
        table.add_row("Drift events in window", str(len(state.drift_window)))
        console.print(table)

    _status()


@app.command("reset")
def gate_reset(
    connection: Annotated[str, typer.Argument(help="Connection UUID")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Return a gate to ACTIVE with full health. The drift count is kept."""
    connection_id = parse_id(connection, "connection ID")
    if not yes:
        typer.confirm(f"Reset the confidence gate for {connection_id}?", abort=True)

    @run_async
    async def _reset() -> None:
        from attune.gate import GateService

        async with open_store() as store:
            try:
                state = await GateService(store).reset(connection_id)
            except AttuneError as e:
                error(e.message)
                raise typer.Exit(code=1) from e

        success(
            f"Gate reset: [{NEON_CYAN}]{state.status.value}[/{NEON_CYAN}], "
            f"health {state.health_score:.0f}, drift count {state.drift_count}"
        )

    _reset()
