"""Database operations CLI commands."""

import typer

from attune.cli.common import (
    ERROR_RED,
    SUCCESS_GREEN,
    console,
    create_table,
    error,
    print_db_hint,
    run_async,
    spinner,
    success,
)

app = typer.Typer(
    name="db",
    help="Database operations",
    no_args_is_help=True,
)


@app.command("init")
def init_database() -> None:
    """Create the pgvector extension and all tables."""

    @run_async
    async def _init() -> None:
        from attune.db.connection import close_db, init_db

        try:
            with spinner("Initializing database...") as progress:
                progress.add_task("Initializing database...", total=None)
                await init_db()
            success("Database initialized")
        except Exception as e:
            error(f"Initialization failed: {e}")
            print_db_hint()
            raise typer.Exit(code=1) from e
        finally:
            await close_db()

    _init()


@app.command("health")
def health() -> None:
    """Check PostgreSQL connectivity."""

    @run_async
    async def _health() -> None:
        from attune.db.connection import check_postgres_health, close_db

        try:
            status = await check_postgres_health()
        finally:
            await close_db()

        table = create_table("PostgreSQL", "Metric", "Value")
        for key, value in status.items():
            if key == "status":
                color = SUCCESS_GREEN if value == "healthy" else ERROR_RED
                value = f"[{color}]{value}[/{color}]"
            table.add_row(key, str(value))
        console.print(table)
        if status.get("status") != "healthy":
            print_db_hint()
            raise typer.Exit(code=1)

    _health()
