"""Shared CLI utilities - colors, console, helpers."""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from functools import wraps
from typing import TYPE_CHECKING, ParamSpec, TypeVar
from uuid import UUID

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from attune.service import Pipeline

if TYPE_CHECKING:
    from attune.store.postgres import PostgresStore

# Palette
ELECTRIC_PURPLE = "#e135ff"
NEON_CYAN = "#80ffea"
CORAL = "#ff6ac1"
ELECTRIC_YELLOW = "#f1fa8c"
SUCCESS_GREEN = "#50fa7b"
ERROR_RED = "#ff6363"

console = Console()

P = ParamSpec("P")
R = TypeVar("R")


def success(message: str) -> None:
    """Print a success message."""
    console.print(f"[{SUCCESS_GREEN}]✓[/{SUCCESS_GREEN}] {message}")


def error(message: str) -> None:
    """Print an error message."""
    console.print(f"[{ERROR_RED}]✗[/{ERROR_RED}] {message}")


def warn(message: str) -> None:
    """Print a warning message."""
    console.print(f"[{ELECTRIC_YELLOW}]![/{ELECTRIC_YELLOW}] {message}")


def info(message: str) -> None:
    """Print an info message."""
    console.print(f"[{NEON_CYAN}]→[/{NEON_CYAN}] {message}")


def create_table(title: str | None = None, *columns: str) -> Table:
    """Create a styled table."""
    table = Table(title=title, border_style=NEON_CYAN)
    for i, col in enumerate(columns):
        style = ELECTRIC_PURPLE if i == 0 else NEON_CYAN
        table.add_column(col, style=style)
    return table


def spinner(_description: str = "") -> Progress:
    """Create a spinner progress indicator."""
    return Progress(
        SpinnerColumn(style=NEON_CYAN),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    )


def print_db_hint() -> None:
    """Print a hint about checking the database connection."""
    console.print(
        "[dim]Check that PostgreSQL is reachable (ATTUNE_POSTGRES_HOST/PORT) "
        "and that `attune db init` has run.[/dim]"
    )


def format_status(status: str) -> str:
    """Format a lifecycle status with its color."""
    colors = {
        "pending": ELECTRIC_YELLOW,
        "processing": ELECTRIC_PURPLE,
        "done": SUCCESS_GREEN,
        "accepted": SUCCESS_GREEN,
        "active": SUCCESS_GREEN,
        "warning": ELECTRIC_YELLOW,
        "failed": ERROR_RED,
        "rejected": CORAL,
        "confirmed": SUCCESS_GREEN,
        "ignored": CORAL,
        "low": SUCCESS_GREEN,
        "medium": ELECTRIC_YELLOW,
        "high": CORAL,
        "critical": ERROR_RED,
    }
    color = colors.get(status.lower(), NEON_CYAN)
    return f"[{color}]{status}[/{color}]"


def truncate(text: str, max_length: int = 50) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def parse_id(value: str, label: str = "ID") -> UUID:
    """Parse a UUID argument or exit with an error."""
    try:
        return UUID(value)
    except ValueError:
        error(f"Invalid {label}: {value}")
        raise typer.Exit(code=1) from None


def run_async(func: Callable[P, Awaitable[R]]) -> Callable[P, R]:
    """Decorator to run async functions in sync context (for Typer commands)."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@asynccontextmanager
async def open_pipeline() -> AsyncIterator[Pipeline]:
    """Build a Postgres-backed pipeline for one command and dispose of it after."""
    import httpx

    from attune.db.connection import close_db
    from attune.service import build_pipeline
    from attune.store.postgres import PostgresStore

    async with httpx.AsyncClient() as client:
        try:
            yield build_pipeline(PostgresStore(), client)
        finally:
            await close_db()


@asynccontextmanager
async def open_store() -> AsyncIterator["PostgresStore"]:
    """Postgres store for commands that never call the capability."""
    from attune.db.connection import close_db
    from attune.store.postgres import PostgresStore

    try:
        yield PostgresStore()
    finally:
        await close_db()
