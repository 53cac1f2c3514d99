"""
CLI utility helpers: output formatting and error exits.
"""

from __future__ import annotations

import json
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from keel.core.errors import KeelError

console = Console()
err_console = Console(stderr=True)


def fail(message: str, *, code: int = 1) -> NoReturn:
    """Print an error to stderr and exit."""
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(code=code)


def fail_from(error: KeelError) -> NoReturn:
    """Exit with a keel error, showing its category."""
    fail(f"({error.category.value}) {error.message}")


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_table(
    rows: list[dict[str, Any]],
    *,
    title: str = "",
    columns: list[str] | None = None,
) -> None:
    """Render a list of dicts as a Rich table."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    columns = columns or list(rows[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in columns:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(str(row.get(col, "")) for col in columns))
    console.print(table)
