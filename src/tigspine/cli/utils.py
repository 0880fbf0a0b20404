"""
CLI output helpers.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)


def render_table(rows: list[tuple[str, Any]], *, title: str | None = None) -> Table:
    """Two-column key/value table."""
    table = Table(title=title)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in rows:
        table.add_row(key, str(value))
    return table


def status_style(status: str) -> str:
    return {
        "SUCCESS": "green",
        "PARTIAL_SUCCESS": "yellow",
        "FAILED": "red",
    }.get(status, "white")
