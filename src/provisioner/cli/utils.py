"""
CLI utility helpers: output formatting and session management.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from provisioner.core.config import get_settings
from provisioner.core.errors import ProvisionerError
from provisioner.persistence.dbsession import DBSession

console = Console()
err_console = Console(stderr=True)


# ── Session helper ───────────────────────────────────────────────────────


def get_session(database_url: str | None = None, *, create_schema: bool = False) -> DBSession:
    """Open a :class:`DBSession`. Defaults to ``PROVISIONER_DATABASE_URL``."""
    settings = get_settings()
    return DBSession.from_url(
        database_url or settings.database_url,
        echo=settings.database_echo,
        create_schema=create_schema,
    )


def fail(error: ProvisionerError | str) -> None:
    """Print *error* to stderr and exit with code 1."""
    message = error.message if isinstance(error, ProvisionerError) else error
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def output_record(data: dict[str, Any], *, as_json: bool = False, title: str = "") -> None:
    """Render a single record as JSON or key-value pairs."""
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")


def output_records(items: list[dict[str, Any]], *, as_json: bool = False, title: str = "") -> None:
    """Render a list of records as JSON or a Rich table."""
    if as_json:
        console.print_json(json.dumps(items, default=str))
        return
    if not items:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in items[0]:
        table.add_column(col, overflow="fold")
    for item in items:
        table.add_row(*("" if v is None else str(v) for v in item.values()))
    console.print(table)
