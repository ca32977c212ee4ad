"""
CLI: ``provisioner db``: database management commands.
"""

from __future__ import annotations

import typer

from provisioner.cli.utils import console, fail, get_session
from provisioner.core.errors import DatabaseError

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    database_url: str | None = typer.Option(None, "--database-url", "-d", help="SQLAlchemy database URL"),
) -> None:
    """Initialise database schema (create tables)."""
    try:
        session = get_session(database_url, create_schema=True)
    except DatabaseError as exc:
        fail(exc)
        return
    console.print(f"[green]Schema ready[/green] ({session.engine.url.render_as_string(hide_password=True)})")
