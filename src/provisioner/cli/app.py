"""
Root Typer application for the provisioner CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from provisioner.core.config import get_settings
from provisioner.core.logging import configure_logging

app = Typer(
    name="provisioner",
    help="provisioner: staged, crash-resumable cluster operations.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("provisioner-core")
        except PackageNotFoundError:
            from provisioner import __version__ as v
        typer.echo(f"provisioner {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """provisioner CLI: inspect operations and manage the database."""
    settings = get_settings()
    configure_logging(level=settings.log_level, format=settings.log_format.value)


# ── Sub-command registration ─────────────────────────────────────────────

from provisioner.cli.db import app as db_app  # noqa: E402
from provisioner.cli.operations import app as operations_app  # noqa: E402

app.add_typer(db_app, name="db", help="Database operations.")
app.add_typer(operations_app, name="operations", help="Operation inspection.")


if __name__ == "__main__":
    app()
