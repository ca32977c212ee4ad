"""
CLI: ``provisioner operations``: inspect persisted operations.
"""

from __future__ import annotations

import typer

from provisioner.cli.utils import fail, get_session, output_record, output_records
from provisioner.core.errors import DatabaseError

app = typer.Typer(no_args_is_help=True)

_DatabaseUrl = typer.Option(None, "--database-url", "-d", help="SQLAlchemy database URL")


@app.command("status")
def status(
    operation_id: str = typer.Argument(..., help="Operation ID"),
    database_url: str | None = _DatabaseUrl,
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Show the state, stage and message of one operation."""
    try:
        operation = get_session(database_url).get_operation(operation_id)
    except DatabaseError as exc:
        fail(exc)
        return
    output_record(operation.to_dict(), as_json=json_out, title=f"Operation {operation_id}")


@app.command("list")
def list_operations(
    database_url: str | None = _DatabaseUrl,
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """List operations that are still in progress."""
    try:
        operations = get_session(database_url).list_in_progress_operations()
    except DatabaseError as exc:
        fail(exc)
        return
    output_records([op.to_dict() for op in operations], as_json=json_out, title="In-progress operations")


@app.command("last")
def last(
    cluster_id: str = typer.Argument(..., help="Cluster (runtime) ID"),
    database_url: str | None = _DatabaseUrl,
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Show the most recently started operation of a cluster."""
    try:
        operation = get_session(database_url).get_last_operation(cluster_id)
    except DatabaseError as exc:
        fail(exc)
        return
    output_record(operation.to_dict(), as_json=json_out, title=f"Last operation of {cluster_id}")


@app.command("upgrade")
def upgrade(
    operation_id: str = typer.Argument(..., help="Upgrade operation ID"),
    database_url: str | None = _DatabaseUrl,
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Show the runtime upgrade record of an upgrade operation."""
    try:
        runtime_upgrade = get_session(database_url).get_runtime_upgrade(operation_id)
    except DatabaseError as exc:
        fail(exc)
        return
    output_record(runtime_upgrade.to_dict(), as_json=json_out, title=f"Runtime upgrade {runtime_upgrade.id}")
