"""
CLI: ``andesite db`` - connectivity and schema inspection.
"""

from __future__ import annotations

import typer

from andesite.cli.utils import err_console, output_rows, run_with_registry
from andesite.core.errors import AndesiteError
from andesite.core.registry import ConnectionRegistry
from andesite.core.settings import AndesiteSettings

app = typer.Typer(no_args_is_help=True)


@app.command()
def check(
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Connect every configured database and report the result."""

    async def _check(registry: ConnectionRegistry, settings: AndesiteSettings) -> list[dict]:
        rows = []
        for name in registry.names():
            status = "connected"
            try:
                await registry.connect(name)
            except AndesiteError as e:
                status = f"failed: {e.key}"
            rows.append(
                {
                    "database": name,
                    "dialect": registry.entry(name).kind.value,
                    "status": status,
                }
            )
        return rows

    rows = run_with_registry(_check, connect=False)
    output_rows(rows, as_json=json_out, title="Databases")
    if not rows:
        err_console.print("[yellow]No databases configured (ANDESITE_DATABASES__<NAME>__DIALECT).[/yellow]")
    if any(row["status"] != "connected" for row in rows):
        raise typer.Exit(code=1)


@app.command()
def tables(
    database: str = typer.Argument(..., help="Registered database name"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """List reflected tables with their primary keys."""

    async def _tables(registry: ConnectionRegistry, settings: AndesiteSettings) -> list[dict]:
        handle = registry.get(database)
        rows = []
        for name in handle.table_names():
            schema = await handle.get_table(name)
            rows.append(
                {
                    "table": name,
                    "primary_key": schema.primary_key.column,
                    "columns": len(schema.column_kinds),
                }
            )
        return rows

    output_rows(run_with_registry(_tables), as_json=json_out, title=f"Tables in {database}")


@app.command()
def count(
    database: str = typer.Argument(..., help="Registered database name"),
    table: str = typer.Argument(..., help="Table name"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Count the rows of a table."""

    async def _count(registry: ConnectionRegistry, settings: AndesiteSettings) -> int:
        repo = registry.get(database).get_repository(table, default_limit=settings.default_limit)
        return await repo.count()

    total = run_with_registry(_count)
    output_rows([{"database": database, "table": table, "rows": total}], as_json=json_out, title="Row count")
