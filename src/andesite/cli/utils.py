"""
CLI utility helpers - settings, registry bootstrap and output formatting.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from andesite.core.errors import AndesiteError
from andesite.core.logging import configure_logging
from andesite.core.registry import ConnectionRegistry, bootstrap_registry
from andesite.core.settings import AndesiteSettings

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)


# ── Registry helper ──────────────────────────────────────────────────────


def load_settings() -> AndesiteSettings:
    settings = AndesiteSettings()
    configure_logging(level=settings.log_level, json_format=settings.log_json, service=settings.service_name)
    return settings


def run_with_registry(
    fn: Callable[[ConnectionRegistry, AndesiteSettings], Awaitable[T]],
    *,
    connect: bool = True,
) -> T:
    """Boot a registry from settings, run ``fn`` and always close it.

    Any AndesiteError is printed and turned into exit code 1.
    """
    settings = load_settings()

    async def _main() -> T:
        registry = ConnectionRegistry()
        try:
            await bootstrap_registry(settings, registry, connect=connect)
            return await fn(registry, settings)
        finally:
            await registry.close()

    try:
        return asyncio.run(_main())
    except AndesiteError as e:
        fail(e)


def fail(error: AndesiteError) -> None:
    err_console.print(f"[bold red]Error[/bold red] ({error.key}): {error.message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def output_rows(rows: list[dict[str, Any]], *, as_json: bool = False, title: str = "") -> None:
    """Render a list of dicts as a rich table or JSON."""
    if as_json:
        console.print_json(json.dumps(rows, default=str))
        return
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None)
    columns = list(rows[0].keys())
    for column in columns:
        table.add_column(str(column))
    for row in rows:
        table.add_row(*[str(row.get(column, "")) for column in columns])
    console.print(table)
