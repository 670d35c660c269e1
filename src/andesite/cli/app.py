"""
Root Typer application for the andesite CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from andesite.cli.db import app as db_app

app = Typer(
    name="andesite",
    help="andesite - relational data-access core.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from andesite import __version__

        typer.echo(f"andesite-core {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """andesite CLI - inspect configured databases."""


app.add_typer(db_app, name="db", help="Database connectivity and inspection.")


if __name__ == "__main__":
    app()
