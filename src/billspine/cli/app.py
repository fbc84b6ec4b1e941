"""
Root Typer application for the billspine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="billspine",
    help="billspine — bill key lookup and reconciliation.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from billspine import __version__

        typer.echo(f"billspine {__version__}")
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
    """billspine CLI — index, look up, scan and reconcile bill keys."""


# ── Sub-command registration ─────────────────────────────────────────────

from billspine.cli.db import app as db_app  # noqa: E402
from billspine.cli.index import app as index_app  # noqa: E402
from billspine.cli.lookup import lookup, scan  # noqa: E402
from billspine.cli.reconcile import app as reconcile_app  # noqa: E402

app.add_typer(db_app, name="db", help="Row store database operations.")
app.add_typer(index_app, name="index", help="Sorted index maintenance.")
app.add_typer(reconcile_app, name="reconcile", help="Batch reconciliation.")
app.command()(lookup)
app.command()(scan)
