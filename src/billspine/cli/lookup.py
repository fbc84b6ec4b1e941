"""
CLI: ``billspine lookup`` and ``billspine scan`` — point lookups.
"""

from __future__ import annotations

import typer

from billspine.cli.utils import build_services, err_console, fail, output
from billspine.core.errors import BillSpineError


def lookup(
    key: str = typer.Argument(..., help="Bill key, e.g. ABC123/7"),
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Look up one bill key and print its projected record."""
    services = build_services(database)
    try:
        result = services.lookup.lookup(key)
    except BillSpineError as exc:
        fail(exc)
        return
    finally:
        services.conn.close()

    if result.error is not None:
        err_console.print(f"[bold red]Error[/bold red]: {result.error}")
        raise typer.Exit(code=1)
    if not result.found:
        err_console.print(f"[yellow]not found[/yellow]: {result.key}")
        raise typer.Exit(code=1)
    output(
        {"key": result.key, "source": result.source, "mapped": list(result.mapped or ())},
        as_json=json_out,
        title="Lookup",
    )


def scan(
    table: str = typer.Argument(..., help="Downstream table the key was scanned into"),
    row: int = typer.Argument(..., help="Row of the scanned cell (1-based)"),
    value: str = typer.Argument(..., help="Scanned value"),
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Apply one scanned key to a downstream table row."""
    services = build_services(database)
    try:
        result = services.scanner.process(table, row, value)
    finally:
        services.conn.close()
    output(result, as_json=json_out, title="Scan")
