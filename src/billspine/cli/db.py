"""
CLI: ``billspine db`` — row store database management commands.
"""

from __future__ import annotations

import csv
from pathlib import Path

import typer

from billspine.cli.utils import build_services, output
from billspine.core.logging import get_logger

app = typer.Typer(no_args_is_help=True)

logger = get_logger(__name__)


@app.command()
def init(
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Initialise the row store and cache schema, and the fixed tables."""
    services = build_services(database)
    layout = services.layout
    for name in (layout.backing_table, layout.factory_table):
        services.store.create_table(name)
    names = services.store.table_names()
    services.conn.close()
    output({"tables": names}, as_json=json_out, title="Database Init")


@app.command("import-csv")
def import_csv(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV file to load"),
    table: str = typer.Option(..., "--table", "-t", help="Destination table"),
    start_row: int = typer.Option(1, "--start-row", min=1, help="Row receiving the first CSV line"),
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Load a CSV file into a table, one CSV line per row."""
    services = build_services(database)
    store = services.store
    chunk = services.layout.write_chunk
    store.create_table(table)

    with path.open(newline="", encoding="utf-8") as fh:
        rows = list(csv.reader(fh))
    for offset in range(0, len(rows), chunk):
        store.write(table, start_row + offset, 1, rows[offset : offset + chunk])

    services.conn.close()
    logger.info("csv_imported", table=table, rows=len(rows), path=str(path))
    output({"table": table, "rows": len(rows), "start_row": start_row}, as_json=json_out, title="Import")


@app.command()
def tables(
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """List tables with their last populated row."""
    services = build_services(database)
    store = services.store
    items = [{"table": name, "last_row": store.last_row(name)} for name in store.table_names()]
    services.conn.close()
    output(items, as_json=json_out, title="Tables")
