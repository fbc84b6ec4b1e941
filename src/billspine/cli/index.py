"""
CLI: ``billspine index`` — sorted index maintenance.
"""

from __future__ import annotations

import typer

from billspine.cli.utils import build_services, fail, output
from billspine.core.errors import BillSpineError

app = typer.Typer(no_args_is_help=True)


@app.command()
def rebuild(
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Rebuild the sorted index from the backing table."""
    services = build_services(database)
    try:
        result = services.index.rebuild()
    except BillSpineError as exc:
        fail(exc)
        return
    finally:
        services.conn.close()
    output(
        {"entries": result.entries, "chunks": result.chunks, "duplicates": result.duplicates},
        as_json=json_out,
        title="Index Rebuild",
    )


@app.command()
def clear(
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
) -> None:
    """Drop the cached index metadata so lookups fall back to scanning."""
    services = build_services(database)
    services.cache.clear_index_meta()
    services.conn.close()
    typer.echo("index metadata cleared")
