"""
CLI: ``billspine reconcile`` — batch reconciliation.
"""

from __future__ import annotations

import typer

from billspine.cli.utils import build_services, output

app = typer.Typer(no_args_is_help=True)


@app.command()
def run(
    budget: float | None = typer.Option(None, "--budget", help="Wall-clock budget in seconds"),
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Fill unresolved downstream rows from the backing table."""
    services = build_services(database)
    try:
        report = services.reconciliation(budget).run()
    finally:
        services.conn.close()
    output(report, as_json=json_out, title="Reconciliation")
    if report.errors:
        raise typer.Exit(code=1)
