"""
CLI utility helpers: output formatting and service wiring.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from billspine.core.cache import TTLCache, create_cache
from billspine.core.errors import BillSpineError
from billspine.core.index import SortedIndex
from billspine.core.logging import configure_logging
from billspine.core.lookup import BillLookupService, ScanProcessor, StationResolver
from billspine.core.models import TableLayout
from billspine.core.reconcile import ReconciliationEngine
from billspine.core.rowstore import SqliteRowStore
from billspine.core.settings import BillSpineSettings, get_settings

console = Console()
err_console = Console(stderr=True)


# ── Service wiring ───────────────────────────────────────────────────────


@dataclass
class Services:
    """Everything a command needs, built over one SQLite connection."""

    settings: BillSpineSettings
    layout: TableLayout
    conn: sqlite3.Connection
    store: SqliteRowStore
    cache: TTLCache
    index: SortedIndex
    lookup: BillLookupService
    scanner: ScanProcessor

    def reconciliation(self, budget_seconds: float | None = None) -> ReconciliationEngine:
        budget = self.settings.reconcile_budget_seconds if budget_seconds is None else budget_seconds
        return ReconciliationEngine(
            self.store,
            self.index,
            self.layout,
            budget_seconds=budget,
            fetch_max_gap=self.settings.fetch_max_gap,
            fetch_max_span=self.settings.fetch_max_span,
            write_max_span=self.settings.write_max_span,
        )


def get_connection(database: str | None = None) -> sqlite3.Connection:
    """Open the SQLite row store. Defaults to ``settings.database``."""
    return sqlite3.connect(database or get_settings().database)


def build_services(database: str | None = None) -> Services:
    settings = get_settings()
    # stderr can be swapped between in-process invocations
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json", cache_loggers=False)

    layout = settings.layout()
    conn = get_connection(database)
    store = SqliteRowStore(conn)
    store.ensure_schema()
    cache = create_cache(settings, conn)
    index = SortedIndex(store, cache, layout)
    lookup = BillLookupService(index, cache, layout)
    scanner = ScanProcessor(
        store,
        lookup,
        StationResolver(store, cache, layout),
        cache,
        layout,
        route_by_station=settings.route_by_station,
    )
    return Services(settings, layout, conn, store, cache, index, lookup, scanner)


def fail(exc: BillSpineError) -> None:
    """Print a core error and exit with status 1."""
    err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a result object or list of rows to the terminal."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list) else _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(data, title=title)
    else:
        _print_dict(_to_dict(data), title=title)


def _print_table(items: list, *, title: str = "") -> None:
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        table.add_row(*(str(v) for v in _to_dict(item).values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
