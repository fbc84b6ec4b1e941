"""
Shared pytest fixtures for billspine tests.

This module provides:
- A manual clock for deterministic TTL and budget tests
- A small-stride table layout so multi-chunk paths run on a few rows
- A backing table seeded with bill records for three stations
- A fully wired service bundle (store, cache, index, lookup, scanner)

Usage:
    def test_lookup(services):
        services.index.rebuild()
        assert services.lookup.lookup("NTH101/2").found
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import pytest
import structlog

from billspine.core.cache import InMemoryCache, TTLCache
from billspine.core.index import SortedIndex
from billspine.core.lookup import BillLookupService, ScanProcessor, StationResolver
from billspine.core.models import TableLayout
from billspine.core.rowstore import InMemoryRowStore
from billspine.core.settings import clear_settings_cache

# key -> station name, in backing row order (rows 3..10)
BACKING_KEYS: list[tuple[str, str]] = [
    ("NTH101/1", "North"),
    ("NTH101/2", "North"),
    ("STH202/1", "South"),
    ("NTH101/3", "North"),
    ("FAC000/1", "Factory"),
    ("STH202/2", "South"),
    ("NTH101/4", "North"),
    ("STH202/3", "South"),
]


class ManualClock:
    """Callable clock advanced explicitly by tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_record(key: str, station: str, width: int = 14) -> list[Any]:
    """A backing row with recognisable values in every projected column."""
    record: list[Any] = [""] * width
    record[0] = f"INV-{key}"
    record[2] = key
    record[4] = station
    record[5] = f"customer {key}"
    record[6] = "parcel"
    record[9] = 4
    record[10] = "kg"
    record[11] = "express"
    record[12] = 1.5
    record[13] = "ok"
    return record


def seed_table(store: InMemoryRowStore, layout: TableLayout, table: str, rows: list[list[Any]]) -> None:
    """Create *table* with header rows and write *rows* from the first data row."""
    store.create_table(table)
    for header in range(1, layout.header_rows + 1):
        store.write(table, header, 1, [[f"header {header}"]])
    if rows:
        store.write(table, layout.data_start_row, 1, rows)


def scan_row(layout: TableLayout, key: str, status: str = "") -> list[Any]:
    """Downstream row holding only a scanned key and an optional status."""
    row: list[Any] = [""] * layout.status_col
    row[layout.barcode_col - 1] = key
    row[layout.status_col - 1] = status
    return row


@dataclass
class Services:
    store: InMemoryRowStore
    cache: TTLCache
    index: SortedIndex
    lookup: BillLookupService
    stations: StationResolver
    scanner: ScanProcessor
    layout: TableLayout
    clock: ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def layout() -> TableLayout:
    """Default column layout with chunks small enough to split eight rows."""
    return TableLayout(index_stride=3, read_chunk=3, write_chunk=2, tail_rows=4)


@pytest.fixture
def store(layout: TableLayout) -> InMemoryRowStore:
    """Backing table seeded with :data:`BACKING_KEYS` plus empty station tables."""
    s = InMemoryRowStore()
    seed_table(s, layout, layout.backing_table, [make_record(k, st) for k, st in BACKING_KEYS])
    for name in ("North", "South", layout.factory_table):
        seed_table(s, layout, name, [])
    s.reset_calls()
    return s


@pytest.fixture
def cache(clock: ManualClock) -> TTLCache:
    return TTLCache(InMemoryCache(clock=clock))


@pytest.fixture
def services(store: InMemoryRowStore, cache: TTLCache, layout: TableLayout, clock: ManualClock) -> Services:
    index = SortedIndex(store, cache, layout)
    lookup = BillLookupService(index, cache, layout)
    stations = StationResolver(store, cache, layout)
    scanner = ScanProcessor(store, lookup, stations, cache, layout)
    return Services(store, cache, index, lookup, stations, scanner, layout, clock)


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch):
    """Keep BILLSPINE_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("BILLSPINE_"):
            monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Drop any logging configuration a CLI invocation installed."""
    yield
    structlog.reset_defaults()
