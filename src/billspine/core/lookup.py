"""
Point lookups: key → backing record, and the per-scan write flow.

Manifesto:
    A scanned bill key is resolved in the cheapest place that can answer:
    the record cache, then the sorted index, then a full scan of the key
    column. A single scan never raises; every failure becomes a status
    written next to the scanned cell or an outcome returned to the caller.

Architecture:
    ::

        BillLookupService.lookup(key)
          cache rec:<key> ──hit──────────────────────────► LookupResult(source="cache")
             │ miss
             ▼
          SortedIndex.resolve(key) ──index / scan──────► LookupResult(source=via)
             │                                           + cache rec:<key>
             ▼
          LookupResult(source=None)

        ScanProcessor.process(table, row, value)
          blank ──────────────► clear row                        CLEARED
          parse ──fail────────► status malformed                 MALFORMED
          route ──unknown─────► status unknown-station           UNKNOWN_STATION
                ──other table─► move key to target, process it   REDIRECTED
          duplicate ──hit─────► status duplicate, clear row      DUPLICATE
          lookup ──hit────────► mapped block + formula + status  FOUND
                 ──miss───────► status not-found, clear row      NOT_FOUND
          RowStoreError ──────►                                  STORE_UNAVAILABLE

Tags:
    lookup, scan, routing, station, cache, billspine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from billspine.core.cache import TTLCache
from billspine.core.errors import DuplicateKeyError, MalformedKeyError, RowStoreError
from billspine.core.index import SortedIndex
from billspine.core.logging import get_logger
from billspine.core.models import (
    BillKey,
    MappedRecord,
    Record,
    Status,
    TableLayout,
    normalize_key,
)
from billspine.core.rowstore import RowStore, find_row, iter_column, last_populated_row

logger = get_logger(__name__)

FACTORY_STATION_CODE = "000"


@dataclass(frozen=True, slots=True)
class LookupResult:
    """Outcome of :meth:`BillLookupService.lookup`.

    ``source`` is ``"cache"``, ``"index"`` or ``"scan"`` on a hit and
    ``None`` when the key is not in the backing table. ``error`` carries the
    store message when the backing table could not be read.
    """

    key: str
    record: Record | None = None
    mapped: MappedRecord | None = None
    source: str | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.record is not None


class BillLookupService:
    """Resolve bill keys to backing records and their projection."""

    def __init__(self, index: SortedIndex, cache: TTLCache, layout: TableLayout) -> None:
        self.index = index
        self.cache = cache
        self.layout = layout

    def lookup(self, raw_key: object) -> LookupResult:
        """Look up one key. Store failures come back as a miss with ``error`` set."""
        key = normalize_key(raw_key)
        if not key:
            return LookupResult(key)

        cached = self.cache.get_record(key)
        if cached is not None and len(cached) == self.layout.backing_width:
            logger.debug("lookup_cache_hit", key=key)
            return LookupResult(key, cached, self.layout.project(cached), "cache")

        try:
            resolution = self.index.resolve(key)
        except RowStoreError as exc:
            logger.warning("lookup_store_unavailable", key=key, error=exc.message, category=exc.category.value)
            return LookupResult(key, error=exc.message)
        if resolution.record is None:
            logger.debug("lookup_miss", key=key)
            return LookupResult(key)

        self.cache.put_record(key, resolution.record)
        logger.debug("lookup_hit", key=key, via=resolution.via, row=resolution.ref.row if resolution.ref else None)
        return LookupResult(key, resolution.record, self.layout.project(resolution.record), resolution.via)


class StationResolver:
    """Map a station code to the name of its downstream table.

    The station name is taken from the station column of the first backing
    row whose key contains ``<code>/``. Resolved names are cached.
    """

    def __init__(self, store: RowStore, cache: TTLCache, layout: TableLayout) -> None:
        self.store = store
        self.cache = cache
        self.layout = layout

    def resolve(self, code: str) -> str | None:
        cached = self.cache.get_station(code)
        if cached:
            return cached

        layout = self.layout
        pattern = re.compile(rf".*{re.escape(code)}/.*")
        row = find_row(
            self.store,
            layout.backing_table,
            layout.backing_key_col,
            lambda cell: pattern.fullmatch(cell) is not None,
            start_row=layout.data_start_row,
            chunk=layout.read_chunk,
        )
        if row is None:
            return None

        name = normalize_key(self.store.read(layout.backing_table, row, layout.backing_station_col, 1, 1)[0][0])
        if not name:
            return None
        self.cache.put_station(code, name)
        return name


class ScanOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not-found"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"
    UNKNOWN_STATION = "unknown-station"
    REDIRECTED = "redirected"
    CLEARED = "cleared"
    IGNORED = "ignored"
    STORE_UNAVAILABLE = "store-unavailable"


@dataclass(frozen=True, slots=True)
class ScanResult:
    """Outcome of one processed scan.

    Attributes:
        outcome: What happened to the scanned row.
        table: Table the outcome applies to (the target table when redirected).
        row: Row the outcome applies to.
        key: Normalized scanned key.
        mapped: Projected record written on ``FOUND``.
        existing_row: Row already holding the key on ``DUPLICATE``.
        forwarded: Result of processing the key in the target table on ``REDIRECTED``.
        error: Store error message on ``STORE_UNAVAILABLE``.
    """

    outcome: ScanOutcome
    table: str
    row: int
    key: str = ""
    mapped: MappedRecord | None = None
    existing_row: int | None = None
    forwarded: ScanResult | None = None
    error: str | None = None


class ScanProcessor:
    """Apply one scanned key to a downstream table row.

    Args:
        store: Row store holding all tables.
        lookup: Lookup service for backing records.
        stations: Station code resolver.
        cache: Cache for per-table last populated rows.
        layout: Table layout.
        route_by_station: Move keys into their station's table when scanned elsewhere.
    """

    def __init__(
        self,
        store: RowStore,
        lookup: BillLookupService,
        stations: StationResolver,
        cache: TTLCache,
        layout: TableLayout,
        *,
        route_by_station: bool = True,
    ) -> None:
        self.store = store
        self.lookup = lookup
        self.stations = stations
        self.cache = cache
        self.layout = layout
        self.route_by_station = route_by_station

    def process(self, table: str, row: int, raw_value: object) -> ScanResult:
        layout = self.layout
        value = normalize_key(raw_value)
        if row < layout.data_start_row or table in (layout.backing_table, layout.index_table):
            return ScanResult(ScanOutcome.IGNORED, table, row, value)

        try:
            return self._process(table, row, value)
        except RowStoreError as exc:
            logger.warning("scan_store_unavailable", **exc.to_dict())
            return ScanResult(ScanOutcome.STORE_UNAVAILABLE, table, row, value, error=exc.message)

    def _process(self, table: str, row: int, value: str) -> ScanResult:
        if not value:
            self._clear_mapped(table, row)
            self._clear_cells(table, row, self.layout.money_col, self.layout.status_col)
            return ScanResult(ScanOutcome.CLEARED, table, row)

        try:
            key = BillKey.parse(value)
        except MalformedKeyError:
            self._write_status(table, row, Status.MALFORMED)
            return ScanResult(ScanOutcome.MALFORMED, table, row, value)

        if self.route_by_station:
            target = self.route(key)
            if target is None:
                self._write_status(table, row, Status.UNKNOWN_STATION)
                logger.info("scan_unknown_station", key=key.value, station_code=key.station_code)
                return ScanResult(ScanOutcome.UNKNOWN_STATION, table, row, key.value)
            if target != table:
                return self._redirect(table, row, key, target)

        try:
            self.check_duplicate(table, row, key)
        except DuplicateKeyError as exc:
            self._write_status(table, row, Status.DUPLICATE)
            self._clear_mapped(table, row)
            return ScanResult(ScanOutcome.DUPLICATE, table, row, key.value, existing_row=exc.existing_row)

        result = self.lookup.lookup(key.value)
        if result.error is not None:
            return ScanResult(ScanOutcome.STORE_UNAVAILABLE, table, row, key.value, error=result.error)
        if not result.found:
            self._write_status(table, row, Status.NOT_FOUND)
            self._clear_mapped(table, row)
            return ScanResult(ScanOutcome.NOT_FOUND, table, row, key.value)

        self.store.write(table, row, 1, [list(result.mapped or ())])
        self.store.write_formulas(table, row, self.layout.money_col, [self.layout.money_formula])
        self._write_status(table, row, Status.FOUND)
        self.cache.invalidate_last_row(table)
        return ScanResult(ScanOutcome.FOUND, table, row, key.value, mapped=result.mapped)

    def route(self, key: BillKey) -> str | None:
        """Destination table for *key*, or ``None`` for an unknown station."""
        if key.station_code == FACTORY_STATION_CODE:
            return self.layout.factory_table
        return self.stations.resolve(key.station_code)

    def check_duplicate(self, table: str, row: int, key: BillKey) -> None:
        """Raise if another row of *table* already holds *key*.

        Raises:
            DuplicateKeyError: With ``existing_row`` set to the first such row.
        """
        layout = self.layout
        last = self.store.last_row(table)
        for other, cell in iter_column(
            self.store, table, layout.duplicate_col, layout.data_start_row, last, chunk=layout.read_chunk
        ):
            if other != row and normalize_key(cell) == key.value:
                raise DuplicateKeyError(
                    f"bill key {key.value!r} already recorded", existing_row=other
                ).with_context(table=table, row=row, key=key.value)

    def next_free_row(self, table: str) -> int:
        """Row just below the last populated barcode cell of *table*."""
        layout = self.layout
        last = self.cache.get_last_row(table)
        if last is None:
            last = last_populated_row(self.store, table, layout.barcode_col, tail=layout.tail_rows)
            self.cache.put_last_row(table, last)
        return max(last + 1, layout.data_start_row)

    def _redirect(self, table: str, row: int, key: BillKey, target: str) -> ScanResult:
        layout = self.layout
        if not self.store.has_table(target):
            logger.warning("scan_target_missing", key=key.value, target=target)
            return ScanResult(
                ScanOutcome.STORE_UNAVAILABLE, target, 0, key.value, error=f"table {target!r} does not exist"
            )

        self._clear_cells(table, row, layout.barcode_col, layout.status_col)
        target_row = self.next_free_row(target)
        self.store.write(target, target_row, layout.barcode_col, [[key.value]])
        self.cache.invalidate_last_row(target)
        logger.info("scan_redirected", key=key.value, source=table, target=target, row=target_row)

        forwarded = self._process(target, target_row, key.value)
        return ScanResult(ScanOutcome.REDIRECTED, target, target_row, key.value, forwarded=forwarded)

    def _write_status(self, table: str, row: int, status: Status) -> None:
        self.store.write(table, row, self.layout.status_col, [[status.value]])

    def _clear_mapped(self, table: str, row: int) -> None:
        self.store.clear(table, row, 1, 1, self.layout.mapped_width)

    def _clear_cells(self, table: str, row: int, *cols: int) -> None:
        for col in cols:
            self.store.clear(table, row, col, 1, 1)


__all__ = [
    "FACTORY_STATION_CODE",
    "BillLookupService",
    "LookupResult",
    "ScanOutcome",
    "ScanProcessor",
    "ScanResult",
    "StationResolver",
]
