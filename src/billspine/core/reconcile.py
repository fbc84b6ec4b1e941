"""
Batch reconciliation: fill every unresolved downstream row from the backing table.

Manifesto:
    Downstream tables accumulate scanned keys whose records were not yet in
    the backing table, or whose lookups failed. The reconciliation job
    revisits them all in one pass. Row-store calls dominate its cost, so
    it works in three phases that minimise the number of calls:

    - **Scan:** read only the barcode and status columns of each table
    - **Global fetch:** every backing row needed anywhere is read once
    - **Write-back:** contiguous destination rows are written in one call

    The job runs under a wall-clock budget and stops cleanly between units
    of work. Completed writes are kept; the next run picks up the rest
    because settled rows (``found``, ``duplicate``) are skipped.

Architecture:
    ::

        key map (persisted index, else backing key column)
              │
        Phase 1  per table: read [barcode | status] rows data_start..last
              │   classify → to_fetch / not_found / malformed
              │   source_rows = ∪ to_fetch.source_row
              ▼
        Phase 2  group_source_rows(sorted(source_rows))
              │   one backing read per group → {key: mapped record}
              │   row holds another key → relocate via backing key column
              ▼
        Phase 3  per table: group_contiguous(to_fetch)
                  write mapped block │ money formulas │ status block
                  group_contiguous(not_found), group_contiguous(malformed)

Guardrails:
    ❌ DON'T: read the backing table once per destination row
    ✅ DO:    collect source rows across all tables, then fetch in groups

    ❌ DON'T: trust the key map when writing a record
    ✅ DO:    compare the fetched row's key; relocate or mark not-found

    ❌ DON'T: abort the whole job when one table fails
    ✅ DO:    record the failure under ``report.errors[table]`` and continue

Tags:
    reconciliation, batch, bulk-io, budget, grouping, billspine

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from billspine.core.errors import MalformedKeyError, RowStoreError
from billspine.core.grouping import group_contiguous, group_source_rows
from billspine.core.index import SortedIndex
from billspine.core.logging import LogContext, get_logger
from billspine.core.models import BillKey, MappedRecord, Status, TableLayout, normalize_key
from billspine.core.rowstore import RowStore, last_populated_row
from billspine.core.timing import WallClockBudget, log_step

logger = get_logger(__name__)

SETTLED_STATUSES = frozenset(status.value for status in Status if status.is_settled)


def _row(item: int) -> int:
    return item


@dataclass(frozen=True, slots=True)
class FetchTask:
    """A destination row whose key was found in the key map."""

    dest_row: int
    key: str
    source_row: int


@dataclass
class ReconciliationTask:
    """Work found in one downstream table during the scan phase."""

    table: str
    to_fetch: list[FetchTask] = field(default_factory=list)
    not_found: list[int] = field(default_factory=list)
    malformed: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_fetch or self.not_found or self.malformed)


@dataclass
class ReconciliationReport:
    """Summary of one reconciliation run."""

    run_id: str
    key_map_source: str | None = None
    tables_scanned: int = 0
    tables_written: int = 0
    rows_found: int = 0
    rows_not_found: int = 0
    rows_malformed: int = 0
    source_rows: int = 0
    stale_keys: int = 0
    fetch_calls: int = 0
    write_calls: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    budget_exceeded: bool = False
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.errors and not self.budget_exceeded

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReconciliationEngine:
    """Three-phase reconciliation of downstream tables against the backing table.

    Args:
        store: Row store holding every table.
        index: Sorted index supplying the key → backing row map.
        layout: Table layout.
        budget_seconds: Wall-clock budget for the whole run.
        fetch_max_gap: Largest run of unneeded rows read inside one fetch group.
        fetch_max_span: Most rows read by one fetch call.
        write_max_span: Most rows written by one write call.
        clock: Monotonic clock, injectable for tests.

    Usage:
        engine = ReconciliationEngine(store, index, layout, budget_seconds=300)
        report = engine.run()
        if report.budget_exceeded:
            schedule_followup()
    """

    def __init__(
        self,
        store: RowStore,
        index: SortedIndex,
        layout: TableLayout,
        *,
        budget_seconds: float = 300.0,
        fetch_max_gap: int = 20,
        fetch_max_span: int = 500,
        write_max_span: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.index = index
        self.layout = layout
        self.budget_seconds = budget_seconds
        self.fetch_max_gap = fetch_max_gap
        self.fetch_max_span = fetch_max_span
        self.write_max_span = write_max_span
        self.clock = clock

    def run(self) -> ReconciliationReport:
        run_id = f"rec_{uuid.uuid4().hex[:12]}"
        report = ReconciliationReport(run_id=run_id)
        budget = WallClockBudget(self.budget_seconds, clock=self.clock)

        with LogContext(run_id=run_id):
            logger.info("reconcile_started", budget_seconds=self.budget_seconds)
            self._run(budget, report)
            report.elapsed_seconds = round(budget.elapsed, 3)
            logger.info(
                "reconcile_finished",
                rows_found=report.rows_found,
                rows_not_found=report.rows_not_found,
                rows_malformed=report.rows_malformed,
                fetch_calls=report.fetch_calls,
                write_calls=report.write_calls,
                errors=len(report.errors),
                budget_exceeded=report.budget_exceeded,
                elapsed_seconds=report.elapsed_seconds,
            )
        return report

    def _run(self, budget: WallClockBudget, report: ReconciliationReport) -> None:
        if not self._within_budget(budget, report, phase="key_map"):
            return
        try:
            key_map, report.key_map_source = self.index.key_map()
        except RowStoreError as exc:
            report.errors[self.layout.backing_table] = exc.message
            logger.error("reconcile_key_map_failed", **exc.to_dict())
            return

        tasks = self.scan_tables(key_map, budget, report)
        if report.budget_exceeded:
            return

        wanted = {task.key: task.source_row for t in tasks for task in t.to_fetch}
        records, missing = self.fetch_records(wanted, budget, report)
        if report.budget_exceeded:
            return

        self.write_back(tasks, records, missing, budget, report)

    # -- phase 1 -------------------------------------------------------------

    def downstream_tables(self) -> list[str]:
        skip = {self.layout.backing_table, self.layout.index_table}
        return [name for name in self.store.table_names() if name not in skip]

    def scan_tables(
        self, key_map: dict[str, int], budget: WallClockBudget, report: ReconciliationReport
    ) -> list[ReconciliationTask]:
        tasks: list[ReconciliationTask] = []
        with log_step("reconcile.scan") as timer:
            for table in self.downstream_tables():
                if not self._within_budget(budget, report, phase="scan", table=table):
                    break
                try:
                    task = self.scan_table(table, key_map)
                except RowStoreError as exc:
                    self._record_table_error(report, table, exc)
                    continue
                report.tables_scanned += 1
                if not task.is_empty:
                    tasks.append(task)
            timer.add_metric("tables", report.tables_scanned)
            timer.add_metric("tasks", sum(len(t.to_fetch) for t in tasks))
        return tasks

    def scan_table(self, table: str, key_map: dict[str, int]) -> ReconciliationTask:
        """Classify the unsettled rows of one downstream table.

        Raises:
            RowStoreError: If the table cannot be read.
        """
        layout = self.layout
        task = ReconciliationTask(table)
        last = last_populated_row(self.store, table, layout.barcode_col, tail=layout.tail_rows)
        if last < layout.data_start_row:
            return task

        first_col = min(layout.barcode_col, layout.status_col)
        width = abs(layout.status_col - layout.barcode_col) + 1
        key_at = layout.barcode_col - first_col
        status_at = layout.status_col - first_col

        block = self.store.read(table, layout.data_start_row, first_col, last - layout.data_start_row + 1, width)
        for offset, cells in enumerate(block):
            row = layout.data_start_row + offset
            key = normalize_key(cells[key_at])
            if not key or normalize_key(cells[status_at]) in SETTLED_STATUSES:
                continue
            try:
                BillKey.parse(key)
            except MalformedKeyError:
                task.malformed.append(row)
                continue
            source_row = key_map.get(key)
            if source_row is None:
                task.not_found.append(row)
            else:
                task.to_fetch.append(FetchTask(row, key, source_row))
        return task

    # -- phase 2 -------------------------------------------------------------

    def fetch_records(
        self, wanted: dict[str, int], budget: WallClockBudget, report: ReconciliationReport
    ) -> tuple[dict[str, MappedRecord], set[str]]:
        """Read every needed backing row once, in grouped bulk reads.

        Each fetched row is checked against the key that mapped to it. Keys
        whose row now holds another key are relocated through one read of
        the backing key column and fetched again.

        Args:
            wanted: Key → backing row, as taken from the key map.

        Returns:
            ``(records, missing)``: mapped records by key, and the keys that
            are no longer in the backing table at all.
        """
        report.source_rows = len(set(wanted.values()))
        with log_step("reconcile.fetch", source_rows=report.source_rows) as timer:
            records, stale = self._fetch_verified(wanted, budget, report)
            missing: set[str] = set()
            if stale and self._within_budget(budget, report, phase="relocate"):
                missing = self._relocate(stale, records, budget, report)
            timer.add_metric("fetch_calls", report.fetch_calls)
            timer.add_metric("stale_keys", report.stale_keys)
        return records, missing

    def _fetch_verified(
        self, wanted: dict[str, int], budget: WallClockBudget, report: ReconciliationReport
    ) -> tuple[dict[str, MappedRecord], set[str]]:
        layout = self.layout
        keys_at: dict[int, list[str]] = {}
        for key, source_row in wanted.items():
            keys_at.setdefault(source_row, []).append(key)

        records: dict[str, MappedRecord] = {}
        stale: set[str] = set()
        groups = group_source_rows(keys_at.keys(), max_gap=self.fetch_max_gap, max_span=self.fetch_max_span)
        for group in groups:
            if not self._within_budget(budget, report, phase="fetch"):
                break
            try:
                block = self.store.read(layout.backing_table, group.start, 1, group.span, layout.backing_width)
            except RowStoreError as exc:
                self._record_table_error(report, layout.backing_table, exc)
                break
            report.fetch_calls += 1
            for source_row in group.members:
                record = block[source_row - group.start]
                actual = normalize_key(record[layout.backing_key_col - 1])
                for key in keys_at[source_row]:
                    if actual == key:
                        records[key] = layout.project(record)
                    else:
                        stale.add(key)
        return records, stale

    def _relocate(
        self,
        stale: set[str],
        records: dict[str, MappedRecord],
        budget: WallClockBudget,
        report: ReconciliationReport,
    ) -> set[str]:
        """Find stale keys by scanning the backing key column; return those now absent."""
        report.stale_keys = len(stale)
        logger.warning("reconcile_stale_key_map", stale_keys=len(stale), key_map_source=report.key_map_source)
        try:
            entries, _ = self.index.read_entries()
        except RowStoreError as exc:
            self._record_table_error(report, self.layout.backing_table, exc)
            return set()

        current = {entry.key: entry.ref.row for entry in entries if entry.key in stale}
        relocated, still_stale = self._fetch_verified(current, budget, report)
        records.update(relocated)
        # keys that moved again between the two reads are left for the next run
        return stale - current.keys() - still_stale

    # -- phase 3 -------------------------------------------------------------

    def write_back(
        self,
        tasks: list[ReconciliationTask],
        records: dict[str, MappedRecord],
        missing: set[str],
        budget: WallClockBudget,
        report: ReconciliationReport,
    ) -> None:
        with log_step("reconcile.write") as timer:
            for task in tasks:
                if not self._within_budget(budget, report, phase="write", table=task.table):
                    break
                try:
                    self.write_table(task, records, missing, report)
                except RowStoreError as exc:
                    self._record_table_error(report, task.table, exc)
                    continue
                report.tables_written += 1
            timer.add_metric("write_calls", report.write_calls)

    def write_table(
        self,
        task: ReconciliationTask,
        records: dict[str, MappedRecord],
        missing: set[str],
        report: ReconciliationReport,
    ) -> None:
        """Write one table's found records and statuses in contiguous runs.

        Keys in *missing* get a not-found status. Fetch tasks whose record
        was not read (failed or interrupted fetch) are left untouched for
        the next run.
        """
        layout = self.layout
        table = task.table
        ready = [t for t in task.to_fetch if t.key in records]
        not_found = sorted(task.not_found + [t.dest_row for t in task.to_fetch if t.key in missing])

        for group in group_contiguous(ready, key=lambda t: t.dest_row, max_span=self.write_max_span):
            size = len(group)
            self.store.write(table, group.start, 1, [list(records[t.key]) for t in group.members])
            self.store.write_formulas(table, group.start, layout.money_col, [layout.money_formula] * size)
            self.store.write(table, group.start, layout.status_col, [[Status.FOUND.value]] * size)
            report.write_calls += 3
            report.rows_found += size

        for status, rows in ((Status.NOT_FOUND, not_found), (Status.MALFORMED, task.malformed)):
            for group in group_contiguous(rows, key=_row, max_span=self.write_max_span):
                self.store.write(table, group.start, layout.status_col, [[status.value]] * len(group))
                report.write_calls += 1
        report.rows_not_found += len(not_found)
        report.rows_malformed += len(task.malformed)

    # -- helpers -------------------------------------------------------------

    def _within_budget(
        self, budget: WallClockBudget, report: ReconciliationReport, *, phase: str, table: str | None = None
    ) -> bool:
        if not budget.exceeded():
            return True
        if not report.budget_exceeded:
            report.budget_exceeded = True
            logger.warning(
                "reconcile_budget_exceeded",
                phase=phase,
                table=table,
                elapsed_seconds=round(budget.elapsed, 3),
                budget_seconds=budget.seconds,
            )
        return False

    def _record_table_error(self, report: ReconciliationReport, table: str, exc: RowStoreError) -> None:
        report.errors[table] = exc.message
        logger.warning("reconcile_table_failed", table=table, error=exc.message, category=exc.category.value)


__all__ = [
    "FetchTask",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReconciliationTask",
]
