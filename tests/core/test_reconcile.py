"""
Tests for billspine.core.reconcile.

Covers:
- Classification of downstream rows (fetch, not found, malformed, settled)
- One fetch per source row across all tables
- Contiguous write-back with formulas and statuses
- Wall-clock budget: zero budget touches nothing, exhaustion mid-run stops cleanly
- Stale key maps: fetched rows are checked against their key
- Per-table error isolation
"""

import itertools

import pytest
from conftest import make_record, scan_row

from billspine.core.errors import RowStoreError
from billspine.core.models import Status
from billspine.core.reconcile import ReconciliationEngine, ReconciliationTask


@pytest.fixture
def downstream(services):
    """Scanned keys waiting in the North and South tables.

    North: 3 NTH101/1, 4 NTH101/3, 5 NOSLASH, 6 NTH101/99 (absent),
           7 NTH101/4 already found, 8 blank, 9 NTH101/2 previously not found
    South: 3 STH202/1, 4 NTH101/1 (same source row as North row 3)
    """
    layout = services.layout
    north = [
        scan_row(layout, "NTH101/1"),
        scan_row(layout, "NTH101/3"),
        scan_row(layout, "NOSLASH"),
        scan_row(layout, "NTH101/99"),
        scan_row(layout, "NTH101/4", Status.FOUND.value),
        scan_row(layout, ""),
        scan_row(layout, "NTH101/2", Status.NOT_FOUND.value),
    ]
    south = [scan_row(layout, "STH202/1"), scan_row(layout, "NTH101/1")]
    services.store.write("North", layout.data_start_row, 1, north)
    services.store.write("South", layout.data_start_row, 1, south)
    services.store.reset_calls()
    return services


def make_engine(services, **kwargs):
    kwargs.setdefault("budget_seconds", 300)
    kwargs.setdefault("clock", services.clock)
    return ReconciliationEngine(services.store, services.index, services.layout, **kwargs)


class TestScanPhase:
    def test_classification(self, downstream):
        engine = make_engine(downstream)
        key_map, _ = downstream.index.key_map()

        task = engine.scan_table("North", key_map)

        assert [(t.dest_row, t.key, t.source_row) for t in task.to_fetch] == [
            (3, "NTH101/1", 3),
            (4, "NTH101/3", 6),
            (9, "NTH101/2", 4),
        ]
        assert task.not_found == [6]
        assert task.malformed == [5]

    def test_reads_barcode_and_status_in_one_call(self, downstream):
        engine = make_engine(downstream)
        key_map, _ = downstream.index.key_map()
        downstream.store.reset_calls()

        engine.scan_table("North", key_map)

        reads = [c for c in downstream.store.calls if c.op == "read" and c.row_start == 3]
        assert len(reads) == 1
        assert reads[0].row_count == 7

    def test_empty_table(self, downstream):
        key_map, _ = downstream.index.key_map()
        task = make_engine(downstream).scan_table("Factory", key_map)
        assert task == ReconciliationTask("Factory")
        assert task.is_empty

    def test_downstream_tables_skip_backing_and_index(self, downstream):
        downstream.index.rebuild()
        assert make_engine(downstream).downstream_tables() == ["North", "South", "Factory"]


class TestRun:
    def test_report(self, downstream):
        report = make_engine(downstream).run()

        assert report.run_id.startswith("rec_")
        assert report.key_map_source == "backing"
        assert report.tables_scanned == 3
        assert report.tables_written == 2
        assert report.rows_found == 5
        assert report.rows_not_found == 1
        assert report.rows_malformed == 1
        assert report.source_rows == 4
        assert report.fetch_calls == 1
        # North: runs [3, 4] and [9] x 3 writes, plus one not-found and one malformed status
        # South: run [3, 4] x 3 writes
        assert report.write_calls == 11
        assert report.errors == {}
        assert not report.budget_exceeded
        assert report.ok

    def test_rows_written(self, downstream):
        layout = downstream.layout
        make_engine(downstream).run()
        store = downstream.store

        def status(table, row):
            return store.read(table, row, layout.status_col, 1, 1)[0][0]

        north_3 = tuple(store.read("North", 3, 1, 1, layout.mapped_width)[0])
        assert north_3 == layout.project(make_record("NTH101/1", "North"))
        assert store.formula_at("North", 3, layout.money_col) == layout.money_formula
        assert status("North", 3) == Status.FOUND.value
        assert status("North", 4) == Status.FOUND.value
        assert status("North", 5) == Status.MALFORMED.value
        assert status("North", 6) == Status.NOT_FOUND.value
        assert status("North", 9) == Status.FOUND.value
        assert status("South", 4) == Status.FOUND.value
        assert store.read("South", 4, 2, 1, 1) == [["NTH101/1"]]

    def test_settled_rows_untouched(self, downstream):
        layout = downstream.layout
        make_engine(downstream).run()
        assert downstream.store.read("North", 7, 1, 1, layout.mapped_width)[0] == [""] * layout.mapped_width
        assert downstream.store.read("North", 8, layout.status_col, 1, 1) == [[""]]

    def test_each_source_row_fetched_once(self, downstream):
        """Two tables needing backing row 3 cause a single backing read."""
        downstream.index.rebuild()
        downstream.store.reset_calls()

        report = make_engine(downstream).run()

        assert report.key_map_source == "index"
        assert downstream.store.count_calls("read", downstream.layout.backing_table) == 1
        assert report.fetch_calls == 1

    def test_fetch_groups_respect_span(self, downstream):
        report = make_engine(downstream, fetch_max_gap=0, fetch_max_span=2).run()
        # source rows {3, 4, 5, 6} at span 2
        assert report.fetch_calls == 2
        assert report.rows_found == 5

    def test_second_run_only_rewrites_unsettled(self, downstream):
        make_engine(downstream).run()
        downstream.store.reset_calls()

        report = make_engine(downstream).run()

        assert report.rows_found == 0
        assert report.fetch_calls == 0
        assert report.rows_not_found == 1
        assert report.rows_malformed == 1
        assert report.write_calls == 2

    def test_no_downstream_work(self, services):
        report = make_engine(services).run()
        assert report.rows_found == 0
        assert report.tables_written == 0
        assert services.store.count_calls("write") == 0


class TestBudget:
    def test_zero_budget_touches_nothing(self, downstream):
        report = make_engine(downstream, budget_seconds=0).run()

        assert report.budget_exceeded
        assert not report.ok
        assert report.tables_scanned == 0
        assert downstream.store.calls == []

    def test_exhaustion_between_tables(self, downstream):
        """Each clock read advances 10s; the budget runs out before the second table."""
        ticks = itertools.count(0, 10)
        report = make_engine(downstream, budget_seconds=25, clock=lambda: next(ticks)).run()

        assert report.budget_exceeded
        assert report.tables_scanned == 1
        assert downstream.store.count_calls("write") == 0
        assert downstream.store.count_calls("write_formulas") == 0

    def test_exhaustion_after_first_table_write_keeps_it(self, downstream, monkeypatch):
        """North is written, then the budget runs out; South waits for the next run."""
        layout = downstream.layout
        engine = make_engine(downstream, budget_seconds=60)
        write_table = engine.write_table

        def write_then_stall(task, *args):
            write_table(task, *args)
            downstream.clock.advance(120)

        monkeypatch.setattr(engine, "write_table", write_then_stall)

        report = engine.run()

        assert report.budget_exceeded
        assert report.tables_written == 1
        store = downstream.store
        assert store.read("North", 3, layout.status_col, 1, 1) == [[Status.FOUND.value]]
        assert store.read("South", 3, layout.status_col, 1, 1) == [[""]]
        assert store.read("South", 3, 1, 1, layout.mapped_width)[0] == [""] * layout.mapped_width

        follow_up = make_engine(downstream).run()
        assert follow_up.rows_found == 2
        assert store.read("South", 3, layout.status_col, 1, 1) == [[Status.FOUND.value]]

    def test_exhaustion_during_fetch_writes_nothing(self, downstream, monkeypatch):
        """Two fetch groups; the clock runs out after the first backing read."""
        store = downstream.store
        downstream.index.rebuild()
        store.reset_calls()
        read = store.read

        def read_then_stall(table, *args):
            block = read(table, *args)
            if table == downstream.layout.backing_table:
                downstream.clock.advance(120)
            return block

        monkeypatch.setattr(store, "read", read_then_stall)

        report = make_engine(downstream, budget_seconds=60, fetch_max_gap=0, fetch_max_span=2).run()

        assert report.budget_exceeded
        assert report.fetch_calls == 1
        assert store.count_calls("write") == 0


class TestStaleKeyMap:
    def test_changed_backing_row_is_not_written(self, downstream):
        """The index still maps NTH101/2 to row 4, which now holds NTH101/77."""
        layout = downstream.layout
        downstream.index.rebuild()
        downstream.store.write(layout.backing_table, 4, 1, [make_record("NTH101/77", "North")])

        report = make_engine(downstream).run()

        assert report.key_map_source == "index"
        assert report.stale_keys == 1
        assert report.rows_found == 4
        assert report.rows_not_found == 2
        store = downstream.store
        assert store.read("North", 9, layout.status_col, 1, 1) == [[Status.NOT_FOUND.value]]
        assert store.read("North", 9, 1, 1, layout.mapped_width)[0] == [""] * layout.mapped_width

    def test_moved_key_is_relocated(self, downstream):
        layout = downstream.layout
        downstream.index.rebuild()
        downstream.store.write(layout.backing_table, 4, 1, [make_record("NTH101/77", "North")])
        downstream.store.write(layout.backing_table, 11, 1, [make_record("NTH101/2", "North")])

        report = make_engine(downstream).run()

        assert report.stale_keys == 1
        assert report.rows_found == 5
        store = downstream.store
        assert store.read("North", 9, layout.status_col, 1, 1) == [[Status.FOUND.value]]
        assert tuple(store.read("North", 9, 1, 1, layout.mapped_width)[0]) == layout.project(
            make_record("NTH101/2", "North")
        )

    def test_corrupt_index_row_is_skipped(self, downstream):
        layout = downstream.layout
        downstream.index.rebuild()
        # index rows are sorted: FAC000/1 then NTH101/1
        downstream.store.write(layout.index_table, layout.index_start_row + 1, 2, [["garbage"]])

        report = make_engine(downstream).run()

        assert report.errors == {}
        assert report.rows_found == 3
        assert report.rows_not_found == 3


class TestErrorIsolation:
    def test_failing_table_recorded_and_others_written(self, downstream, monkeypatch):
        store = downstream.store
        original_read = store.read

        def read(table, *args):
            if table == "South":
                raise RowStoreError("South unreachable")
            return original_read(table, *args)

        monkeypatch.setattr(store, "read", read)

        report = make_engine(downstream).run()

        assert report.errors == {"South": "South unreachable"}
        assert report.tables_scanned == 2
        assert report.rows_found == 3
        assert not report.ok

    def test_missing_backing_table(self, services):
        services.store._tables.pop(services.layout.backing_table)
        report = make_engine(services).run()
        assert services.layout.backing_table in report.errors
        assert report.tables_scanned == 0
