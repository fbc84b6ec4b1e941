"""
Row store adapter: bulk rectangular reads and writes over named tables.

The backing table, the per-station downstream tables and the persisted
index are all reached through the :class:`RowStore` protocol. Every call
has material latency, so callers move many rows per call and never read
single cells in a loop.

Architecture:
    ::

        RowStore (Protocol)
        ├── InMemoryRowStore   — dict-backed, records every call (tests)
        └── SqliteRowStore     — bs_tables / bs_cells in a SQLite database

        read(table, row_start, col_start, row_count, col_count) → [[value]]
        write(table, row_start, col_start, block)
        write_formulas(table, row_start, col, formulas)
        clear(table, row_start, col_start, row_count, col_count)
        last_row(table) → int

        Helpers (built on the protocol):
            iter_column()          chunked column reader
            find_row()             first row whose cell matches, skipping headers
            last_populated_row()   tail-first search for the last non-blank cell

Rows and columns are 1-based. Blank cells read back as ``""``. Formula
cells hold a :class:`~billspine.core.models.MoneyFormula` descriptor and
read back as its value computed from the same row.

Tags:
    row-store, adapter, bulk-io, sqlite, protocol, billspine
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from billspine.core.errors import RowStoreError, StoreUnavailableError
from billspine.core.models import MoneyFormula, is_blank, normalize_key

Block = list[list[Any]]


class RowStore(Protocol):
    """Bulk row/column access to named tables."""

    def read(
        self, table: str, row_start: int, col_start: int, row_count: int, col_count: int
    ) -> Block:
        """Read a rectangular block; blank cells are ``""``."""
        ...

    def write(self, table: str, row_start: int, col_start: int, block: Sequence[Sequence[Any]]) -> None:
        """Write a rectangular block. Blank values clear their cells."""
        ...

    def write_formulas(
        self, table: str, row_start: int, col: int, formulas: Sequence[MoneyFormula]
    ) -> None:
        """Write one formula descriptor per row into column *col*."""
        ...

    def clear(self, table: str, row_start: int, col_start: int, row_count: int, col_count: int) -> None:
        """Clear values and formulas in a rectangular block."""
        ...

    def last_row(self, table: str) -> int:
        """Last row holding any value or formula (0 for an empty table)."""
        ...

    def has_table(self, table: str) -> bool: ...

    def table_names(self) -> list[str]:
        """Table names in creation order."""
        ...

    def create_table(self, table: str) -> None:
        """Create an empty table (no-op if it exists)."""
        ...


def _check_range(row_start: int, col_start: int, row_count: int, col_count: int) -> None:
    if row_start < 1 or col_start < 1:
        raise RowStoreError(f"rows and columns are 1-based (got row {row_start}, col {col_start})")
    if row_count < 0 or col_count < 0:
        raise RowStoreError("row_count and col_count must be >= 0")


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StoreCall:
    """One recorded row store call."""

    op: str
    table: str
    row_start: int
    row_count: int


class InMemoryRowStore:
    """Dict-backed row store.

    Every protocol call is appended to :attr:`calls`, which lets tests
    assert how many bulk operations a component issued.

    Example:
        >>> store = InMemoryRowStore()
        >>> store.create_table("DataBase")
        >>> store.write("DataBase", 3, 1, [["x", "", "A001/1"]])
        >>> store.read("DataBase", 3, 3, 1, 1)
        [['A001/1']]
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[tuple[int, int], Any]] = {}
        self._formulas: dict[str, dict[tuple[int, int], MoneyFormula]] = {}
        self.calls: list[StoreCall] = []

    def _cells(self, table: str) -> dict[tuple[int, int], Any]:
        if table not in self._tables:
            raise StoreUnavailableError(f"table {table!r} does not exist").with_context(table=table)
        return self._tables[table]

    def _value(self, table: str, row: int, col: int) -> Any:
        formula = self._formulas[table].get((row, col))
        if formula is not None:
            value = formula.evaluate(lambda c: self._tables[table].get((row, c), ""))
            return "" if value is None else value
        return self._tables[table].get((row, col), "")

    def read(
        self, table: str, row_start: int, col_start: int, row_count: int, col_count: int
    ) -> Block:
        _check_range(row_start, col_start, row_count, col_count)
        self._cells(table)
        self.calls.append(StoreCall("read", table, row_start, row_count))
        return [
            [self._value(table, row, col) for col in range(col_start, col_start + col_count)]
            for row in range(row_start, row_start + row_count)
        ]

    def write(self, table: str, row_start: int, col_start: int, block: Sequence[Sequence[Any]]) -> None:
        _check_range(row_start, col_start, len(block), 0)
        cells = self._cells(table)
        formulas = self._formulas[table]
        self.calls.append(StoreCall("write", table, row_start, len(block)))
        for r, values in enumerate(block):
            for c, value in enumerate(values):
                pos = (row_start + r, col_start + c)
                formulas.pop(pos, None)
                if is_blank(value):
                    cells.pop(pos, None)
                else:
                    cells[pos] = value

    def write_formulas(
        self, table: str, row_start: int, col: int, formulas: Sequence[MoneyFormula]
    ) -> None:
        _check_range(row_start, col, len(formulas), 1)
        cells = self._cells(table)
        self.calls.append(StoreCall("write_formulas", table, row_start, len(formulas)))
        for r, formula in enumerate(formulas):
            pos = (row_start + r, col)
            cells.pop(pos, None)
            self._formulas[table][pos] = formula

    def clear(self, table: str, row_start: int, col_start: int, row_count: int, col_count: int) -> None:
        _check_range(row_start, col_start, row_count, col_count)
        cells = self._cells(table)
        self.calls.append(StoreCall("clear", table, row_start, row_count))
        for row in range(row_start, row_start + row_count):
            for col in range(col_start, col_start + col_count):
                cells.pop((row, col), None)
                self._formulas[table].pop((row, col), None)

    def last_row(self, table: str) -> int:
        cells = self._cells(table)
        self.calls.append(StoreCall("last_row", table, 0, 0))
        rows = [row for row, _ in cells] + [row for row, _ in self._formulas[table]]
        return max(rows, default=0)

    def has_table(self, table: str) -> bool:
        return table in self._tables

    def table_names(self) -> list[str]:
        return list(self._tables)

    def create_table(self, table: str) -> None:
        self._tables.setdefault(table, {})
        self._formulas.setdefault(table, {})

    # -- test helpers ---------------------------------------------------------

    def formula_at(self, table: str, row: int, col: int) -> MoneyFormula | None:
        return self._formulas.get(table, {}).get((row, col))

    def count_calls(self, op: str, table: str | None = None) -> int:
        return sum(1 for c in self.calls if c.op == op and (table is None or c.table == table))

    def reset_calls(self) -> None:
        self.calls.clear()


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------


class SqliteRowStore:
    """Row store persisted in SQLite.

    Cell values are JSON-encoded so numbers and strings round-trip with
    their types; formula descriptors are stored as JSON in their own column.

    Args:
        conn: sqlite3 connection (or anything exposing ``execute``,
            ``executemany`` and ``commit``).
    """

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def ensure_schema(self) -> None:
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS bs_tables ("
            "  name TEXT PRIMARY KEY,"
            "  position INTEGER NOT NULL"
            ")"
        )
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS bs_cells ("
            "  table_name TEXT NOT NULL,"
            "  row_num INTEGER NOT NULL,"
            "  col_num INTEGER NOT NULL,"
            "  value TEXT,"
            "  formula TEXT,"
            "  PRIMARY KEY (table_name, row_num, col_num)"
            ")"
        )
        self._conn.commit()

    def _require(self, table: str) -> None:
        if not self.has_table(table):
            raise StoreUnavailableError(f"table {table!r} does not exist").with_context(table=table)

    def read(
        self, table: str, row_start: int, col_start: int, row_count: int, col_count: int
    ) -> Block:
        _check_range(row_start, col_start, row_count, col_count)
        self._require(table)
        block: Block = [["" for _ in range(col_count)] for _ in range(row_count)]
        if row_count == 0 or col_count == 0:
            return block

        row_end = row_start + row_count - 1
        rows = self._conn.execute(
            "SELECT row_num, col_num, value, formula FROM bs_cells "
            "WHERE table_name = ? AND row_num BETWEEN ? AND ? AND col_num BETWEEN ? AND ?",
            (table, row_start, row_end, col_start, col_start + col_count - 1),
        ).fetchall()

        pending: list[tuple[int, int, MoneyFormula]] = []
        for row, col, value, formula in rows:
            if formula is not None:
                pending.append((row, col, MoneyFormula.from_dict(json.loads(formula))))
            elif value is not None:
                block[row - row_start][col - col_start] = json.loads(value)

        if pending:
            siblings = self._row_values(table, sorted({row for row, _, _ in pending}))
            for row, col, formula in pending:
                computed = formula.evaluate(lambda c, r=row: siblings.get((r, c), ""))
                block[row - row_start][col - col_start] = "" if computed is None else computed
        return block

    def _row_values(self, table: str, rows: list[int]) -> dict[tuple[int, int], Any]:
        placeholders = ", ".join("?" for _ in rows)
        result = self._conn.execute(
            f"SELECT row_num, col_num, value FROM bs_cells "
            f"WHERE table_name = ? AND value IS NOT NULL AND row_num IN ({placeholders})",
            (table, *rows),
        ).fetchall()
        return {(row, col): json.loads(value) for row, col, value in result}

    def write(self, table: str, row_start: int, col_start: int, block: Sequence[Sequence[Any]]) -> None:
        _check_range(row_start, col_start, len(block), 0)
        self._require(table)
        upserts: list[tuple[Any, ...]] = []
        deletes: list[tuple[Any, ...]] = []
        for r, values in enumerate(block):
            for c, value in enumerate(values):
                pos = (table, row_start + r, col_start + c)
                if is_blank(value):
                    deletes.append(pos)
                else:
                    upserts.append((*pos, json.dumps(value)))
        if deletes:
            self._conn.executemany(
                "DELETE FROM bs_cells WHERE table_name = ? AND row_num = ? AND col_num = ?", deletes
            )
        if upserts:
            self._conn.executemany(
                "INSERT INTO bs_cells (table_name, row_num, col_num, value, formula) VALUES (?, ?, ?, ?, NULL) "
                "ON CONFLICT(table_name, row_num, col_num) DO UPDATE SET "
                "  value = excluded.value, formula = NULL",
                upserts,
            )
        self._conn.commit()

    def write_formulas(
        self, table: str, row_start: int, col: int, formulas: Sequence[MoneyFormula]
    ) -> None:
        _check_range(row_start, col, len(formulas), 1)
        self._require(table)
        self._conn.executemany(
            "INSERT INTO bs_cells (table_name, row_num, col_num, value, formula) VALUES (?, ?, ?, NULL, ?) "
            "ON CONFLICT(table_name, row_num, col_num) DO UPDATE SET "
            "  value = NULL, formula = excluded.formula",
            [
                (table, row_start + r, col, json.dumps(formula.to_dict()))
                for r, formula in enumerate(formulas)
            ],
        )
        self._conn.commit()

    def clear(self, table: str, row_start: int, col_start: int, row_count: int, col_count: int) -> None:
        _check_range(row_start, col_start, row_count, col_count)
        self._require(table)
        self._conn.execute(
            "DELETE FROM bs_cells "
            "WHERE table_name = ? AND row_num BETWEEN ? AND ? AND col_num BETWEEN ? AND ?",
            (table, row_start, row_start + row_count - 1, col_start, col_start + col_count - 1),
        )
        self._conn.commit()

    def last_row(self, table: str) -> int:
        self._require(table)
        row = self._conn.execute(
            "SELECT MAX(row_num) FROM bs_cells WHERE table_name = ?", (table,)
        ).fetchone()
        return row[0] or 0

    def has_table(self, table: str) -> bool:
        row = self._conn.execute("SELECT 1 FROM bs_tables WHERE name = ?", (table,)).fetchone()
        return row is not None

    def table_names(self) -> list[str]:
        rows = self._conn.execute("SELECT name FROM bs_tables ORDER BY position").fetchall()
        return [r[0] for r in rows]

    def create_table(self, table: str) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO bs_tables (name, position) "
            "VALUES (?, (SELECT COALESCE(MAX(position), 0) + 1 FROM bs_tables))",
            (table,),
        )
        self._conn.commit()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def iter_column(
    store: RowStore,
    table: str,
    column: int,
    start_row: int,
    end_row: int,
    *,
    chunk: int,
) -> Iterator[tuple[int, Any]]:
    """Yield ``(row, value)`` for one column, reading *chunk* rows per call."""
    for start in range(start_row, end_row + 1, chunk):
        count = min(chunk, end_row - start + 1)
        block = store.read(table, start, column, count, 1)
        for offset, values in enumerate(block):
            yield start + offset, values[0]


def find_row(
    store: RowStore,
    table: str,
    column: int,
    matches: Callable[[str], bool],
    *,
    start_row: int,
    chunk: int,
) -> int | None:
    """First row at or below *start_row* whose normalized cell satisfies *matches*."""
    end_row = store.last_row(table)
    for row, value in iter_column(store, table, column, start_row, end_row, chunk=chunk):
        if matches(normalize_key(value)):
            return row
    return None


def find_value(
    store: RowStore,
    table: str,
    column: int,
    value: str,
    *,
    start_row: int,
    chunk: int,
) -> int | None:
    """Exact whole-cell match of a trimmed value."""
    target = normalize_key(value)
    return find_row(store, table, column, lambda cell: cell == target, start_row=start_row, chunk=chunk)


def last_populated_row(store: RowStore, table: str, column: int, *, tail: int = 500) -> int:
    """Last row with a non-blank cell in *column* (0 if none).

    Reads the bottom *tail* rows first; only when they are all blank does
    it scan the rows above.
    """
    last = store.last_row(table)
    if last < 1:
        return 0

    start = max(1, last - tail + 1)
    block = store.read(table, start, column, last - start + 1, 1)
    for offset in range(len(block) - 1, -1, -1):
        if not is_blank(block[offset][0]):
            return start + offset

    if start > 1:
        block = store.read(table, 1, column, start - 1, 1)
        for offset in range(len(block) - 1, -1, -1):
            if not is_blank(block[offset][0]):
                return offset + 1
    return 0


__all__ = [
    "Block",
    "RowStore",
    "StoreCall",
    "InMemoryRowStore",
    "SqliteRowStore",
    "iter_column",
    "find_row",
    "find_value",
    "last_populated_row",
]
