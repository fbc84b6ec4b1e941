"""
Value objects shared by the lookup and reconciliation subsystem.

Architecture::

    Scanned cell ──normalize_key()──► "A001/17"
                                          │
                                 BillKey.parse()
                                          │
                 ┌────────────────────────┼─────────────────────────┐
                 ▼                        ▼                         ▼
           prefix "A001"          station_code "001"           suffix "17"

    SortedIndex persists IndexEntry(key, RowReference(table, row)).
    Backing row  ──► Record (14 cells) ──layout.project()──► MappedRecord (9 cells)

Layout constants (header rows, column offsets, projection) live in
:class:`TableLayout`, a frozen dataclass built from settings so the core
never reads environment variables itself.

STDLIB ONLY — no Pydantic.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from billspine.core.errors import ConfigError, MalformedKeyError

Record = tuple[Any, ...]
MappedRecord = tuple[Any, ...]


def normalize_key(value: Any) -> str:
    """Trim a cell value into a bill key string ("" for blank cells)."""
    if value is None:
        return ""
    return str(value).strip()


def is_blank(value: Any) -> bool:
    return value is None or value == ""


# ---------------------------------------------------------------------------
# Keys and references
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BillKey:
    """A scanned bill identifier: ``<prefix>/<run number>``.

    The last three characters of the prefix are the station code; code
    ``000`` is reserved for the factory table.
    """

    value: str
    prefix: str
    suffix: str

    @classmethod
    def parse(cls, raw: Any) -> BillKey:
        """Normalize and split a raw scanned value.

        Raises:
            MalformedKeyError: If the value has no ``/`` delimiter.
        """
        value = normalize_key(raw)
        parts = value.split("/")
        if len(parts) < 2:
            raise MalformedKeyError(f"bill key {value!r} has no '/' delimiter").with_context(key=value)
        return cls(value=value, prefix=parts[0], suffix=parts[1])

    @property
    def station_code(self) -> str:
        return self.prefix[-3:]

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True, order=True)
class RowReference:
    """Locator for one row of a table (1-based ordinal)."""

    table: str
    row: int


@dataclass(frozen=True, slots=True)
class IndexEntry:
    """One (key, row reference) pair of the sorted index."""

    key: str
    ref: RowReference


class Status(str, Enum):
    """Values written into a downstream table's status column."""

    FOUND = "found"
    NOT_FOUND = "not-found"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"
    UNKNOWN_STATION = "unknown-station"

    @property
    def is_settled(self) -> bool:
        """Rows in a settled state are skipped by reconciliation."""
        return self in (Status.FOUND, Status.DUPLICATE)


# ---------------------------------------------------------------------------
# Formula descriptor
# ---------------------------------------------------------------------------


def _as_number(value: Any) -> float:
    if is_blank(value):
        return 0.0
    return float(value)


@dataclass(frozen=True, slots=True)
class MoneyFormula:
    """``money = qty * rate - fee + adjustment`` over same-row columns.

    Stored by the row store as a structured descriptor; the value is
    computed whenever the cell is read.
    """

    qty_col: int = 5          # E
    rate_col: int = 10        # J
    fee_col: int = 8          # H
    adjustment_col: int = 11  # K

    @property
    def source_columns(self) -> tuple[int, int, int, int]:
        return (self.qty_col, self.rate_col, self.fee_col, self.adjustment_col)

    def evaluate(self, cell: Any) -> float | None:
        """Compute the value; *cell* maps a column number to this row's value.

        Returns ``None`` when a referenced cell is not numeric.
        """
        try:
            qty, rate, fee, adjustment = (_as_number(cell(col)) for col in self.source_columns)
        except (TypeError, ValueError):
            return None
        return qty * rate - fee + adjustment

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": "money",
            "qty_col": self.qty_col,
            "rate_col": self.rate_col,
            "fee_col": self.fee_col,
            "adjustment_col": self.adjustment_col,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MoneyFormula:
        return cls(
            qty_col=data["qty_col"],
            rate_col=data["rate_col"],
            fee_col=data["fee_col"],
            adjustment_col=data["adjustment_col"],
        )


# ---------------------------------------------------------------------------
# Table layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TableLayout:
    """Fixed layout of the backing, downstream, and index tables.

    Column numbers are 1-based. Header rows are shared by the backing and
    downstream tables; the index table has its own single header row.

    Attributes:
        backing_table: Name of the authoritative table.
        index_table: Name of the persisted sorted index.
        factory_table: Destination for station code ``000``.
        header_rows: Header rows above the first data row.
        backing_key_col: Bill key column of the backing table (C).
        backing_station_col: Station name column of the backing table (E).
        backing_width: Usable columns per backing row.
        projection: Record indices (0-based) copied into downstream columns 1..n.
        barcode_col: Scanned key column of a downstream table (T).
        status_col: Status column of a downstream table (U).
        money_col: Computed money column of a downstream table (L).
        duplicate_col: Projected bill key column used for duplicate checks (B).
        money_formula: Descriptor written into ``money_col``.
        index_header_rows: Header rows of the index table.
        index_stride: Entries per chunk (boundary sampling stride).
        read_chunk: Rows per bulk read when scanning a whole column.
        write_chunk: Rows per bulk write when persisting the index.
        tail_rows: Rows read from the bottom first when locating the last populated row.
    """

    backing_table: str = "DataBase"
    index_table: str = "_BillIndex"
    factory_table: str = "Factory"
    header_rows: int = 2
    backing_key_col: int = 3
    backing_station_col: int = 5
    backing_width: int = 14
    projection: tuple[int, ...] = (0, 2, 5, 6, 9, 10, 11, 12, 13)
    barcode_col: int = 20
    status_col: int = 21
    money_col: int = 12
    duplicate_col: int = 2
    money_formula: MoneyFormula = field(default_factory=MoneyFormula)
    index_header_rows: int = 1
    index_stride: int = 10_000
    read_chunk: int = 50_000
    write_chunk: int = 20_000
    tail_rows: int = 500

    def __post_init__(self) -> None:
        if self.index_stride < 1:
            raise ConfigError("index_stride must be >= 1")
        if self.read_chunk < 1 or self.write_chunk < 1:
            raise ConfigError("read_chunk and write_chunk must be >= 1")
        if any(i < 0 or i >= self.backing_width for i in self.projection):
            raise ConfigError(f"projection {self.projection} exceeds backing_width {self.backing_width}")

    @property
    def data_start_row(self) -> int:
        return self.header_rows + 1

    @property
    def index_start_row(self) -> int:
        return self.index_header_rows + 1

    @property
    def mapped_width(self) -> int:
        return len(self.projection)

    def project(self, record: Sequence[Any]) -> MappedRecord:
        """Project a backing record onto the downstream columns.

        Short records are padded with blanks.
        """
        return tuple(record[i] if i < len(record) else "" for i in self.projection)

    def chunk_count(self, entries: int) -> int:
        return math.ceil(entries / self.index_stride)


__all__ = [
    "Record",
    "MappedRecord",
    "normalize_key",
    "is_blank",
    "BillKey",
    "RowReference",
    "IndexEntry",
    "Status",
    "MoneyFormula",
    "TableLayout",
]
