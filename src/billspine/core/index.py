"""
Sorted secondary index over the backing table's bill key column.

Finds one row among hundreds of thousands with two binary searches and a
single bounded read, instead of scanning the key column.

Manifesto:
    The backing table is large (10^5–10^6 rows) and every row-store call
    is slow, so a point lookup must not be O(N) calls or O(N) transfer.
    The index is an optimization, never a dependency: whenever it is
    missing, expired from cache, or inconclusive, the lookup degrades to
    a full scan of the key column.

    - **Periodic rebuild:** the index is replaced wholesale, never patched
    - **Chunked I/O:** fixed-size reads and writes keep each call bounded
    - **Cache published last:** boundaries are cached only after the full write
    - **First occurrence wins:** duplicate backing keys keep their lowest row

Architecture:
    ::

        rebuild()
          backing key column ──(read_chunk rows/call)──► {key: first row}
                 │ sort by key (code point order)
                 ▼
          index table  [key | row]  ──(write_chunk rows/call)
                 │
                 ▼
          cache: index:boundaries = keys[::stride], index:count = N

        find(key)
          cache meta ──miss──────────────────────────────┐
             │ bisect boundaries → chunk c               │
             ▼                                            ▼
          read index rows [c*stride, c*stride+stride)   scan_backing(key)
             │ bisect keys in chunk ──miss──────────────►    ▲
             ▼                                               │
          read backing row ──key mismatch (stale entry)──────┘

Performance:
    - find(): O(log boundaries + log stride) comparisons, 2 bounded reads
    - rebuild(): ceil(N / read_chunk) reads + ceil(N / write_chunk) writes
    - scan_backing(): ceil(N / read_chunk) reads (fallback only)

Tags:
    index, binary-search, bisect, lookup, chunked-io, billspine

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from collections.abc import Sequence
from dataclasses import dataclass, field

from billspine.core.cache import IndexMeta, TTLCache
from billspine.core.errors import StaleIndexError, StoreUnavailableError
from billspine.core.logging import get_logger
from billspine.core.models import IndexEntry, Record, RowReference, TableLayout, is_blank, normalize_key
from billspine.core.rowstore import RowStore, find_value, iter_column
from billspine.core.timing import log_step

logger = get_logger(__name__)

INDEX_HEADER = ["key", "row"]


def compute_boundaries(keys: Sequence[str], stride: int) -> list[str]:
    """Sample the first key of every chunk of *stride* sorted keys."""
    if stride < 1:
        raise ValueError("stride must be >= 1")
    return list(keys[::stride])


def select_chunk(boundaries: Sequence[str], key: str) -> int:
    """Index of the greatest boundary <= *key*, clamped to chunk 0."""
    return max(bisect_right(boundaries, key) - 1, 0)


@dataclass(frozen=True, slots=True)
class IndexBuildResult:
    """Outcome of :meth:`SortedIndex.rebuild`."""

    entries: int
    chunks: int
    duplicates: int
    boundaries: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Resolution:
    """A resolved key: the record, where it lives, and which path found it.

    ``via`` is ``"index"`` or ``"scan"``; all three fields are ``None``
    when the key is absent.
    """

    record: Record | None
    ref: RowReference | None
    via: str | None


class SortedIndex:
    """Key-sorted projection of the backing table persisted in the index table.

    Args:
        store: Row store holding the backing and index tables.
        cache: Cache receiving the boundary list and entry count.
        layout: Table layout (names, key column, stride, chunk sizes).
    """

    def __init__(self, store: RowStore, cache: TTLCache, layout: TableLayout) -> None:
        self.store = store
        self.cache = cache
        self.layout = layout

    # -- build ---------------------------------------------------------------

    def read_entries(self) -> tuple[list[IndexEntry], int]:
        """Read the backing key column into sorted entries.

        Returns:
            ``(entries, duplicates)`` where duplicates counts keys dropped
            because an earlier row already held them.
        """
        layout = self.layout
        last = self.store.last_row(layout.backing_table)
        first_rows: dict[str, int] = {}
        duplicates = 0
        for row, value in iter_column(
            self.store,
            layout.backing_table,
            layout.backing_key_col,
            layout.data_start_row,
            last,
            chunk=layout.read_chunk,
        ):
            key = normalize_key(value)
            if not key:
                continue
            if key in first_rows:
                duplicates += 1
                continue
            first_rows[key] = row

        entries = [
            IndexEntry(key, RowReference(layout.backing_table, row))
            for key, row in sorted(first_rows.items())
        ]
        return entries, duplicates

    def rebuild(self) -> IndexBuildResult:
        """Rebuild the persisted index and publish its metadata to the cache.

        Raises:
            StoreUnavailableError: If the backing table does not exist.
        """
        layout = self.layout
        with log_step("index.rebuild", table=layout.backing_table) as timer:
            entries, duplicates = self.read_entries()

            if not self.store.has_table(layout.index_table):
                self.store.create_table(layout.index_table)
            previous_last = self.store.last_row(layout.index_table)

            if layout.index_header_rows:
                self.store.write(layout.index_table, 1, 1, [INDEX_HEADER])

            start = layout.index_start_row
            for offset in range(0, len(entries), layout.write_chunk):
                chunk = entries[offset : offset + layout.write_chunk]
                self.store.write(
                    layout.index_table,
                    start + offset,
                    1,
                    [[entry.key, entry.ref.row] for entry in chunk],
                )

            new_last = start + len(entries) - 1
            if previous_last > new_last:
                self.store.clear(layout.index_table, new_last + 1, 1, previous_last - new_last, 2)

            keys = [entry.key for entry in entries]
            boundaries = compute_boundaries(keys, layout.index_stride)
            self.cache.put_index_meta(boundaries, len(entries))

            timer.add_metric("entries", len(entries))
            timer.add_metric("chunks", len(boundaries))
            timer.add_metric("duplicates", duplicates)

        if duplicates:
            logger.warning("index_duplicate_keys", duplicates=duplicates, policy="first_row_wins")
        return IndexBuildResult(
            entries=len(entries),
            chunks=len(boundaries),
            duplicates=duplicates,
            boundaries=boundaries,
        )

    # -- lookup --------------------------------------------------------------

    def locate(self, key: str) -> RowReference | None:
        """Backing row holding *key*: index first, full scan as fallback."""
        target = normalize_key(key)
        if not target:
            return None
        try:
            return self.locate_by_index(target)
        except StaleIndexError as exc:
            logger.debug("index_fallback_scan", key=target, reason=exc.message)
            return self.scan_backing(target)

    def find(self, key: str) -> Record | None:
        """Full backing record for *key* (``findByIndex``), or ``None``."""
        return self.resolve(key).record

    def resolve(self, key: str) -> Resolution:
        """Resolve *key* to its backing record, noting which path answered."""
        target = normalize_key(key)
        if not target:
            return Resolution(None, None, None)
        try:
            ref = self.locate_by_index(target)
            record = self.fetch_record(ref)
            if normalize_key(record[self.layout.backing_key_col - 1]) != target:
                raise StaleIndexError("index entry points at a row holding another key").with_context(
                    key=target, row=ref.row
                )
            return Resolution(record, ref, "index")
        except StaleIndexError as exc:
            logger.debug("index_fallback_scan", key=target, reason=exc.message)

        ref = self.scan_backing(target)
        if ref is None:
            return Resolution(None, None, None)
        return Resolution(self.fetch_record(ref), ref, "scan")

    def locate_by_index(self, key: str) -> RowReference:
        """Two-level binary search without fallback.

        Raises:
            StaleIndexError: Metadata not cached, index table unreadable,
                or *key* absent from its chunk.
        """
        meta = self.cache.get_index_meta()
        if meta is None or not meta.boundaries:
            raise StaleIndexError("index metadata not cached").with_context(key=key)

        chunk = select_chunk(meta.boundaries, key)
        rows = self.read_chunk(meta, chunk)

        keys = [normalize_key(r[0]) for r in rows]
        pos = bisect_left(keys, key)
        if pos == len(keys) or keys[pos] != key:
            raise StaleIndexError("key not in selected chunk").with_context(key=key, chunk=chunk)
        try:
            row = int(rows[pos][1])
        except (TypeError, ValueError) as exc:
            raise StaleIndexError("malformed index row reference", cause=exc).with_context(key=key) from exc
        return RowReference(self.layout.backing_table, row)

    def read_chunk(self, meta: IndexMeta, chunk: int) -> list[list[object]]:
        """Read one chunk's (key, row) slice from the index table."""
        layout = self.layout
        offset = chunk * layout.index_stride
        count = min(layout.index_stride, meta.count - offset)
        if count <= 0:
            raise StaleIndexError("chunk beyond cached entry count").with_context(chunk=chunk)
        try:
            return self.store.read(layout.index_table, layout.index_start_row + offset, 1, count, 2)
        except StoreUnavailableError as exc:
            raise StaleIndexError("index table unavailable", cause=exc) from exc

    def fetch_record(self, ref: RowReference) -> Record:
        block = self.store.read(ref.table, ref.row, 1, 1, self.layout.backing_width)
        return tuple(block[0])

    def scan_backing(self, key: str) -> RowReference | None:
        """Exact-match scan of the backing key column, skipping header rows."""
        layout = self.layout
        row = find_value(
            self.store,
            layout.backing_table,
            layout.backing_key_col,
            key,
            start_row=layout.data_start_row,
            chunk=layout.read_chunk,
        )
        return RowReference(layout.backing_table, row) if row is not None else None

    # -- bulk key map --------------------------------------------------------

    def key_map(self) -> tuple[dict[str, int], str]:
        """Whole-table key → backing row map for batch jobs.

        Built from the persisted index when one exists, otherwise straight
        from the backing key column. First occurrence wins either way.
        Index rows whose row reference is not a number are skipped.

        Returns:
            ``(mapping, source)`` with source ``"index"`` or ``"backing"``.
        """
        layout = self.layout
        if self.store.has_table(layout.index_table):
            last = self.store.last_row(layout.index_table)
            if last >= layout.index_start_row:
                mapping: dict[str, int] = {}
                skipped = 0
                for start in range(layout.index_start_row, last + 1, layout.read_chunk):
                    count = min(layout.read_chunk, last - start + 1)
                    for key_value, row_value in self.store.read(layout.index_table, start, 1, count, 2):
                        key = normalize_key(key_value)
                        if not key or is_blank(row_value):
                            continue
                        try:
                            mapping.setdefault(key, int(row_value))
                        except (TypeError, ValueError):
                            skipped += 1
                if skipped:
                    logger.warning("index_rows_skipped", skipped=skipped, reason="malformed row reference")
                return mapping, "index"

        entries, _ = self.read_entries()
        return {entry.key: entry.ref.row for entry in entries}, "backing"


__all__ = [
    "INDEX_HEADER",
    "IndexBuildResult",
    "Resolution",
    "SortedIndex",
    "compute_boundaries",
    "select_chunk",
]
