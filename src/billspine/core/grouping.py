"""
Range grouping: batch row positions into few bulk row-store calls.

Row-store calls have a fixed per-call cost, so rows that sit close
together are read or written in one rectangular call. A small gap of
wasted rows is traded for a large reduction in call count.

Two call shapes:

- **Source grouping** — backing-table rows to fetch. Members may be up to
  ``max_gap`` rows apart; the rows in between are read and discarded.
- **Contiguous grouping** — destination rows to write. ``max_gap = 0``
  because a write must cover an exact rectangular block.

Both are bounded by ``max_span`` (``last - first + 1``).

Examples:
    >>> [(g.start, g.end) for g in group_source_rows([3, 4, 9, 40], max_gap=5, max_span=100)]
    [(3, 9), (40, 40)]
    >>> [g.members for g in group_contiguous([7, 5, 6, 9], key=lambda r: r, max_span=10)]
    [(5, 6, 7), (9,)]

STDLIB ONLY.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


def _identity(item: Any) -> int:
    return item


@dataclass(frozen=True, slots=True)
class RowGroup(Generic[T]):
    """A run of members covering rows ``start..end`` (inclusive)."""

    start: int
    end: int
    members: tuple[T, ...]

    @property
    def span(self) -> int:
        return self.end - self.start + 1

    def __len__(self) -> int:
        return len(self.members)


def group_rows(
    items: Iterable[T],
    *,
    max_gap: int,
    max_span: int,
    key: Callable[[T], int] = _identity,
) -> list[RowGroup[T]]:
    """Group items by row position.

    Items are sorted (stably) by ``key``. A new group starts when the
    number of rows skipped since the previous member exceeds ``max_gap``,
    or when adding the member would make the span exceed ``max_span``.

    Raises:
        ValueError: If ``max_gap < 0`` or ``max_span < 1``.
    """
    if max_gap < 0:
        raise ValueError("max_gap must be >= 0")
    if max_span < 1:
        raise ValueError("max_span must be >= 1")

    groups: list[RowGroup[T]] = []
    members: list[T] = []
    start = prev = 0

    for item in sorted(items, key=key):
        pos = key(item)
        if members and (pos - prev - 1 > max_gap or pos - start + 1 > max_span):
            groups.append(RowGroup(start, prev, tuple(members)))
            members = []
        if not members:
            start = pos
        members.append(item)
        prev = pos

    if members:
        groups.append(RowGroup(start, prev, tuple(members)))
    return groups


def group_source_rows(rows: Iterable[int], *, max_gap: int, max_span: int) -> list[RowGroup[int]]:
    """Batch backing-table rows for bulk fetches."""
    return group_rows(rows, max_gap=max_gap, max_span=max_span)


def group_contiguous(
    items: Iterable[T],
    *,
    key: Callable[[T], int],
    max_span: int,
) -> list[RowGroup[T]]:
    """Batch destination rows into strictly contiguous runs for bulk writes."""
    return group_rows(items, max_gap=0, max_span=max_span, key=key)


__all__ = ["RowGroup", "group_rows", "group_source_rows", "group_contiguous"]
