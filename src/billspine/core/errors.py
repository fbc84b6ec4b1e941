"""
Structured error types for billspine.

Provides a small hierarchy of typed errors with metadata for error
categorization, logging, and per-row / per-table status reporting.

Manifesto:
    Most failures in the lookup and reconciliation subsystem are *expected*
    and must never abort a batch: a scanned key without a delimiter, a key
    already present in the destination table, an index that is older than
    the backing table. Typed errors let each layer decide precisely what to
    catch and how to report it:

    - **Per-row errors:** MalformedKeyError, DuplicateKeyError → status marker
    - **Degrading errors:** StaleIndexError → full-scan fallback
    - **Swallowed errors:** CacheWriteError → debug log only
    - **Per-unit errors:** StoreUnavailableError → abort one table / one lookup

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                     BillSpineError                           │
        │        (category, retryable, context, cause)                 │
        ├─────────────────────────────────────────────────────────────┤
        │                                                              │
        │  MalformedKeyError   DuplicateKeyError    StaleIndexError    │
        │  (VALIDATION)        (VALIDATION)         (INDEX)            │
        │                                                              │
        │  RowStoreError       CacheWriteError      ConfigError        │
        │  (STORAGE)           (CACHE)              (CONFIG)           │
        │       │                                                      │
        │  StoreUnavailableError                                       │
        └─────────────────────────────────────────────────────────────┘

Examples:
    >>> error = MalformedKeyError("missing '/' delimiter").with_context(key="A001")
    >>> error.context.key
    'A001'
    >>> error.to_dict()["category"]
    'VALIDATION'

Tags:
    error-handling, exception-hierarchy, error-context, billspine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and log routing."""

    # Infrastructure errors
    STORAGE = "STORAGE"           # Row store unreachable, table missing
    CACHE = "CACHE"               # Cache backend write/read failure

    # Data errors
    VALIDATION = "VALIDATION"     # Malformed key, duplicate key
    INDEX = "INDEX"               # Stale or inconsistent sorted index

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"             # Invalid layout or settings

    # Internal errors
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields cover the coordinates every failure in this subsystem can
    be pinned to (table, row, key); anything else goes into ``metadata``.

    Attributes:
        table: Name of the table being read or written
        row: 1-based row number, when the error is about a single row
        key: Bill key being resolved
        run_id: Reconciliation run identifier
        metadata: Additional key-value pairs
    """

    table: str | None = None
    row: int | None = None
    key: str | None = None
    run_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for name in ["table", "row", "key", "run_id"]:
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class BillSpineError(Exception):
    """
    Base exception for all billspine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites only pass the message and whatever context they have.

    Examples:
        >>> error = BillSpineError("unexpected state")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> BillSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StoreUnavailableError("table missing").with_context(table="North")
        """
        for name, value in kwargs.items():
            if hasattr(self.context, name) and name != "metadata":
                setattr(self.context, name, value)
            else:
                self.context.metadata[name] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# PER-ROW ERRORS (reported through status markers)
# =============================================================================


class MalformedKeyError(BillSpineError):
    """Scanned key fails the structural check (no ``/`` delimiter)."""

    default_category = ErrorCategory.VALIDATION


class DuplicateKeyError(BillSpineError):
    """Key is already present in the destination table."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str, *, existing_row: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.existing_row = existing_row


# =============================================================================
# DEGRADING ERRORS (never fatal)
# =============================================================================


class StaleIndexError(BillSpineError):
    """Index metadata missing from cache, or the index disagrees with the backing table."""

    default_category = ErrorCategory.INDEX


class CacheWriteError(BillSpineError):
    """Cache backend rejected a write. Always swallowed by the cache layer."""

    default_category = ErrorCategory.CACHE


# =============================================================================
# STORE ERRORS (abort one unit of work)
# =============================================================================


class RowStoreError(BillSpineError):
    """Row store call failed."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True


class StoreUnavailableError(RowStoreError):
    """Target table does not exist in the row store."""

    default_retryable = False


class ConfigError(BillSpineError):
    """Invalid configuration or table layout."""

    default_category = ErrorCategory.CONFIG


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "BillSpineError",
    "MalformedKeyError",
    "DuplicateKeyError",
    "StaleIndexError",
    "CacheWriteError",
    "RowStoreError",
    "StoreUnavailableError",
    "ConfigError",
]
