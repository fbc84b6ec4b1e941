"""billspine core -- lookup and reconciliation primitives.

Manifesto:
    A large, slowly growing backing table is the source of truth for bill
    records. Downstream station tables hold scanned bill keys that must be
    filled in from it. Every call into the row store is expensive, so the
    core is organised around doing as few of them as possible.

Architecture::

    Layer 1 -- Types, errors, settings
        models.py      BillKey, RowReference, Status, MoneyFormula, TableLayout
        errors.py      BillSpineError hierarchy
        settings.py    BillSpineSettings (pydantic-settings, BILLSPINE_ env)
        logging.py     structlog configuration and context binding

    Layer 2 -- Storage and cache
        rowstore.py    RowStore protocol, in-memory and SQLite stores
        cache.py       TTLCache over in-memory / SQLite / Redis backends

    Layer 3 -- Algorithms
        grouping.py    Range grouping of row positions into bulk calls
        index.py       SortedIndex: rebuild, two-level binary search
        timing.py      Wall-clock budget, step timing

    Layer 4 -- Services
        lookup.py      BillLookupService, StationResolver, ScanProcessor
        reconcile.py   ReconciliationEngine (scan, fetch, write-back)
"""

from billspine.core.cache import (
    InMemoryCache,
    IndexMeta,
    RedisCache,
    SqliteCache,
    TTLCache,
    create_cache,
)
from billspine.core.errors import (
    BillSpineError,
    CacheWriteError,
    ConfigError,
    DuplicateKeyError,
    ErrorCategory,
    ErrorContext,
    MalformedKeyError,
    RowStoreError,
    StaleIndexError,
    StoreUnavailableError,
)
from billspine.core.grouping import RowGroup, group_contiguous, group_rows, group_source_rows
from billspine.core.index import IndexBuildResult, Resolution, SortedIndex, compute_boundaries, select_chunk
from billspine.core.lookup import (
    BillLookupService,
    LookupResult,
    ScanOutcome,
    ScanProcessor,
    ScanResult,
    StationResolver,
)
from billspine.core.models import (
    BillKey,
    IndexEntry,
    MoneyFormula,
    RowReference,
    Status,
    TableLayout,
    normalize_key,
)
from billspine.core.reconcile import (
    FetchTask,
    ReconciliationEngine,
    ReconciliationReport,
    ReconciliationTask,
)
from billspine.core.rowstore import InMemoryRowStore, RowStore, SqliteRowStore
from billspine.core.settings import BillSpineSettings, get_settings
from billspine.core.timing import WallClockBudget, log_step

__all__ = [
    # models
    "BillKey",
    "IndexEntry",
    "MoneyFormula",
    "RowReference",
    "Status",
    "TableLayout",
    "normalize_key",
    # errors
    "BillSpineError",
    "CacheWriteError",
    "ConfigError",
    "DuplicateKeyError",
    "ErrorCategory",
    "ErrorContext",
    "MalformedKeyError",
    "RowStoreError",
    "StaleIndexError",
    "StoreUnavailableError",
    # storage / cache
    "InMemoryRowStore",
    "RowStore",
    "SqliteRowStore",
    "InMemoryCache",
    "IndexMeta",
    "RedisCache",
    "SqliteCache",
    "TTLCache",
    "create_cache",
    # algorithms
    "RowGroup",
    "group_contiguous",
    "group_rows",
    "group_source_rows",
    "IndexBuildResult",
    "Resolution",
    "SortedIndex",
    "compute_boundaries",
    "select_chunk",
    "WallClockBudget",
    "log_step",
    # services
    "BillLookupService",
    "LookupResult",
    "ScanOutcome",
    "ScanProcessor",
    "ScanResult",
    "StationResolver",
    "FetchTask",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReconciliationTask",
    # settings
    "BillSpineSettings",
    "get_settings",
]
