"""
Centralized settings for billspine.

Manifesto:
    One validated, cached settings object holds every tunable of the
    subsystem: table names and column offsets of the fixed layout, index
    stride and chunk sizes, cache TTLs, and the reconciliation budget.
    The core never reads the environment itself; it receives a frozen
    :class:`~billspine.core.models.TableLayout` built by :meth:`layout`.

All fields can be set via ``BILLSPINE_*`` environment variables (e.g.
``BILLSPINE_INDEX_STRIDE=5000``) or a ``.env`` file.

Tags:
    billspine, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from billspine.core.models import MoneyFormula, TableLayout


class CacheBackendKind(str, Enum):
    MEMORY = "memory"
    SQLITE = "sqlite"
    REDIS = "redis"


class BillSpineSettings(BaseSettings):
    """billspine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BILLSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Tables ───────────────────────────────────────────────────
    backing_table: str = Field(default="DataBase")
    index_table: str = Field(default="_BillIndex")
    factory_table: str = Field(default="Factory")
    header_rows: int = Field(default=2, ge=0)

    # ── Backing table columns (1-based) ──────────────────────────
    backing_key_col: int = Field(default=3, ge=1)
    backing_station_col: int = Field(default=5, ge=1)
    backing_width: int = Field(default=14, ge=1)
    projection: tuple[int, ...] = Field(default=(0, 2, 5, 6, 9, 10, 11, 12, 13))

    # ── Downstream table columns (1-based) ───────────────────────
    barcode_col: int = Field(default=20, ge=1)
    status_col: int = Field(default=21, ge=1)
    money_col: int = Field(default=12, ge=1)
    duplicate_col: int = Field(default=2, ge=1)
    money_qty_col: int = Field(default=5, ge=1)
    money_rate_col: int = Field(default=10, ge=1)
    money_fee_col: int = Field(default=8, ge=1)
    money_adjustment_col: int = Field(default=11, ge=1)

    # ── Index ────────────────────────────────────────────────────
    index_stride: int = Field(default=10_000, ge=1, description="Entries per boundary chunk")
    read_chunk: int = Field(default=50_000, ge=1)
    write_chunk: int = Field(default=20_000, ge=1)
    tail_rows: int = Field(default=500, ge=1)

    # ── Cache ────────────────────────────────────────────────────
    cache_backend: CacheBackendKind = Field(default=CacheBackendKind.SQLITE)
    cache_max_size: int = Field(default=10_000, ge=1)
    redis_url: str = Field(default="redis://localhost:6379/0")
    ttl_last_row: int = Field(default=120, ge=1)
    ttl_record: int = Field(default=300, ge=1)
    ttl_station: int = Field(default=300, ge=1)
    ttl_index: int = Field(default=900, ge=1)

    # ── Reconciliation ───────────────────────────────────────────
    reconcile_budget_seconds: float = Field(default=300.0, ge=0)
    fetch_max_gap: int = Field(default=20, ge=0, description="Rows wasted to merge two fetches")
    fetch_max_span: int = Field(default=500, ge=1)
    write_max_span: int = Field(default=100, ge=1)

    # ── Scan flow ────────────────────────────────────────────────
    route_by_station: bool = Field(default=True)

    # ── Storage ──────────────────────────────────────────────────
    database: str = Field(default="billspine.db", description="SQLite row store path")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    def layout(self) -> TableLayout:
        """Build the frozen layout consumed by the core."""
        return TableLayout(
            backing_table=self.backing_table,
            index_table=self.index_table,
            factory_table=self.factory_table,
            header_rows=self.header_rows,
            backing_key_col=self.backing_key_col,
            backing_station_col=self.backing_station_col,
            backing_width=self.backing_width,
            projection=tuple(self.projection),
            barcode_col=self.barcode_col,
            status_col=self.status_col,
            money_col=self.money_col,
            duplicate_col=self.duplicate_col,
            money_formula=MoneyFormula(
                qty_col=self.money_qty_col,
                rate_col=self.money_rate_col,
                fee_col=self.money_fee_col,
                adjustment_col=self.money_adjustment_col,
            ),
            index_stride=self.index_stride,
            read_chunk=self.read_chunk,
            write_chunk=self.write_chunk,
            tail_rows=self.tail_rows,
        )


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, BillSpineSettings] = {}


def get_settings(*, _force_reload: bool = False) -> BillSpineSettings:
    """Load, validate, and cache a :class:`BillSpineSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = BillSpineSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = [
    "BillSpineSettings",
    "CacheBackendKind",
    "get_settings",
    "clear_settings_cache",
]
