from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

"""Config dataclasses for the worksheet -> Data Store sync tool.

These are the domain models produced by ``fastlane_sync.config.loader``. One
``TableMappingConfig`` per configured worksheet is the single declarative
field-id -> column table; nothing else in the code base carries field ids.
"""

# 揮発列: ハッシュ計算・差分判定の対象外
SYNCED_AT_COLUMN = "synced_from_hap_at"
ROW_HASH_COLUMN = "hap_row_hash"


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None
    port: int | None
    user: str | None
    password: str | None
    database: str | None
    dsn: str | None


@dataclass(frozen=True)
class CredentialConfig:
    """Names of the env vars holding one App-Key / Signature pair."""
    name: str
    app_key_env: str
    sign_env: str


@dataclass(frozen=True)
class FieldSpec:
    name: str  # business attribute name (appName, bundleId ...)
    field_id: str  # opaque worksheet field id or alias
    column: str  # Data Store column
    type: str = "auto"


@dataclass(frozen=True)
class TableMappingConfig:
    """Mapping of one worksheet onto one Data Store table."""
    name: str  # key in the ``tables`` section
    target_table: str
    credentials: str
    natural_key_column: str
    fields: tuple[FieldSpec, ...]
    worksheet_id: str | None = None
    worksheet_id_env: str | None = None
    filter: dict[str, Any] | None = None
    constants: dict[str, Any] | None = None

    @property
    def columns(self) -> list[str]:
        """Columns written on upsert, natural key first, volatile columns last."""
        cols = [self.natural_key_column]
        cols.extend(f.column for f in self.fields if f.column not in cols)
        if self.constants:
            cols.extend(c for c in self.constants if c not in cols)
        cols.extend([ROW_HASH_COLUMN, SYNCED_AT_COLUMN])
        return cols


@dataclass(frozen=True)
class AggregateConfig:
    """Derived count written back after the primary sync (e.g. products per account)."""
    name: str
    source_table: str
    group_by: str
    target_table: str
    target_key: str
    target_column: str


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 15.0


@dataclass(frozen=True)
class SyncConfig:
    """Root configuration object for a sync run."""
    base_url: str
    timezone: str
    page_size: int
    batch_size: int
    max_pages: int
    request_timeout_seconds: float
    retry: RetryConfig
    lookback_days: int
    lock_ttl_seconds: int
    credentials: dict[str, CredentialConfig]
    tables: dict[str, TableMappingConfig]
    database: DatabaseConfig
    aggregates: list[AggregateConfig] = field(default_factory=list)


@dataclass(frozen=True)
class TableRuntime:
    """A table mapping with its credentials and worksheet id resolved from the environment."""
    mapping: TableMappingConfig
    worksheet_id: str
    app_key: str
    sign: str

    @property
    def name(self) -> str:
        return self.mapping.name

    @property
    def lock_name(self) -> str:
        # ワークシート x テーブル単位の排他
        return f"{self.mapping.target_table}:{self.worksheet_id}"
