"""Domain models for the worksheet -> Data Store sync tool."""

from .config_models import (
    AggregateConfig,
    CredentialConfig,
    DatabaseConfig,
    FieldSpec,
    RetryConfig,
    SyncConfig,
    TableMappingConfig,
    TableRuntime,
)
from .error_record import ErrorRecord
from .mapped_record import MappedRecord, row_hash
from .processing_result import AggregateResult, SyncResult, TableStat
from .sync_run import SyncRun, SyncStatus

__all__ = [
    # Configuration models
    "AggregateConfig",
    "CredentialConfig",
    "DatabaseConfig",
    "FieldSpec",
    "RetryConfig",
    "SyncConfig",
    "TableMappingConfig",
    "TableRuntime",
    # Records
    "ErrorRecord",
    "MappedRecord",
    "row_hash",
    # Results
    "AggregateResult",
    "SyncResult",
    "TableStat",
    "SyncRun",
    "SyncStatus",
]
