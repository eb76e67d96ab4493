from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

"""Sync run metadata (sync_runs table) and the dashboard status read model."""

SYNC_TYPE_FULL = "FULL"
SYNC_TYPE_INCREMENTAL = "INCREMENTAL"

STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"

TRIGGERS = ("MANUAL", "AUTO", "SYSTEM")


@dataclass(frozen=True)
class SyncRun:
    id: int
    sync_type: str
    status: str
    triggered_by: str
    hostname: str | None
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    total_rows: int = 0
    new_rows: int = 0
    updated_rows: int = 0
    unchanged_rows: int = 0
    failed_rows: int = 0
    error_message: str | None = None
    stats: dict[str, Any] | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SyncRun:
        names = cls.__dataclass_fields__
        return cls(**{k: v for k, v in row.items() if k in names})


@dataclass(frozen=True)
class SyncStatus:
    """What the dashboard shows: last run + whether a run is in flight."""
    last_sync_time: datetime | None
    is_running: bool
    last_sync_status: str | None
    last_sync_stats: dict[str, Any] | None

    @classmethod
    def empty(cls) -> SyncStatus:
        return cls(last_sync_time=None, is_running=False, last_sync_status=None, last_sync_stats=None)
