from __future__ import annotations

import statistics
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

"""Result models for a sync run.

TableStat is produced once per configured table, SyncResult aggregates them
together with the derived-count passes and feeds the SUMMARY line and the
sync_runs metadata row.
"""

TABLE_SUCCESS = "success"
TABLE_FAILED = "failed"


@dataclass(frozen=True)
class TableStat:
    """Per-table sync statistics."""
    table: str  # 設定上のテーブル名
    target_table: str
    worksheet_id: str
    status: str  # success/failed
    total_rows: int  # 取得行数
    new_rows: int
    updated_rows: int
    unchanged_rows: int
    failed_rows: int
    pages: int
    elapsed_seconds: float
    error_message: str | None = None
    total_batches: int = 0
    avg_batch_seconds: float = 0.0
    p95_batch_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AggregateResult:
    """Outcome of one derived-count pass (e.g. products per account)."""
    name: str
    target_rows: int  # 更新対象行数
    groups_with_children: int
    updated_rows: int
    status: str = TABLE_SUCCESS
    error_message: str | None = None


@dataclass(frozen=True)
class SyncResult:
    """Aggregated results of one sync invocation."""
    mode: str  # full/incremental
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    tables: list[TableStat]
    aggregates: list[AggregateResult] = field(default_factory=list)
    run_id: int | None = None
    dry_run: bool = False
    cutoff: datetime | None = None

    @property
    def total_rows(self) -> int:
        return sum(t.total_rows for t in self.tables)

    @property
    def new_rows(self) -> int:
        return sum(t.new_rows for t in self.tables)

    @property
    def updated_rows(self) -> int:
        return sum(t.updated_rows for t in self.tables)

    @property
    def unchanged_rows(self) -> int:
        return sum(t.unchanged_rows for t in self.tables)

    @property
    def failed_rows(self) -> int:
        return sum(t.failed_rows for t in self.tables)

    @property
    def failed_tables(self) -> list[TableStat]:
        return [t for t in self.tables if t.status == TABLE_FAILED]

    @property
    def succeeded(self) -> bool:
        """True when no table aborted and no aggregate failed."""
        return not self.failed_tables and all(a.status == TABLE_SUCCESS for a in self.aggregates)

    @property
    def throughput_rows_per_sec(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.total_rows / self.elapsed_seconds


class BatchStatsAccumulator:
    """Collects per-batch upsert timings and reduces them to count / avg / p95."""

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Returns (total_batches, avg_batch_seconds, p95_batch_seconds)."""
        if not self.batch_times:
            return (0, 0.0, 0.0)

        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)

        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method='inclusive'
            )[18]  # 95th percentile

        return (total_batches, avg_batch_seconds, p95_batch_seconds)
