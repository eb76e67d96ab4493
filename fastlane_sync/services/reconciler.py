from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from ..config.loader import resolve_tables
from ..db.upsert import PersistenceError
from ..logging.error_log import ErrorLogBuffer
from ..models.config_models import ROW_HASH_COLUMN, SYNCED_AT_COLUMN, SyncConfig, TableRuntime
from ..models.mapped_record import MappedRecord
from ..models.processing_result import (
    TABLE_FAILED,
    TABLE_SUCCESS,
    AggregateResult,
    BatchStatsAccumulator,
    SyncResult,
    TableStat,
)
from ..models.sync_run import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    SYNC_TYPE_FULL,
    SYNC_TYPE_INCREMENTAL,
    TRIGGERS,
)
from ..worksheet.client import WorksheetClient, iter_pages
from ..worksheet.errors import UpstreamError
from ..worksheet.filters import Node, build_filter, combine, incremental_filter
from ..worksheet.mapper import extract_natural_key, map_record
from .aggregates import update_group_counts
from .lock import SyncInProgressError, SyncLocks
from .progress import ProgressTracker

"""Reconciler: pull -> map -> upsert for every configured table.

run_sync() flow:
1. resolve credentials / worksheet ids (ConfigurationError before any call)
2. acquire the table locks (SyncInProgressError if one is held)
3. sync_runs row IN_PROGRESS
4. per table: page, map, dedupe per batch, classify by row hash, upsert
5. derived aggregates for tables that synced cleanly
6. sync_runs row COMPLETED / FAILED, error log flush, locks released

Without a store (dry-run) only steps 1 and 4 (pull + map) happen.
"""

logger = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_INCREMENTAL = "incremental"
MODES = (MODE_FULL, MODE_INCREMENTAL)

ClientFactory = Callable[[TableRuntime], WorksheetClient]

__all__ = [
    "MODES",
    "SyncError",
    "SyncInProgressError",
    "compute_cutoff",
    "default_client_factory",
    "run_sync",
]


class SyncError(Exception):
    """Run-level failure (e.g. the sync_runs row cannot be written)."""


@dataclass
class _Counters:
    total: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    pages: int = 0


def default_client_factory(config: SyncConfig) -> ClientFactory:
    def factory(runtime: TableRuntime) -> WorksheetClient:
        return WorksheetClient(
            runtime.app_key,
            runtime.sign,
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
            retry=config.retry,
        )
    return factory


def compute_cutoff(
    config: SyncConfig, mode: str, cutoff: datetime | None = None, now: datetime | None = None
) -> datetime | None:
    """None for a full sync; otherwise the caller's cutoff or now - lookback_days."""
    if mode == MODE_FULL:
        return None
    if cutoff is not None:
        return cutoff
    return (now or datetime.now(UTC)) - timedelta(days=config.lookback_days)


class _TableSync:
    """Sync state of one table: pending batch, counters, timings."""

    def __init__(
        self,
        runtime: TableRuntime,
        config: SyncConfig,
        store: Any,
        error_log: ErrorLogBuffer,
    ):
        self.rt = runtime
        self.mapping = runtime.mapping
        self.config = config
        self.store = store
        self.error_log = error_log
        self.counters = _Counters()
        self.batch_stats = BatchStatsAccumulator()
        # 同一バッチ内の重複キーは後勝ち (ON CONFLICT は同一行を 2 回更新できない)
        self.pending: dict[str, MappedRecord] = {}

    def add_row(self, row: dict[str, Any]) -> None:
        self.counters.total += 1
        try:
            rec = map_record(row, self.mapping, self.rt.worksheet_id, self.config.timezone)
        except (ValueError, TypeError, ArithmeticError) as e:
            self._fail(extract_natural_key(row), "MAPPING_ERROR", str(e))
            return
        if rec.natural_key is None:
            self._fail(None, "MISSING_NATURAL_KEY", "row has no rowid")
            return
        if rec.natural_key in self.pending:
            logger.debug("%s: duplicate key %s within batch, last wins", self.rt.name, rec.natural_key)
            del self.pending[rec.natural_key]
            # 上書きされた行は書き込まれないので unchanged に数える (rows = new+updated+unchanged+failed)
            if self.store is not None:
                self.counters.unchanged += 1
        self.pending[rec.natural_key] = rec
        if len(self.pending) >= self.config.batch_size:
            self.flush()

    def flush(self) -> None:
        records = list(self.pending.values())
        self.pending.clear()
        if not records or self.store is None:
            return

        table = self.mapping.target_table
        key_column = self.mapping.natural_key_column
        try:
            existing = self.store.fetch_hashes(table, key_column, [r.natural_key for r in records])
        except PersistenceError as e:
            for r in records:
                self._fail(r.natural_key, e.error_type, str(e))
            return

        synced_at = datetime.now(UTC)
        rows = []
        for r in records:
            row = r.to_row(key_column)
            row[ROW_HASH_COLUMN] = r.row_hash
            row[SYNCED_AT_COLUMN] = synced_at
            rows.append(row)

        columns = self.mapping.columns
        try:
            self.store.upsert(
                table, rows, key_column, columns=columns,
                metrics_callback=lambda m: self.batch_stats.add_batch_time(m.elapsed_seconds),
            )
        except PersistenceError as e:
            logger.warning("%s: batch of %d rejected, retrying per record: %s", self.rt.name, len(rows), e)
            for r, row in zip(records, rows):
                try:
                    self.store.upsert(table, [row], key_column, columns=columns)
                except PersistenceError as rec_err:
                    self._fail(r.natural_key, rec_err.error_type, str(rec_err))
                    continue
                self._classify(r, existing)
            return

        for r in records:
            self._classify(r, existing)

    def _classify(self, rec: MappedRecord, existing: Mapping[str, str | None]) -> None:
        if rec.natural_key not in existing:
            self.counters.new += 1
        elif existing[rec.natural_key] != rec.row_hash:
            self.counters.updated += 1
        else:
            self.counters.unchanged += 1

    def _fail(self, natural_key: str | None, error_type: str, message: str) -> None:
        self.counters.failed += 1
        self.error_log.record(self.rt.name, self.rt.worksheet_id, natural_key, error_type, message)
        logger.warning("%s: row %s rejected (%s): %s", self.rt.name, natural_key or "<no key>", error_type, message)

    def stat(self, status: str, elapsed: float, error_message: str | None = None) -> TableStat:
        total_batches, avg_batch, p95_batch = self.batch_stats.get_stats()
        c = self.counters
        return TableStat(
            table=self.rt.name,
            target_table=self.mapping.target_table,
            worksheet_id=self.rt.worksheet_id,
            status=status,
            total_rows=c.total,
            new_rows=c.new,
            updated_rows=c.updated,
            unchanged_rows=c.unchanged,
            failed_rows=c.failed,
            pages=c.pages,
            elapsed_seconds=elapsed,
            error_message=error_message,
            total_batches=total_batches,
            avg_batch_seconds=avg_batch,
            p95_batch_seconds=p95_batch,
        )


def _sync_table(
    runtime: TableRuntime,
    config: SyncConfig,
    client_factory: ClientFactory,
    store: Any,
    window: Node | None,
    error_log: ErrorLogBuffer,
    progress: ProgressTracker,
    locks: SyncLocks | None,
) -> TableStat:
    state = _TableSync(runtime, config, store, error_log)
    flt = combine(build_filter(runtime.mapping.filter), window)
    started = time.perf_counter()
    logger.info("sync %s -> %s (worksheet=%s)", runtime.name, runtime.mapping.target_table, runtime.worksheet_id)
    try:
        with client_factory(runtime) as client:
            for page in iter_pages(client, runtime.worksheet_id, config.page_size, flt, config.max_pages):
                state.counters.pages += 1
                for row in page.rows:
                    state.add_row(row)
                progress.page_done(len(page.rows))
                if locks is not None:
                    locks.heartbeat()
        state.flush()
    except UpstreamError as e:
        # 取得済み分は反映してからテーブルを中断
        state.flush()
        message = f"{e.error_type}: {e}"
        error_log.record(runtime.name, runtime.worksheet_id, None, e.error_type, str(e))
        logger.error("%s aborted after %d row(s): %s", runtime.name, state.counters.total, message)
        return state.stat(TABLE_FAILED, time.perf_counter() - started, message)

    stat = state.stat(TABLE_SUCCESS, time.perf_counter() - started)
    logger.info(
        "%s done rows=%d new=%d updated=%d unchanged=%d failed=%d pages=%d",
        stat.table, stat.total_rows, stat.new_rows, stat.updated_rows,
        stat.unchanged_rows, stat.failed_rows, stat.pages,
    )
    return stat


def _run_aggregates(config: SyncConfig, store: Any, stats: list[TableStat], error_log: ErrorLogBuffer) -> list[AggregateResult]:
    synced = {s.target_table for s in stats}
    failed = {s.target_table for s in stats if s.status == TABLE_FAILED}
    key_columns = {t.target_table: t.natural_key_column for t in config.tables.values()}
    results = []
    for agg in config.aggregates:
        if agg.source_table not in synced and agg.target_table not in synced:
            logger.debug("aggregate %s skipped: neither table selected", agg.name)
            continue
        if agg.source_table in failed:
            logger.warning("aggregate %s skipped: source table %s did not sync cleanly", agg.name, agg.source_table)
            continue
        try:
            results.append(update_group_counts(store, agg, key_columns[agg.source_table]))
        except PersistenceError as e:
            error_log.record(agg.target_table, "-", None, "AGGREGATE_ERROR", f"{agg.name}: {e}")
            logger.error("aggregate %s failed: %s", agg.name, e)
            results.append(
                AggregateResult(
                    name=agg.name, target_rows=0, groups_with_children=0, updated_rows=0,
                    status=TABLE_FAILED, error_message=str(e),
                )
            )
    return results


def _run_error_message(result: SyncResult) -> str | None:
    parts = [f"{t.table}: {t.error_message}" for t in result.failed_tables]
    parts += [f"aggregate {a.name}: {a.error_message}" for a in result.aggregates if a.status != TABLE_SUCCESS]
    return "; ".join(parts) or None


def _finish_run(store: Any, run_id: int, result: SyncResult) -> None:
    store.finish_run(
        run_id,
        STATUS_COMPLETED if result.succeeded else STATUS_FAILED,
        result.end_time,
        result.elapsed_seconds,
        {
            "total_rows": result.total_rows,
            "new_rows": result.new_rows,
            "updated_rows": result.updated_rows,
            "unchanged_rows": result.unchanged_rows,
            "failed_rows": result.failed_rows,
        },
        error_message=_run_error_message(result),
        stats={
            "mode": result.mode,
            "cutoff": result.cutoff.isoformat() if result.cutoff else None,
            "tables": [t.to_dict() for t in result.tables],
            "aggregates": [asdict(a) for a in result.aggregates],
        },
    )


def run_sync(
    config: SyncConfig,
    mode: str,
    store: Any = None,
    client_factory: ClientFactory | None = None,
    cutoff: datetime | None = None,
    tables: list[str] | None = None,
    triggered_by: str = "MANUAL",
    environ: Mapping[str, str] | None = None,
    error_log: ErrorLogBuffer | None = None,
) -> SyncResult:
    """Run one full or incremental sync.

    Args:
        config: loaded SyncConfig
        mode: "full" or "incremental"
        store: PostgresDataStore (or compatible); None = dry-run (pull + map only)
        client_factory: builds a WorksheetClient per table (tests inject fakes)
        cutoff: incremental window start; default now - incremental.lookback_days
        tables: subset of configured table names (config order otherwise)
        triggered_by: MANUAL / AUTO / SYSTEM, stored in sync_runs

    Raises:
        ConfigurationError: credentials / worksheet ids missing (before any call)
        SyncInProgressError: another run holds one of the table locks
        SyncError: sync_runs bookkeeping failed at start
    """
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}: {mode!r}")
    if triggered_by not in TRIGGERS:
        raise ValueError(f"triggered_by must be one of {TRIGGERS}: {triggered_by!r}")

    runtimes = resolve_tables(config, tables, environ)
    factory = client_factory or default_client_factory(config)
    window_cutoff = compute_cutoff(config, mode, cutoff)
    window = incremental_filter(window_cutoff, config.timezone) if window_cutoff is not None else None
    error_log = error_log if error_log is not None else ErrorLogBuffer()
    dry_run = store is None
    sync_type = SYNC_TYPE_FULL if mode == MODE_FULL else SYNC_TYPE_INCREMENTAL

    if window_cutoff is not None:
        logger.info("incremental window: rows created/updated since %s", window_cutoff.isoformat())
    if dry_run:
        logger.info("dry-run: no data store writes, no locks, no run metadata")

    start_time = datetime.now(UTC)
    locks: SyncLocks | None = None
    run_id: int | None = None
    finished = False
    try:
        if not dry_run:
            locks = SyncLocks(store, [rt.lock_name for rt in runtimes], config.lock_ttl_seconds)
            locks.acquire()
            try:
                run_id = store.start_run(sync_type, triggered_by, socket.gethostname(), start_time)
            except PersistenceError as e:
                raise SyncError(f"cannot record sync run: {e}") from e

        stats: list[TableStat] = []
        with ProgressTracker(len(runtimes)) as progress:
            for rt in runtimes:
                progress.start_table(rt.name)
                stat = _sync_table(rt, config, factory, store, window, error_log, progress, locks)
                stats.append(stat)
                progress.finish_table(success=stat.status == TABLE_SUCCESS)

        aggregates = [] if dry_run else _run_aggregates(config, store, stats, error_log)

        end_time = datetime.now(UTC)
        result = SyncResult(
            mode=mode,
            start_time=start_time,
            end_time=end_time,
            elapsed_seconds=(end_time - start_time).total_seconds(),
            tables=stats,
            aggregates=aggregates,
            run_id=run_id,
            dry_run=dry_run,
            cutoff=window_cutoff,
        )
        if run_id is not None:
            _finish_run(store, run_id, result)
        finished = True
        return result
    except BaseException as e:
        if run_id is not None and not finished:
            _mark_failed(store, run_id, start_time, e)
        raise
    finally:
        path = error_log.flush()
        if path is not None:
            logger.info("error log: %s", path)
        if locks is not None:
            locks.release()


def _mark_failed(store: Any, run_id: int, start_time: datetime, error: BaseException) -> None:
    end_time = datetime.now(UTC)
    try:
        store.finish_run(
            run_id, STATUS_FAILED, end_time, (end_time - start_time).total_seconds(),
            {}, error_message=f"{type(error).__name__}: {error}",
        )
    except PersistenceError as e:
        logger.error("could not mark sync run %s as FAILED: %s", run_id, e)
