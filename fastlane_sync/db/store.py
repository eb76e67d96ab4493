from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import psycopg2
from psycopg2.extras import Json, execute_values

from fastlane_sync.models.sync_run import SyncRun

from .upsert import BatchMetrics, PersistenceError, batch_upsert, quote_ident

"""Data Store accessor over a psycopg2 cursor.

Identifiers are validated and double-quoted; values are always bound. Every
driver error surfaces as PersistenceError. The CLI opens the connection in
autocommit mode, so each statement stands on its own.
"""

logger = logging.getLogger(__name__)

SCHEMA_SQL_PATH = Path(__file__).with_name("schema.sql")

_RUN_COLUMNS = (
    "id", "sync_type", "status", "triggered_by", "hostname", "started_at",
    "completed_at", "duration_seconds", "total_rows", "new_rows", "updated_rows",
    "unchanged_rows", "failed_rows", "error_message", "stats",
)


def _adapt(value: Any) -> Any:
    # dict は jsonb、list はそのまま ARRAY として渡す
    if isinstance(value, dict):
        return Json(value)
    return value


class PostgresDataStore:
    def __init__(self, cursor: Any):
        self.cursor = cursor

    # ------------------------------------------------------------------
    def _execute(self, sql: str, params: Sequence[Any] | dict[str, Any] | None = None) -> None:
        try:
            self.cursor.execute(sql, params)
        except psycopg2.Error as e:
            raise PersistenceError(str(e).strip()) from e

    def _fetch_dicts(self) -> list[dict[str, Any]]:
        try:
            rows = self.cursor.fetchall()
        except psycopg2.Error as e:
            raise PersistenceError(str(e).strip()) from e
        names = [d[0] for d in self.cursor.description]
        return [dict(zip(names, r)) for r in rows]

    def init_schema(self, path: Path = SCHEMA_SQL_PATH) -> None:
        self._execute(path.read_text(encoding="utf-8"))

    # ------------------------------------------------------------------ entities
    def upsert(
        self,
        table: str,
        records: Sequence[dict[str, Any]],
        conflict_key: str,
        columns: Sequence[str] | None = None,
        metrics_callback: Callable[[BatchMetrics], None] | None = None,
    ) -> int:
        if not records:
            return 0
        cols = list(columns) if columns is not None else list(records[0])
        rows = [tuple(_adapt(r.get(c)) for c in cols) for r in records]
        result = batch_upsert(self.cursor, table, cols, rows, conflict_key, metrics_callback=metrics_callback)
        return result.affected_rows

    def fetch_hashes(self, table: str, key_column: str, keys: Sequence[str], hash_column: str = "hap_row_hash") -> dict[str, str | None]:
        """Stored row hash per natural key; keys not yet stored are absent."""
        if not keys:
            return {}
        sql = (
            f"SELECT {quote_ident(key_column)}, {quote_ident(hash_column)} "
            f"FROM {quote_ident(table)} WHERE {quote_ident(key_column)} = ANY(%s)"
        )
        self._execute(sql, (list(keys),))
        try:
            return {str(k): h for k, h in self.cursor.fetchall()}
        except psycopg2.Error as e:
            raise PersistenceError(str(e).strip()) from e

    def count(self, table: str, where: str | None = None, params: Sequence[Any] = ()) -> int:
        sql = f"SELECT COUNT(*) FROM {quote_ident(table)}"
        if where:
            sql += f" WHERE {where}"
        self._execute(sql, tuple(params))
        row = self.cursor.fetchone()
        return int(row[0]) if row else 0

    def select(
        self,
        table: str,
        columns: Sequence[str] | None = None,
        where: str | None = None,
        params: Sequence[Any] = (),
        order_by: str | Sequence[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        cols = ", ".join(quote_ident(c) for c in columns) if columns else "*"
        sql = f"SELECT {cols} FROM {quote_ident(table)}"
        if where:
            sql += f" WHERE {where}"
        if order_by:
            order = [order_by] if isinstance(order_by, str) else list(order_by)
            sql += " ORDER BY " + ", ".join(quote_ident(c) for c in order)
        bound = list(params)
        if limit is not None:
            sql += " LIMIT %s"
            bound.append(limit)
        if offset:
            sql += " OFFSET %s"
            bound.append(offset)
        self._execute(sql, tuple(bound))
        return self._fetch_dicts()

    def iter_select(
        self,
        table: str,
        columns: Sequence[str],
        order_by: str | Sequence[str],
        where: str | None = None,
        params: Sequence[Any] = (),
        page_size: int = 1000,
    ) -> Iterator[dict[str, Any]]:
        """Page through a table (LIMIT/OFFSET ordered by ``order_by``)."""
        offset = 0
        while True:
            page = self.select(table, columns, where, params, order_by=order_by, limit=page_size, offset=offset)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def bulk_update(self, table: str, key_column: str, column: str, values: dict[str, Any]) -> int:
        """``UPDATE table SET column = v WHERE key_column = k`` for every (k, v), one statement."""
        if not values:
            return 0
        sql = (
            f"UPDATE {quote_ident(table)} AS t SET {quote_ident(column)} = v.val "
            f"FROM (VALUES %s) AS v(key, val) WHERE t.{quote_ident(key_column)} = v.key"
        )
        rows = list(values.items())
        try:
            execute_values(self.cursor, sql, rows, page_size=len(rows))
        except psycopg2.Error as e:
            raise PersistenceError(f"{table}: {str(e).strip()}") from e
        return max(self.cursor.rowcount, 0)

    # ------------------------------------------------------------------ sync_runs
    def start_run(self, sync_type: str, triggered_by: str, hostname: str | None, started_at: datetime) -> int:
        self._execute(
            "INSERT INTO sync_runs (sync_type, status, triggered_by, hostname, started_at) "
            "VALUES (%s, 'IN_PROGRESS', %s, %s, %s) RETURNING id",
            (sync_type, triggered_by, hostname, started_at),
        )
        return int(self.cursor.fetchone()[0])

    def finish_run(
        self,
        run_id: int,
        status: str,
        completed_at: datetime,
        duration_seconds: float,
        counters: dict[str, int],
        error_message: str | None = None,
        stats: dict[str, Any] | None = None,
    ) -> None:
        self._execute(
            "UPDATE sync_runs SET status = %s, completed_at = %s, duration_seconds = %s, "
            "total_rows = %s, new_rows = %s, updated_rows = %s, unchanged_rows = %s, failed_rows = %s, "
            "error_message = %s, stats = %s WHERE id = %s",
            (
                status, completed_at, duration_seconds,
                counters.get("total_rows", 0), counters.get("new_rows", 0),
                counters.get("updated_rows", 0), counters.get("unchanged_rows", 0),
                counters.get("failed_rows", 0), error_message,
                Json(stats) if stats is not None else None, run_id,
            ),
        )

    def latest_run(self, sync_type: str | None = None) -> SyncRun | None:
        sql = f"SELECT {', '.join(_RUN_COLUMNS)} FROM sync_runs"
        params: tuple[Any, ...] = ()
        if sync_type:
            sql += " WHERE sync_type = %s"
            params = (sync_type,)
        sql += " ORDER BY started_at DESC, id DESC LIMIT 1"
        self._execute(sql, params)
        rows = self._fetch_dicts()
        return SyncRun.from_row(rows[0]) if rows else None

    # ------------------------------------------------------------------ sync_locks
    def acquire_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Take the lock unless another owner holds it and it has not expired."""
        self._execute(
            "INSERT INTO sync_locks (lock_name, owner, acquired_at, heartbeat_at, expires_at) "
            "VALUES (%s, %s, now(), now(), now() + %s * interval '1 second') "
            "ON CONFLICT (lock_name) DO UPDATE SET owner = EXCLUDED.owner, "
            "acquired_at = EXCLUDED.acquired_at, heartbeat_at = EXCLUDED.heartbeat_at, "
            "expires_at = EXCLUDED.expires_at "
            "WHERE sync_locks.expires_at < now() OR sync_locks.owner = EXCLUDED.owner "
            "RETURNING lock_name",
            (name, owner, ttl_seconds),
        )
        return self.cursor.fetchone() is not None

    def refresh_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        self._execute(
            "UPDATE sync_locks SET heartbeat_at = now(), expires_at = now() + %s * interval '1 second' "
            "WHERE lock_name = %s AND owner = %s",
            (ttl_seconds, name, owner),
        )
        return self.cursor.rowcount > 0

    def release_lock(self, name: str, owner: str) -> None:
        self._execute("DELETE FROM sync_locks WHERE lock_name = %s AND owner = %s", (name, owner))

    def lock_active(self) -> list[dict[str, Any]]:
        self._execute(
            "SELECT lock_name, owner, acquired_at, heartbeat_at, expires_at "
            "FROM sync_locks WHERE expires_at > now() ORDER BY lock_name"
        )
        return self._fetch_dicts()
