from __future__ import annotations

import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import psycopg2
from psycopg2.extras import execute_values

"""Batch upsert on the natural key.

One ``INSERT ... ON CONFLICT (key) DO UPDATE`` statement per batch through
psycopg2.extras.execute_values (page_size = batch length). Every non-key
column is overwritten from EXCLUDED, so a re-observed row always refreshes
its mapped columns and synced_from_hap_at.

The batch must not contain the same key twice (Postgres refuses to touch a row
twice in one statement); the reconciler dedupes before calling.
"""

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PersistenceError(Exception):
    error_type = "PERSISTENCE_ERROR"


def quote_ident(name: str) -> str:
    if not _IDENT.match(name):
        raise PersistenceError(f"invalid identifier: {name!r}")
    return f'"{name}"'


@dataclass(frozen=True)
class BatchMetrics:
    """Timing of a single upsert statement."""
    batch_size: int
    elapsed_seconds: float
    start_time: float
    end_time: float


@dataclass(frozen=True)
class UpsertResult:
    affected_rows: int


def build_upsert_sql(table: str, columns: Sequence[str], conflict_key: str) -> str:
    if conflict_key not in columns:
        raise PersistenceError(f"conflict key '{conflict_key}' not in columns for {table}")
    cols_sql = ",".join(quote_ident(c) for c in columns)
    key = quote_ident(conflict_key)
    updates = [c for c in columns if c != conflict_key]
    sql = f"INSERT INTO {quote_ident(table)} ({cols_sql}) VALUES %s ON CONFLICT ({key}) "
    if not updates:
        return sql + "DO NOTHING"
    set_sql = ", ".join(f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}" for c in updates)
    return sql + f"DO UPDATE SET {set_sql}"


def batch_upsert(
    cursor: Any,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    conflict_key: str,
    metrics_callback: Callable[[BatchMetrics], None] | None = None,
) -> UpsertResult:
    """Upsert ``rows`` (tuples ordered like ``columns``) in one statement.

    Raises PersistenceError when the Data Store rejects the statement.
    metrics_callback is not invoked for an empty batch.
    """
    rows_list = list(rows)
    if not rows_list:
        return UpsertResult(affected_rows=0)

    sql = build_upsert_sql(table, columns, conflict_key)

    start_time = time.time()
    try:
        execute_values(cursor, sql, rows_list, page_size=len(rows_list))
    except psycopg2.Error as e:
        raise PersistenceError(f"{table}: {str(e).strip()}") from e
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_size=len(rows_list),
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )

    return UpsertResult(affected_rows=len(rows_list))
