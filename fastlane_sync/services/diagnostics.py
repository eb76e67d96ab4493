from __future__ import annotations

import logging
from typing import Any

import pandas as pd

from ..models.config_models import AggregateConfig, TableRuntime
from ..worksheet.client import WorksheetClient
from ..worksheet.mapper import map_record
from .aggregates import DEFAULT_SOURCE_KEY, count_groups

"""Troubleshooting checks over the Data Store and the worksheet service.

All results are pandas DataFrames so the CLI can print them with to_string().
An empty frame means "nothing suspicious".
"""

logger = logging.getLogger(__name__)


def _frame(store: Any, table: str, columns: list[str], order_by: str) -> pd.DataFrame:
    rows = list(store.iter_select(table, columns, order_by=order_by))
    return pd.DataFrame(rows, columns=columns)


def find_duplicate_values(store: Any, table: str, column: str, key_column: str = DEFAULT_SOURCE_KEY) -> pd.DataFrame:
    """Business-field values (e.g. app_id) shared by more than one natural key.

    Columns: <column>, key_count, keys (comma separated)
    """
    df = _frame(store, table, [key_column, column], order_by=key_column)
    df = df.dropna(subset=[column])
    df = df[df[column].astype(str).str.strip() != ""]
    if df.empty:
        return pd.DataFrame(columns=[column, "key_count", "keys"])
    by_value = df.groupby(column)[key_column]
    grouped = pd.DataFrame({
        "key_count": by_value.nunique(),
        "keys": by_value.apply(lambda s: ", ".join(sorted({str(k) for k in s}))),
    })
    dup = grouped[grouped["key_count"] > 1].reset_index()
    return dup.sort_values(["key_count", column], ascending=[False, True]).reset_index(drop=True)


def verify_group_counts(store: Any, aggregate: AggregateConfig, source_key: str = DEFAULT_SOURCE_KEY) -> pd.DataFrame:
    """Stored counts that disagree with a recount of the source table.

    Columns: <target_key>, stored, expected
    """
    counts = count_groups(store, aggregate, source_key)
    target = _frame(store, aggregate.target_table, [aggregate.target_key, aggregate.target_column], order_by=aggregate.target_key)
    target = target.dropna(subset=[aggregate.target_key])
    if target.empty:
        return pd.DataFrame(columns=[aggregate.target_key, "stored", "expected"])
    target = target.rename(columns={aggregate.target_column: "stored"})
    target["expected"] = target[aggregate.target_key].map(lambda k: counts.get(k, 0)).astype(int)
    target["stored"] = pd.to_numeric(target["stored"], errors="coerce").fillna(-1).astype(int)
    mismatch = target[target["stored"] != target["expected"]]
    return mismatch.reset_index(drop=True)


def inspect_worksheet(client: WorksheetClient, runtime: TableRuntime, limit: int = 5, timezone: str = "UTC") -> pd.DataFrame:
    """First ``limit`` rows of a worksheet, mapped as the sync would store them."""
    page = client.list_rows(runtime.worksheet_id, limit, 1)
    logger.info(
        "inspect %s: worksheet=%s shape=%s total=%d", runtime.name, runtime.worksheet_id, page.shape, page.total
    )
    records = []
    for row in page.rows[:limit]:
        rec = map_record(row, runtime.mapping, runtime.worksheet_id, timezone)
        records.append({runtime.mapping.natural_key_column: rec.natural_key, **rec.values})
        unmapped = sorted(k for k in row if k not in {f.field_id for f in runtime.mapping.fields})
        logger.debug("row %s unmapped field ids: %s", rec.natural_key, unmapped)
    columns = [runtime.mapping.natural_key_column] + [c for c in runtime.mapping.columns[1:-2]]
    return pd.DataFrame(records, columns=columns)
