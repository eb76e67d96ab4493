from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from ..models.config_models import AggregateConfig
from ..models.processing_result import AggregateResult

"""Derived counts written back after the primary sync.

Example: products per account. Every source row counts regardless of its
status, and a target row without any child gets 0 (never left stale).
"""

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_KEY = "hap_row_id"


def count_groups(store: Any, aggregate: AggregateConfig, source_key: str = DEFAULT_SOURCE_KEY, page_size: int = 1000) -> Counter:
    counts: Counter = Counter()
    for row in store.iter_select(
        aggregate.source_table,
        [aggregate.group_by],
        order_by=[aggregate.group_by, source_key],
        page_size=page_size,
    ):
        value = row.get(aggregate.group_by)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        counts[value] += 1
    return counts


def update_group_counts(
    store: Any, aggregate: AggregateConfig, source_key: str = DEFAULT_SOURCE_KEY, page_size: int = 1000
) -> AggregateResult:
    """Recount ``source_table`` by ``group_by`` and write the counts to ``target_table``.

    Raises PersistenceError when the Data Store fails; the reconciler records
    the aggregate as failed and carries on.
    """
    counts = count_groups(store, aggregate, source_key, page_size)

    values: dict[Any, int] = {}
    for row in store.iter_select(
        aggregate.target_table,
        [aggregate.target_key],
        order_by=aggregate.target_key,
        page_size=page_size,
    ):
        key = row.get(aggregate.target_key)
        if key is None:
            continue
        values[key] = counts.get(key, 0)

    updated = 0
    items = list(values.items())
    for i in range(0, len(items), page_size):
        chunk = dict(items[i:i + page_size])
        updated += store.bulk_update(aggregate.target_table, aggregate.target_key, aggregate.target_column, chunk)

    with_children = sum(1 for v in values.values() if v > 0)
    orphan_groups = len(set(counts) - set(values))
    if orphan_groups:
        logger.debug("%s: %d group value(s) have no %s row", aggregate.name, orphan_groups, aggregate.target_table)
    logger.info(
        "aggregate %s: %s.%s updated for %d row(s) (%d with children)",
        aggregate.name, aggregate.target_table, aggregate.target_column, len(values), with_children,
    )
    return AggregateResult(
        name=aggregate.name,
        target_rows=len(values),
        groups_with_children=with_children,
        updated_rows=updated,
    )
