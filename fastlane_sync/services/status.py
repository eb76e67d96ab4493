from __future__ import annotations

import logging
from typing import Any

from ..db.upsert import PersistenceError
from ..models.sync_run import SyncStatus

logger = logging.getLogger(__name__)


def get_sync_status(store: Any, sync_type: str | None = None) -> SyncStatus:
    """Dashboard read model from the latest sync_runs row and active locks.

    Never raises on a Data Store failure: logs a warning and returns an empty
    status instead.
    """
    try:
        run = store.latest_run(sync_type)
        locks = store.lock_active()
    except PersistenceError as e:
        logger.warning("sync status unavailable: %s", e)
        return SyncStatus.empty()

    # IN_PROGRESS でもロック失効済みならクラッシュ扱い (実行中ではない)
    is_running = bool(locks)
    if run is None:
        return SyncStatus(last_sync_time=None, is_running=is_running, last_sync_status=None, last_sync_stats=None)

    stats = {
        "sync_type": run.sync_type,
        "triggered_by": run.triggered_by,
        "total_rows": run.total_rows,
        "new_rows": run.new_rows,
        "updated_rows": run.updated_rows,
        "unchanged_rows": run.unchanged_rows,
        "failed_rows": run.failed_rows,
        "duration_seconds": run.duration_seconds,
        "error_message": run.error_message,
    }
    if run.stats:
        stats["details"] = run.stats
    return SyncStatus(
        last_sync_time=run.completed_at or run.started_at,
        is_running=is_running,
        last_sync_status=run.status,
        last_sync_stats=stats,
    )
