from .aggregates import update_group_counts
from .reconciler import SyncError, SyncInProgressError, run_sync
from .status import get_sync_status

__all__ = ["SyncError", "SyncInProgressError", "get_sync_status", "run_sync", "update_group_counts"]
