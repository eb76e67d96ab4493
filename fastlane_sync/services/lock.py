from __future__ import annotations

import logging
import os
import socket
import uuid
from collections.abc import Iterable
from typing import Any

from ..db.upsert import PersistenceError

"""Cross-process mutual exclusion via the ``sync_locks`` table.

A lock row carries an expiry; the holder refreshes it (heartbeat) after every
page. A crashed run releases implicitly once ``expires_at`` passes.
"""

logger = logging.getLogger(__name__)


class SyncInProgressError(Exception):
    """Another run holds an unexpired lock on one of the selected tables."""

    def __init__(self, lock_name: str):
        super().__init__(f"sync already in progress: lock '{lock_name}' is held")
        self.lock_name = lock_name


def make_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class SyncLocks:
    """Acquire a set of locks (sorted, all-or-nothing) and release them on exit."""

    def __init__(self, store: Any, names: Iterable[str], ttl_seconds: int, owner: str | None = None):
        self.store = store
        self.names = sorted(set(names))
        self.ttl_seconds = ttl_seconds
        self.owner = owner or make_owner()
        self.held: list[str] = []

    def acquire(self) -> None:
        for name in self.names:
            if not self.store.acquire_lock(name, self.owner, self.ttl_seconds):
                self.release()
                raise SyncInProgressError(name)
            self.held.append(name)
        logger.debug("locks acquired owner=%s names=%s", self.owner, self.held)

    def heartbeat(self) -> None:
        for name in self.held:
            if not self.store.refresh_lock(name, self.owner, self.ttl_seconds):
                logger.warning("lock '%s' was lost (expired and taken over?)", name)

    def release(self) -> None:
        for name in reversed(self.held):
            try:
                self.store.release_lock(name, self.owner)
            except PersistenceError as e:
                # 解放失敗は TTL 経過で自然解放
                logger.warning("failed to release lock '%s' (expires in <=%ds): %s", name, self.ttl_seconds, e)
        self.held.clear()

    def __enter__(self) -> SyncLocks:
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.release()
