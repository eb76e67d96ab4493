from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from fastlane_sync.db.upsert import PersistenceError
from fastlane_sync.services.lock import SyncInProgressError, SyncLocks, make_owner


def test_make_owner_is_unique():
    assert make_owner() != make_owner()


def test_acquire_in_sorted_order_and_release_in_reverse(store):
    locks = SyncLocks(store, ["products:ws2", "accounts:ws1", "products:ws2"], 60, owner="me")
    locks.acquire()
    assert locks.held == ["accounts:ws1", "products:ws2"]
    assert set(store.locks) == {"accounts:ws1", "products:ws2"}
    locks.release()
    assert store.locks == {}
    assert locks.held == []


def test_busy_lock_releases_partial_set(store):
    store.acquire_lock("products:ws2", "other", 60)
    locks = SyncLocks(store, ["accounts:ws1", "products:ws2"], 60, owner="me")
    with pytest.raises(SyncInProgressError) as e:
        locks.acquire()
    assert e.value.lock_name == "products:ws2"
    # 先に取った accounts も解放済み
    assert "accounts:ws1" not in store.locks
    assert store.locks["products:ws2"]["owner"] == "other"


def test_expired_lock_is_taken_over(store):
    store.acquire_lock("products:ws2", "crashed", 60)
    store.locks["products:ws2"]["expires_at"] = datetime.now(UTC) - timedelta(seconds=1)
    with SyncLocks(store, ["products:ws2"], 60, owner="me") as locks:
        assert store.locks["products:ws2"]["owner"] == "me"
        assert locks.held == ["products:ws2"]
    assert store.locks == {}


def test_heartbeat_refreshes_and_warns_when_lost(store, capsys):
    from fastlane_sync.logging.init import setup_logging

    setup_logging()
    locks = SyncLocks(store, ["a:1"], 60, owner="me")
    locks.acquire()
    before = store.locks["a:1"]["expires_at"]
    locks.heartbeat()
    assert store.locks["a:1"]["expires_at"] >= before

    del store.locks["a:1"]
    locks.heartbeat()
    assert "WARN lock 'a:1' was lost" in capsys.readouterr().out


def test_release_failure_is_logged_not_raised():
    store = MagicMock()
    store.acquire_lock.return_value = True
    store.release_lock.side_effect = PersistenceError("connection closed")
    locks = SyncLocks(store, ["a:1"], 60, owner="me")
    locks.acquire()
    locks.release()
    assert locks.held == []
