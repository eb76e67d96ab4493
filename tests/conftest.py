# Shared pytest fixtures: temp workdir, sample config, fake worksheet service, in-memory data store
from __future__ import annotations

import tempfile
from collections import defaultdict
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from fastlane_sync.config.loader import load_config
from fastlane_sync.db.upsert import BatchMetrics, PersistenceError
from fastlane_sync.logging.init import reset_logging
from fastlane_sync.models.config_models import RetryConfig
from fastlane_sync.models.sync_run import SyncRun
from fastlane_sync.worksheet.client import WorksheetClient

BASE_URL = "https://hap.example.test"


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def sample_config_yaml() -> str:
    return f"""base_url: {BASE_URL}
timezone: UTC
page_size: 2
batch_size: 2
retry:
  max_attempts: 2
  backoff_seconds: 0
  max_backoff_seconds: 0
incremental:
  lookback_days: 1
credentials:
  default:
    app_key_env: HAP_APP_KEY
    sign_env: HAP_SIGN
tables:
  target_apps:
    worksheet_id: ws_apps
    credentials: default
    natural_key_column: hap_row_id
    fields:
      app_name: {{id: f_name}}
      app_id: {{id: f_appid}}
      status: {{id: f_status, type: option}}
      hap_updated_at: {{id: _updatedAt, type: datetime}}
  products:
    worksheet_id: ws_products
    credentials: default
    natural_key_column: hap_row_id
    fields:
      app_name: {{id: p_name}}
      account_email: {{id: p_email}}
      app_status: {{id: p_status, type: option}}
  accounts:
    worksheet_id: ws_accounts
    credentials: default
    natural_key_column: hap_row_id
    fields:
      account_email: {{id: a_email}}
aggregates:
  - name: account_product_count
    source_table: products
    group_by: account_email
    target_table: accounts
    target_key: account_email
    target_column: product_count
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "sync.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def hap_env(monkeypatch) -> dict[str, str]:
    env = {"HAP_APP_KEY": "test-key", "HAP_SIGN": "test-sign"}
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    return env


@pytest.fixture()
def sync_config(write_config: Path, hap_env):
    return load_config(write_config)


# ---------------------------------------------------------------------------
# Fake worksheet service (stands in for requests.Session)
# ---------------------------------------------------------------------------

_NO_JSON = object()


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is _NO_JSON else str(payload))

    def json(self) -> Any:
        if self._payload is _NO_JSON:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload

    @classmethod
    def not_json(cls, status_code: int = 200, text: str = "<html>gateway</html>") -> FakeResponse:
        return cls(status_code, _NO_JSON, text)


def _matches(node: dict[str, Any] | None, row: dict[str, Any]) -> bool:
    if node is None:
        return True
    if node["type"] == "group":
        results = [_matches(c, row) for c in node["children"]]
        return all(results) if node["logic"] == "AND" else any(results)
    value = row.get(node["field"])
    if value is None:
        return False
    if node["operator"] == "eq":
        return str(value) == str(node["value"])
    if node["operator"] == "gte":
        # "YYYY-MM-DD HH:MM:SS" は文字列比較で時系列順
        return str(value) >= str(node["value"])
    raise AssertionError(f"unsupported operator in fake: {node['operator']}")


class FakeWorksheetService:
    """Answers rows/list POSTs from in-memory worksheets, honouring paging and filters."""

    def __init__(self, shape: str = "DATA_ROWS"):
        self.worksheets: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.shape = shape
        self.calls: list[dict[str, Any]] = []
        # (worksheet_id, page_index) -> [Exception | FakeResponse, ...] served before the real page
        self.page_failures: dict[tuple[str, int], list[Any]] = defaultdict(list)
        self.closed = 0

    def add_rows(self, worksheet_id: str, rows: list[dict[str, Any]]) -> None:
        self.worksheets[worksheet_id].extend(rows)

    def request(self, method: str, url: str, headers=None, json=None, timeout=None) -> FakeResponse:
        self.calls.append({"method": method, "url": url, "headers": headers, "json": json, "timeout": timeout})
        worksheet_id = url.split("/worksheets/")[1].split("/")[0]
        page_index = (json or {}).get("pageIndex", 1)
        queue = self.page_failures.get((worksheet_id, page_index))
        if queue:
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        rows = [r for r in self.worksheets.get(worksheet_id, []) if _matches(json.get("filter"), r)]
        size = json["pageSize"]
        page = [dict(r) for r in rows[(page_index - 1) * size: page_index * size]]
        if self.shape == "BARE_ARRAY":
            return FakeResponse(200, page)
        if self.shape == "ROWS":
            return FakeResponse(200, {"rows": page, "total": len(rows)})
        return FakeResponse(200, {"success": True, "error_code": 1, "data": {"rows": page, "total": len(rows)}})

    def close(self) -> None:
        self.closed += 1

    def list_calls(self, worksheet_id: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if f"/worksheets/{worksheet_id}/" in c["url"]]


@pytest.fixture()
def service() -> FakeWorksheetService:
    return FakeWorksheetService()


@pytest.fixture()
def client_factory(service: FakeWorksheetService):
    def factory(runtime):
        return WorksheetClient(
            runtime.app_key, runtime.sign, base_url=BASE_URL, session=service,
            retry=RetryConfig(max_attempts=2, backoff_seconds=0, max_backoff_seconds=0), sleep=lambda s: None,
        )
    return factory


# ---------------------------------------------------------------------------
# In-memory data store (same surface as PostgresDataStore)
# ---------------------------------------------------------------------------

def _sort_key(value: Any) -> tuple[bool, str]:
    return (value is None, "" if value is None else str(value))


class InMemoryDataStore:
    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.runs: list[dict[str, Any]] = []
        self.locks: dict[str, dict[str, Any]] = {}
        self.upsert_calls: list[tuple[str, int]] = []
        # (table, row) -> True で拒否 (制約違反の模擬)
        self.reject = None
        self.fail_start_run = False

    # entities
    def upsert(self, table, records, conflict_key, columns=None, metrics_callback=None):
        self.upsert_calls.append((table, len(records)))
        keys = [r[conflict_key] for r in records]
        if len(keys) != len(set(keys)):
            raise PersistenceError("ON CONFLICT DO UPDATE command cannot affect row a second time")
        for r in records:
            if self.reject is not None and self.reject(table, r):
                raise PersistenceError(f'new row for relation "{table}" violates check constraint ({r[conflict_key]})')
        cols = list(columns) if columns is not None else list(records[0])
        for r in records:
            row = dict(self.tables[table].get(r[conflict_key], {}))
            row.update({c: r.get(c) for c in cols})
            self.tables[table][r[conflict_key]] = row
        if metrics_callback is not None:
            metrics_callback(BatchMetrics(batch_size=len(records), elapsed_seconds=0.001, start_time=0.0, end_time=0.001))
        return len(records)

    def fetch_hashes(self, table, key_column, keys, hash_column="hap_row_hash"):
        rows = self.tables[table]
        return {k: rows[k].get(hash_column) for k in keys if k in rows}

    def count(self, table, where=None, params=()):
        return len(self.tables[table])

    def rows(self, table) -> list[dict[str, Any]]:
        return list(self.tables[table].values())

    def select(self, table, columns=None, where=None, params=(), order_by=None, limit=None, offset=None):
        rows = self.rows(table)
        if order_by:
            order = [order_by] if isinstance(order_by, str) else list(order_by)
            rows.sort(key=lambda r: tuple(_sort_key(r.get(c)) for c in order))
        rows = rows[offset or 0:]
        if limit is not None:
            rows = rows[:limit]
        return [{c: r.get(c) for c in columns} if columns else dict(r) for r in rows]

    def iter_select(self, table, columns, order_by, where=None, params=(), page_size=1000):
        yield from self.select(table, columns, where, params, order_by=order_by)

    def bulk_update(self, table, key_column, column, values):
        n = 0
        for row in self.tables[table].values():
            if row.get(key_column) in values:
                row[column] = values[row[key_column]]
                n += 1
        return n

    # sync_runs
    def start_run(self, sync_type, triggered_by, hostname, started_at):
        if self.fail_start_run:
            raise PersistenceError('relation "sync_runs" does not exist')
        run = {
            "id": len(self.runs) + 1, "sync_type": sync_type, "status": "IN_PROGRESS",
            "triggered_by": triggered_by, "hostname": hostname, "started_at": started_at,
        }
        self.runs.append(run)
        return run["id"]

    def finish_run(self, run_id, status, completed_at, duration_seconds, counters, error_message=None, stats=None):
        run = self.runs[run_id - 1]
        run.update(status=status, completed_at=completed_at, duration_seconds=duration_seconds,
                   error_message=error_message, stats=stats, **counters)

    def latest_run(self, sync_type=None):
        runs = [r for r in self.runs if sync_type is None or r["sync_type"] == sync_type]
        return SyncRun.from_row(runs[-1]) if runs else None

    # sync_locks
    def acquire_lock(self, name, owner, ttl_seconds):
        now = datetime.now(UTC)
        held = self.locks.get(name)
        if held and held["owner"] != owner and held["expires_at"] > now:
            return False
        self.locks[name] = {"lock_name": name, "owner": owner, "acquired_at": now,
                            "heartbeat_at": now, "expires_at": now + timedelta(seconds=ttl_seconds)}
        return True

    def refresh_lock(self, name, owner, ttl_seconds):
        held = self.locks.get(name)
        if not held or held["owner"] != owner:
            return False
        now = datetime.now(UTC)
        held.update(heartbeat_at=now, expires_at=now + timedelta(seconds=ttl_seconds))
        return True

    def release_lock(self, name, owner):
        held = self.locks.get(name)
        if held and held["owner"] == owner:
            del self.locks[name]

    def lock_active(self):
        now = datetime.now(UTC)
        return [dict(v) for k, v in sorted(self.locks.items()) if v["expires_at"] > now]


@pytest.fixture()
def store() -> InMemoryDataStore:
    return InMemoryDataStore()


def app_row(row_id: str, name: str, app_id: str, updated_at: str = "2024-05-01 10:00:00", status: str | None = "online") -> dict[str, Any]:
    row: dict[str, Any] = {
        "rowid": row_id,
        "f_name": name,
        "f_appid": app_id,
        "_createdAt": "2024-01-01 00:00:00",
        "_updatedAt": updated_at,
    }
    if status is not None:
        row["f_status"] = [{"key": f"k-{status}", "value": status}]
    return row


@pytest.fixture()
def make_app_row():
    return app_row


@pytest.fixture()
def fake_response():
    return FakeResponse


# ---------------------------------------------------------------------------
# CLI wiring: fake worksheet service + in-memory store behind main()
# ---------------------------------------------------------------------------

@pytest.fixture()
def fake_factory(monkeypatch, client_factory):
    monkeypatch.setattr("fastlane_sync.services.reconciler.default_client_factory", lambda cfg: client_factory)
    monkeypatch.setattr("fastlane_sync.cli.__main__.default_client_factory", lambda cfg: client_factory)
    return client_factory


@pytest.fixture()
def live_store(monkeypatch, store):
    monkeypatch.delenv("DISABLE_DB_CONNECT", raising=False)

    @contextmanager
    def fake_connection(db_cfg):
        yield object()

    monkeypatch.setattr("fastlane_sync.cli.__main__.db_connection", fake_connection)
    monkeypatch.setattr("fastlane_sync.cli.__main__.PostgresDataStore", lambda cur: store)
    return store
