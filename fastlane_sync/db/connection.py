from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

import psycopg2

from fastlane_sync.models.config_models import DatabaseConfig

from .upsert import PersistenceError

DSN_ENV_VARS = ("DATABASE_URL", "SUPABASE_DB_URL", "PGDSN")


def resolve_dsn(db_cfg: DatabaseConfig, environ: Mapping[str, str] | None = None) -> str:
    """Connection string resolution.

    優先順位 (.env は main() 冒頭で override=True 読込済み):
        1. DATABASE_URL / SUPABASE_DB_URL / PGDSN (DSN 全体)
        2. config の database.dsn
        3. 個別 PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE、不足分は config で補完
    """
    env = os.environ if environ is None else environ
    for var in DSN_ENV_VARS:
        if env.get(var):
            return env[var]
    if db_cfg.dsn:
        return db_cfg.dsn
    host = env.get("PGHOST", db_cfg.host or "localhost")
    port = env.get("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = env.get("PGUSER", db_cfg.user or "postgres")
    password = env.get("PGPASSWORD", db_cfg.password or "")
    database = env.get("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


@contextmanager
def db_connection(db_cfg: DatabaseConfig) -> Iterator[Any]:  # pragma: no cover (thin wrapper)
    """Yield a psycopg2 cursor on an autocommit connection.

    autocommit: 各 upsert 文が単独で確定する (テーブル横断トランザクションなし)。
    """
    try:
        conn = psycopg2.connect(resolve_dsn(db_cfg))
    except psycopg2.Error as e:
        raise PersistenceError(f"cannot connect to data store: {str(e).strip()}") from e
    conn.autocommit = True
    cur = conn.cursor()
    try:
        yield cur
    finally:
        cur.close()
        conn.close()
