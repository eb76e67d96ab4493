from __future__ import annotations

import argparse
import os
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pandas as pd
from dotenv import load_dotenv

from fastlane_sync.config.loader import DEFAULT_CONFIG_PATH, ConfigurationError, load_config, resolve_tables
from fastlane_sync.db.connection import db_connection
from fastlane_sync.db.store import PostgresDataStore
from fastlane_sync.db.upsert import PersistenceError
from fastlane_sync.logging.init import log_summary, set_debug, setup_logging
from fastlane_sync.services.diagnostics import find_duplicate_values, inspect_worksheet, verify_group_counts
from fastlane_sync.services.reconciler import (
    MODE_INCREMENTAL,
    MODES,
    SyncError,
    SyncInProgressError,
    default_client_factory,
    run_sync,
)
from fastlane_sync.services.status import get_sync_status
from fastlane_sync.services.summary import render_summary_line
from fastlane_sync.worksheet.errors import UpstreamError

"""CLI entrypoint.

Default action: one sync run (incremental unless --mode full), then a single
SUMMARY line. --status / --diagnose / --inspect-data / --init-db are one-shot
maintenance actions that exit without syncing.
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv.

    override=True: .env の値で既存環境変数を上書き (認証情報・DB 接続を最優先化)。
    """
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="fastlane-sync", description="Worksheet service -> PostgreSQL sync")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="YAML config path (default: config/sync.yml)")
    p.add_argument("--mode", choices=MODES, default=MODE_INCREMENTAL, help="full or incremental (default)")
    p.add_argument("--since-days", type=int, default=None, help="incremental window in days (overrides config)")
    p.add_argument("--cutoff", default=None, help="incremental window start, ISO-8601 (naive = UTC)")
    p.add_argument("--tables", default=None, help="comma separated subset of configured tables")
    p.add_argument("--dry-run", action="store_true", help="pull and map only; no data store access")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--inspect-data", action="store_true", help="Print the first mapped rows of each worksheet then exit")
    p.add_argument("--limit", type=int, default=5, help="rows per worksheet for --inspect-data")
    p.add_argument("--status", action="store_true", help="Print the last sync status then exit")
    p.add_argument("--diagnose", action="store_true", help="Verify derived counts / duplicate values then exit")
    p.add_argument(
        "--duplicates", action="append", default=[], metavar="TABLE.COLUMN",
        help="business column to check for values shared by several rows (with --diagnose, repeatable)",
    )
    p.add_argument("--init-db", action="store_true", help="Create the data store tables then exit")
    return p.parse_args(argv)


def _parse_cutoff(args: argparse.Namespace) -> datetime | None:
    if args.cutoff:
        try:
            ts = datetime.fromisoformat(args.cutoff)
        except ValueError as e:
            raise ConfigurationError(f"invalid --cutoff: {args.cutoff}") from e
        return ts if ts.tzinfo else ts.replace(tzinfo=UTC)
    if args.since_days is not None:
        if args.since_days < 0:
            raise ConfigurationError("--since-days must be >= 0")
        return datetime.now(UTC) - timedelta(days=args.since_days)
    return None


def _table_list(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    return [t.strip() for t in raw.split(",") if t.strip()]


def _print_frame(title: str, df: pd.DataFrame) -> None:
    print(title)
    print("  (none)" if df.empty else df.to_string(index=False))


def _inspect_data(cfg, args: argparse.Namespace, logger) -> int:
    runtimes = resolve_tables(cfg, _table_list(args.tables))
    factory = default_client_factory(cfg)
    rc = EXIT_SUCCESS_ALL
    for rt in runtimes:
        try:
            with factory(rt) as client:
                df = inspect_worksheet(client, rt, limit=args.limit, timezone=cfg.timezone)
        except UpstreamError as e:
            logger.error(f"inspect {rt.name}: {e}")
            rc = EXIT_FATAL
            continue
        _print_frame(f"TABLE: {rt.name} worksheet={rt.worksheet_id}", df)
    return rc


def _show_status(store: PostgresDataStore) -> int:
    status = get_sync_status(store)
    print(f"last_sync_time={status.last_sync_time.isoformat() if status.last_sync_time else '-'}")
    print(f"is_running={str(status.is_running).lower()}")
    print(f"last_sync_status={status.last_sync_status or '-'}")
    for k, v in (status.last_sync_stats or {}).items():
        if k != "details":
            print(f"  {k}={v}")
    return EXIT_SUCCESS_ALL


def _diagnose(cfg, store: PostgresDataStore, checks: list[str]) -> int:
    key_columns = {t.target_table: t.natural_key_column for t in cfg.tables.values()}
    problems = 0
    for agg in cfg.aggregates:
        df = verify_group_counts(store, agg, key_columns[agg.source_table])
        problems += len(df)
        _print_frame(f"AGGREGATE: {agg.name} mismatches={len(df)}", df)
    for check in checks:
        table, _, column = check.partition(".")
        if not column:
            raise ConfigurationError(f"--duplicates expects TABLE.COLUMN: {check}")
        df = find_duplicate_values(store, table, column, key_columns.get(table, "hap_row_id"))
        problems += len(df)
        _print_frame(f"DUPLICATES: {table}.{column} values={len(df)}", df)
    return EXIT_PARTIAL_FAILURE if problems else EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # 空リスト [] (テストの cli_main([])) で sys.argv が混入しないよう None のときのみ読む
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    if args.debug:
        set_debug(True)

    _load_env_file(Path(".env"), override=True)
    try:
        cfg = load_config(args.config)
        cutoff = _parse_cutoff(args)
    except ConfigurationError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    try:
        if args.inspect_data:
            return _inspect_data(cfg, args, logger)
        if args.init_db or args.status or args.diagnose:
            with db_connection(cfg.database) as cur:
                store = PostgresDataStore(cur)
                if args.init_db:
                    store.init_schema()
                    logger.info("data store schema created")
                    return EXIT_SUCCESS_ALL
                if args.status:
                    return _show_status(store)
                return _diagnose(cfg, store, args.duplicates)
    except ConfigurationError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL
    except PersistenceError as e:
        logger.error(f"data store: {e}")
        return EXIT_FATAL

    triggered_by = os.getenv("SYNC_TRIGGERED_BY", "MANUAL").upper()
    tables = _table_list(args.tables)
    # DISABLE_DB_CONNECT=1 はテスト等で DB 接続を完全に無効化 (dry-run と同等)
    dry_run = args.dry_run or os.getenv("DISABLE_DB_CONNECT") == "1"
    logger.info(f"mode={args.mode} tables={','.join(tables) if tables else 'all'} dry_run={str(dry_run).lower()}")

    try:
        if dry_run:
            result = run_sync(cfg, args.mode, store=None, cutoff=cutoff, tables=tables, triggered_by=triggered_by)
        else:
            with db_connection(cfg.database) as cur:
                result = run_sync(
                    cfg, args.mode, store=PostgresDataStore(cur), cutoff=cutoff,
                    tables=tables, triggered_by=triggered_by,
                )
    except ConfigurationError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL
    except SyncInProgressError as e:
        logger.error(f"lock: {e}")
        return EXIT_FATAL
    except (PersistenceError, SyncError) as e:
        logger.error(f"data store: {e}")
        return EXIT_FATAL
    except ValueError as e:
        logger.error(f"arguments: {e}")
        return EXIT_FATAL

    for t in result.failed_tables:
        logger.warning(f"table {t.table} failed: {t.error_message}")

    summary_line = render_summary_line(result)
    # log_summary が "SUMMARY " ラベルを付与するので本文のみ渡す
    log_summary(summary_line[len("SUMMARY "):])

    if not result.succeeded or result.failed_rows > 0:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
