from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import jsonschema
import pandas as pd
import yaml
from jsonschema.exceptions import ValidationError

from fastlane_sync.models.config_models import (
    AggregateConfig,
    CredentialConfig,
    DatabaseConfig,
    FieldSpec,
    RetryConfig,
    SyncConfig,
    TableMappingConfig,
    TableRuntime,
)

"""Config loader.

Responsibilities:
- Load YAML config/sync.yml
- Validate against config_schema.json (shipped with the package)
- Apply defaults (timezone=UTC, page_size=100 ...)
- Resolve credentials / worksheet ids from the environment per table
"""

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")
DEFAULT_CONFIG_PATH = Path("config/sync.yml")

DEFAULT_BASE_URL = "https://api.mingdao.com"


class ConfigurationError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against JSON schema.

    Raises:
        ConfigurationError: schema file missing / not JSON, or the config
            fails validation (missing required keys, wrong types, unknown keys).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigurationError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"config validation failed at {where}: {e.message}") from e


def _build_table(name: str, raw: dict[str, Any], credentials: dict[str, CredentialConfig]) -> TableMappingConfig:
    if raw["credentials"] not in credentials:
        raise ConfigurationError(
            f"table '{name}' refers to unknown credentials '{raw['credentials']}'"
        )
    fields = []
    for field_name, spec in raw["fields"].items():
        fields.append(
            FieldSpec(
                name=field_name,
                field_id=spec["id"],
                column=spec.get("column", field_name),
                type=spec.get("type", "auto"),
            )
        )
    columns = [f.column for f in fields]
    dup = sorted({c for c in columns if columns.count(c) > 1})
    if dup:
        raise ConfigurationError(f"table '{name}' maps several fields to column(s): {', '.join(dup)}")
    if raw["natural_key_column"] in columns:
        raise ConfigurationError(
            f"table '{name}': natural_key_column '{raw['natural_key_column']}' must not be a mapped field"
        )
    return TableMappingConfig(
        name=name,
        target_table=raw.get("target_table", name),
        credentials=raw["credentials"],
        natural_key_column=raw["natural_key_column"],
        fields=tuple(fields),
        worksheet_id=raw.get("worksheet_id"),
        worksheet_id_env=raw.get("worksheet_id_env"),
        filter=raw.get("filter"),
        constants=dict(raw["constants"]) if raw.get("constants") else None,
    )


def _validate_timezone(name: str) -> str:
    # 不正なゾーン名は同期途中ではなく読込時に弾く
    try:
        pd.Timestamp.now(tz=name)
    except (KeyError, ValueError, TypeError) as e:
        raise ConfigurationError(f"unknown timezone: {name}") from e
    return name


def load_config(path: Path) -> SyncConfig:
    if not path.exists():
        raise ConfigurationError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("config root must be a mapping")

    _validate_config_schema(data)

    credentials = {
        name: CredentialConfig(name=name, app_key_env=c["app_key_env"], sign_env=c["sign_env"])
        for name, c in data["credentials"].items()
    }
    # YAML mapping order = sync order
    tables = {name: _build_table(name, raw, credentials) for name, raw in data["tables"].items()}
    targets = {t.target_table for t in tables.values()}
    aggregates = []
    for raw in data.get("aggregates", []):
        if raw["source_table"] not in targets:
            raise ConfigurationError(
                f"aggregate '{raw['name']}' reads unknown source_table '{raw['source_table']}'"
            )
        aggregates.append(AggregateConfig(**raw))

    retry_raw = data.get("retry", {})
    retry = RetryConfig(
        max_attempts=retry_raw.get("max_attempts", 3),
        backoff_seconds=float(retry_raw.get("backoff_seconds", 1.0)),
        max_backoff_seconds=float(retry_raw.get("max_backoff_seconds", 15.0)),
    )
    db_raw = data.get("database", {})
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    return SyncConfig(
        base_url=data.get("base_url", DEFAULT_BASE_URL).rstrip("/"),
        timezone=_validate_timezone(data.get("timezone", "UTC")),
        page_size=data.get("page_size", 100),
        batch_size=data.get("batch_size", 100),
        max_pages=data.get("max_pages", 1000),
        request_timeout_seconds=float(data.get("request_timeout_seconds", 30)),
        retry=retry,
        lookback_days=data.get("incremental", {}).get("lookback_days", 1),
        lock_ttl_seconds=data.get("lock", {}).get("ttl_seconds", 900),
        credentials=credentials,
        tables=tables,
        database=db,
        aggregates=aggregates,
    )


def resolve_table(
    config: SyncConfig, name: str, environ: Mapping[str, str] | None = None
) -> TableRuntime:
    """Resolve credentials and worksheet id of one table from the environment.

    Raises ConfigurationError when anything is missing; callers do this for
    every selected table before the first network call.
    """
    env = os.environ if environ is None else environ
    if name not in config.tables:
        raise ConfigurationError(f"unknown table: {name}")
    mapping = config.tables[name]
    cred = config.credentials[mapping.credentials]

    missing = [v for v in (cred.app_key_env, cred.sign_env) if not env.get(v)]
    worksheet_id = mapping.worksheet_id
    if mapping.worksheet_id_env and env.get(mapping.worksheet_id_env):
        worksheet_id = env[mapping.worksheet_id_env]
    if not worksheet_id:
        missing.append(mapping.worksheet_id_env or "worksheet_id")
    if missing:
        raise ConfigurationError(f"table '{name}': missing environment variable(s): {', '.join(missing)}")
    return TableRuntime(
        mapping=mapping,
        worksheet_id=worksheet_id,
        app_key=env[cred.app_key_env],
        sign=env[cred.sign_env],
    )


def resolve_tables(
    config: SyncConfig, names: list[str] | None = None, environ: Mapping[str, str] | None = None
) -> list[TableRuntime]:
    selected = list(config.tables) if not names else names
    return [resolve_table(config, n, environ) for n in selected]
