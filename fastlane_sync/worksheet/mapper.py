from __future__ import annotations

import json
import logging
from decimal import Decimal, InvalidOperation
from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Any

import pandas as pd

from fastlane_sync.models.config_models import FieldSpec, TableMappingConfig
from fastlane_sync.models.mapped_record import MappedRecord

"""Field mapper: worksheet row (field-id keyed) -> business-named values.

Decoding never raises: absent, blank or unparseable values become None.
"""

logger = logging.getLogger(__name__)

NATURAL_KEY_FIELDS = ("rowid", "rowId", "_id")
# システム項目の別名 (旧 API)
SYSTEM_ALIASES = {"_createdAt": "ctime", "_updatedAt": "utime"}

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}
_MAX_INT_DIGITS = 38


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    return isinstance(value, (list, tuple, dict)) and len(value) == 0


def _maybe_json(value: Any) -> Any:
    # 選択肢/ユーザー/関連は JSON 文字列で返ることがある
    if isinstance(value, str):
        s = value.strip()
        if s[:1] in ("[", "{"):
            try:
                return json.loads(s)
            except ValueError:
                return value
    return value


def _pick(d: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = d.get(k)
        if not _is_blank(v):
            return v
    return None


def decode_value(value: Any) -> Any:
    """Default decoding rule.

    list -> each element's .value / .Value or the element itself;
    dict with .value / .Value -> that scalar; anything else unchanged.
    """
    if _is_blank(value):
        return None
    if isinstance(value, list):
        out = []
        for item in value:
            if isinstance(item, dict) and ("value" in item or "Value" in item):
                out.append(item["value"] if "value" in item else item["Value"])
            else:
                out.append(item)
        return out
    if isinstance(value, dict):
        if "value" in value:
            return value["value"]
        if "Value" in value:
            return value["Value"]
    return value


def decode_option(value: Any) -> str | None:
    value = _maybe_json(value)
    if _is_blank(value):
        return None
    items = value if isinstance(value, list) else [value]
    labels = []
    for item in items:
        label = _pick(item, "value", "Value", "name") if isinstance(item, dict) else item
        if not _is_blank(label):
            labels.append(str(label))
    return ", ".join(labels) or None


def decode_user(value: Any) -> str | None:
    value = _maybe_json(value)
    if _is_blank(value):
        return None
    items = value if isinstance(value, list) else [value]
    names = []
    for item in items:
        name = _pick(item, "fullname", "name", "accountId") if isinstance(item, dict) else item
        if not _is_blank(name):
            names.append(str(name))
    return ", ".join(names) or None


def decode_relation(value: Any) -> str | None:
    """First related row id (``sid``)."""
    value = _maybe_json(value)
    if _is_blank(value):
        return None
    first = value[0] if isinstance(value, list) else value
    if isinstance(first, dict):
        sid = _pick(first, "sid", "rowid", "rowId")
        return str(sid) if sid is not None else None
    return str(first)


def decode_relation_names(value: Any) -> str | None:
    value = _maybe_json(value)
    if _is_blank(value):
        return None
    items = value if isinstance(value, list) else [value]
    names = []
    for item in items:
        name = _pick(item, "name", "title", "value") if isinstance(item, dict) else item
        if not _is_blank(name):
            names.append(str(name))
    return ", ".join(names) or None


def decode_bool(value: Any) -> bool | None:
    value = decode_value(value)
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    return None


def decode_int(value: Any) -> int | None:
    value = decode_value(value)
    if value is None or isinstance(value, (list, dict)):
        return None
    s = str(value).strip()
    try:
        return int(s)
    except ValueError:
        pass
    # "12.0" / "1e3" は整数値のときだけ採用 (float 経由だと 2**53 超で桁落ちする)
    try:
        d = Decimal(s)
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite() or d.adjusted() > _MAX_INT_DIGITS or d != d.to_integral_value():
        return None
    return int(d)


def _to_timestamp(value: Any, timezone: str) -> pd.Timestamp | None:
    value = decode_value(value)
    if value is None or isinstance(value, (list, dict, bool)):
        return None
    ts = pd.to_datetime(value, errors="coerce")
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is None:
        # ナイーブ値は設定タイムゾーンとして解釈
        ts = ts.tz_localize(timezone, ambiguous="NaT", nonexistent="shift_forward")
        # DST の重複時刻は一意に決まらないので None
        if pd.isna(ts):
            return None
    return ts.tz_convert("UTC")


def decode_datetime(value: Any, timezone: str = "UTC") -> datetime | None:
    ts = _to_timestamp(value, timezone)
    return None if ts is None else ts.to_pydatetime()


def decode_date(value: Any, timezone: str = "UTC") -> date | None:
    value = decode_value(value)
    if value is None or isinstance(value, (list, dict, bool)):
        return None
    ts = pd.to_datetime(value, errors="coerce")
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert(timezone)
    return ts.date()


def decode_text(value: Any) -> str | None:
    value = decode_value(value)
    if value is None:
        return None
    if isinstance(value, list):
        return ", ".join(str(v) for v in value if v is not None) or None
    return str(value)


_DECODERS: dict[str, Callable[[Any], Any]] = {
    "auto": decode_value,
    "option": decode_option,
    "user": decode_user,
    "relation": decode_relation,
    "relation_names": decode_relation_names,
    "bool": decode_bool,
    "int": decode_int,
    "text": decode_text,
}


def _raw_value(row: dict[str, Any], field_id: str) -> Any:
    if field_id in row:
        return row[field_id]
    alias = SYSTEM_ALIASES.get(field_id)
    return row.get(alias) if alias else None


def decode_field(row: dict[str, Any], spec: FieldSpec, timezone: str = "UTC") -> Any:
    raw = _raw_value(row, spec.field_id)
    if spec.type == "datetime":
        return decode_datetime(raw, timezone)
    if spec.type == "date":
        return decode_date(raw, timezone)
    decoder = _DECODERS.get(spec.type)
    if decoder is None:
        raise ValueError(f"unknown field type: {spec.type}")
    return decoder(raw)


def map_row(row: dict[str, Any], fields: Iterable[FieldSpec], timezone: str = "UTC") -> dict[str, Any]:
    """Translate one row into ``{column: value}`` for every declared field."""
    return {spec.column: decode_field(row, spec, timezone) for spec in fields}


def extract_natural_key(row: dict[str, Any]) -> str | None:
    for key in NATURAL_KEY_FIELDS:
        value = row.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def map_record(
    row: dict[str, Any], mapping: TableMappingConfig, worksheet_id: str, timezone: str = "UTC"
) -> MappedRecord:
    values = map_row(row, mapping.fields, timezone)
    if mapping.constants:
        values.update(mapping.constants)
    return MappedRecord(natural_key=extract_natural_key(row), values=values, source_worksheet=worksheet_id)
