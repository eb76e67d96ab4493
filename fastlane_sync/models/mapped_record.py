from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

"""MappedRecord: one worksheet row translated to business-named columns."""

__all__ = ["MappedRecord", "row_hash"]


def _default(o: Any) -> str:
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    return str(o)


def row_hash(values: dict[str, Any]) -> str:
    """SHA-256 over canonical JSON (sorted keys) of the mapped values."""
    payload = json.dumps(values, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=_default)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MappedRecord:
    natural_key: str | None  # None -> MISSING_NATURAL_KEY で拒否
    values: dict[str, Any]
    source_worksheet: str

    @property
    def row_hash(self) -> str:
        return row_hash(self.values)

    def to_row(self, key_column: str) -> dict[str, Any]:
        row = {key_column: self.natural_key}
        row.update(self.values)
        return row
