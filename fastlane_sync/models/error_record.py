from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for the JSON Lines error log.

One record per rejected row (natural_key set) or per aborted table
(natural_key=None). The key set is fixed: to_json_line never emits more.
"""

__all__ = [
    "ErrorRecord",
]


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        table: configured table name
        worksheet: worksheet id the row came from
        natural_key: row id; None for table-level errors
        error_type: Error classification in UPPER_SNAKE_CASE format
        message: upstream / database message
    """
    timestamp: str  # ISO8601 UTC
    table: str
    worksheet: str
    natural_key: str | None  # テーブル単位のエラーは None
    error_type: str  # UPPER_SNAKE
    message: str

    @staticmethod
    def create(
        table: str, worksheet: str, natural_key: str | None, error_type: str, message: str
    ) -> ErrorRecord:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            table=table,
            worksheet=worksheet,
            natural_key=natural_key,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        # 追加キー阻止: dataclass -> dict して json.dumps
        return json.dumps(asdict(self), ensure_ascii=False)
