from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import MalformedResponseError, classify_rejection

"""Response envelope normalization.

The row-listing endpoint has answered in three shapes over time:

- DATA_ROWS:  {"success": true, "data": {"rows": [...], "total": n}}
- ROWS:       {"rows": [...], "total": n}
- BARE_ARRAY: [...]

Everything downstream sees only ``Envelope``; the shape is kept for logging.
"""

DATA_ROWS = "DATA_ROWS"
ROWS = "ROWS"
BARE_ARRAY = "BARE_ARRAY"


@dataclass(frozen=True)
class Envelope:
    shape: str
    rows: list[dict[str, Any]]
    total: int
    total_reported: bool = False


def _check_rows(rows: Any, shape: str) -> list[dict[str, Any]]:
    if not isinstance(rows, list):
        raise MalformedResponseError(f"{shape}: rows is {type(rows).__name__}, expected list")
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            raise MalformedResponseError(f"{shape}: row {i} is {type(row).__name__}, expected object")
    return rows


def _total(raw: Any, rows: list[dict[str, Any]]) -> int:
    # total 欠落/不正は len(rows)
    if isinstance(raw, bool):
        return len(rows)
    try:
        return int(raw)
    except (TypeError, ValueError):
        return len(rows)


def _reported(container: dict[str, Any]) -> bool:
    raw = container.get("total")
    return isinstance(raw, int) and not isinstance(raw, bool)


def normalize_envelope(payload: Any) -> Envelope:
    """Collapse any accepted response shape into one Envelope.

    Raises:
        UpstreamError / AuthenticationError: ``success`` is false.
        MalformedResponseError: no known shape matches.
    """
    if isinstance(payload, list):
        rows = _check_rows(payload, BARE_ARRAY)
        return Envelope(shape=BARE_ARRAY, rows=rows, total=len(rows))

    if not isinstance(payload, dict):
        raise MalformedResponseError(f"unexpected response type: {type(payload).__name__}")

    if payload.get("success") is False:
        raise classify_rejection(
            payload.get("error_code", payload.get("errorCode")),
            str(payload.get("error_msg") or payload.get("errorMsg") or payload.get("message") or ""),
        )

    data = payload.get("data")
    if isinstance(data, dict) and "rows" in data:
        rows = _check_rows(data["rows"], DATA_ROWS)
        return Envelope(shape=DATA_ROWS, rows=rows, total=_total(data.get("total"), rows),
                        total_reported=_reported(data))

    if "rows" in payload:
        rows = _check_rows(payload["rows"], ROWS)
        return Envelope(shape=ROWS, rows=rows, total=_total(payload.get("total"), rows),
                        total_reported=_reported(payload))

    raise MalformedResponseError(f"unrecognized envelope keys: {sorted(payload)[:10]}")
