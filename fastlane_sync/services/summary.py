from __future__ import annotations

from ..models.processing_result import SyncResult

"""SUMMARY line rendering.

Format:
SUMMARY mode=<m> tables=<ok>/<n> rows=<t> new=<i> updated=<u> unchanged=<c>
failed=<f> elapsed_sec=<e> throughput_rps=<r>
"""


def _format_number(value: float) -> str:
    # 整数値は小数点なし、極小値は指数表記を避ける
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if abs(value) < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def render_summary_line(result: SyncResult) -> str:
    """Render the SUMMARY line for a finished run.

    Examples:
        >>> from datetime import datetime, timezone
        >>> start = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        >>> end = datetime(2024, 1, 1, 10, 0, 2, tzinfo=timezone.utc)
        >>> render_summary_line(SyncResult(mode="full", start_time=start, end_time=end,
        ...     elapsed_seconds=2.0, tables=[]))
        'SUMMARY mode=full tables=0/0 rows=0 new=0 updated=0 unchanged=0 failed=0 elapsed_sec=2 throughput_rps=0'
    """
    total_tables = len(result.tables)
    ok_tables = total_tables - len(result.failed_tables)
    return (
        f"SUMMARY mode={result.mode} "
        f"tables={ok_tables}/{total_tables} "
        f"rows={result.total_rows} "
        f"new={result.new_rows} "
        f"updated={result.updated_rows} "
        f"unchanged={result.unchanged_rows} "
        f"failed={result.failed_rows} "
        f"elapsed_sec={_format_number(result.elapsed_seconds)} "
        f"throughput_rps={_format_number(result.throughput_rows_per_sec)}"
    )
