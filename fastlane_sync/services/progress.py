from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Progress display with tqdm (TTY only).

One bar over the configured tables; the postfix shows pages / rows of the
table in flight. Disabled when stdout is not a TTY (cron, CI) so logs stay
free of control sequences.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class ProgressTracker:
    """Table-level progress bar."""

    def __init__(self, total_tables: int, *, description: str = "Syncing tables") -> None:
        self.total_tables = total_tables
        self.description = description
        self.current_table = 0
        self.pages = 0
        self.rows = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_tables,
                desc=description,
                unit="table",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def start_table(self, table: str) -> None:
        self.current_table += 1
        self.pages = 0
        self.rows = 0
        if self.pbar is not None:
            self.pbar.set_description(f"{self.description} ({table})")

    def page_done(self, rows: int) -> None:
        self.pages += 1
        self.rows += rows
        self.set_postfix(pages=self.pages, rows=self.rows)

    def finish_table(self, success: bool = True) -> None:
        if self.pbar is not None:
            self.pbar.update(1)
            self.pbar.set_description(self.description)
            if not success:
                self.pbar.set_postfix(last="failed")

    def set_postfix(self, **kwargs: Any) -> None:
        if self.pbar is not None:
            self.pbar.set_postfix(**kwargs)

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
