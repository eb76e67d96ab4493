from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import pandas as pd

"""Filter predicate tree sent as the ``filter`` body key.

Wire form:
    {"type": "group", "logic": "AND"|"OR", "children": [...]}
    {"type": "condition", "field": "<id>", "operator": "eq"|"gte"|..., "value": v}
"""

CREATED_AT = "_createdAt"
UPDATED_AT = "_updatedAt"
CUTOFF_FORMAT = "%Y-%m-%d %H:%M:%S"

LOGICS = ("AND", "OR")


class FilterError(ValueError):
    pass


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"type": "condition", "field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class Group:
    logic: str
    children: tuple[Condition | Group, ...]

    def __post_init__(self) -> None:
        if self.logic not in LOGICS:
            raise FilterError(f"invalid group logic: {self.logic}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": "group", "logic": self.logic, "children": [c.to_dict() for c in self.children]}


Node = Condition | Group


def format_cutoff(cutoff: datetime, timezone: str = "UTC") -> str:
    """Render a cutoff as ``YYYY-MM-DD HH:MM:SS`` in the worksheet's timezone.

    Aware datetimes are converted to ``timezone`` first; naive ones are taken as-is.
    """
    ts = pd.Timestamp(cutoff)
    if ts.tzinfo is not None:
        ts = ts.tz_convert(timezone)
    return ts.strftime(CUTOFF_FORMAT)


def incremental_filter(cutoff: datetime, timezone: str = "UTC") -> Group:
    """Rows created OR updated at/after cutoff (inclusive)."""
    value = format_cutoff(cutoff, timezone)
    return Group(
        "OR",
        (
            Condition(CREATED_AT, "gte", value),
            Condition(UPDATED_AT, "gte", value),
        ),
    )


def combine(static: Node | None, extra: Node | None) -> Node | None:
    """AND a table's static filter with the sync window filter."""
    if static is None:
        return extra
    if extra is None:
        return static
    return Group("AND", (static, extra))


def build_filter(raw: dict[str, Any] | None) -> Node | None:
    """Parse a YAML filter definition into nodes."""
    if raw is None:
        return None
    kind = raw.get("type")
    if kind == "condition":
        for key in ("field", "operator"):
            if not raw.get(key):
                raise FilterError(f"condition without {key}: {raw}")
        return Condition(raw["field"], raw["operator"], raw.get("value"))
    if kind == "group":
        children = raw.get("children") or []
        if not children:
            raise FilterError("group filter needs at least one child")
        return Group(raw.get("logic", "AND"), tuple(build_filter(c) for c in children))
    raise FilterError(f"unknown filter node type: {kind!r}")
