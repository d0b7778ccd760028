"""Structured remote filters.

Filters are data (field, operator, value) and are rendered to a feature
service WHERE clause in exactly one place. Field names are validated against
an identifier pattern and every literal is quoted, so no caller ever splices
user text into a query string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable

from ..errors import FilterError

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COMPARISONS = {
    "eq": "=",
    "ne": "<>",
    "lt": "<",
    "le": "<=",
    "gt": ">",
    "ge": ">=",
}
_OPERATORS = frozenset(_COMPARISONS) | {"in", "like", "ilike", "is_null", "not_null"}


def _quote_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENT_RE.match(name):
        raise FilterError(f"invalid field name: {name!r}")
    return name


def quote_literal(value: Any) -> str:
    """Render a Python value as a WHERE-clause literal."""
    if value is None:
        raise FilterError("None is not a literal; use is_null/not_null")
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return f"timestamp '{value.strftime('%Y-%m-%d %H:%M:%S')}'"
    if isinstance(value, date):
        return f"date '{value.isoformat()}'"
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    raise FilterError(f"unsupported literal type: {type(value).__name__}")


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str = "eq"
    value: Any = None

    def __post_init__(self) -> None:
        _quote_identifier(self.field)
        if self.op not in _OPERATORS:
            raise FilterError(f"unsupported operator: {self.op!r}")
        if self.op == "in":
            if not isinstance(self.value, (list, tuple, set, frozenset)) or not self.value:
                raise FilterError("'in' needs a non-empty sequence")
            object.__setattr__(self, "value", tuple(self.value))
        elif self.op not in {"is_null", "not_null"} and self.value is None:
            raise FilterError(f"operator {self.op!r} needs a value")

    def to_where(self) -> str:
        name = _quote_identifier(self.field)
        if self.op in _COMPARISONS:
            return f"{name} {_COMPARISONS[self.op]} {quote_literal(self.value)}"
        if self.op == "in":
            return f"{name} IN ({', '.join(quote_literal(v) for v in self.value)})"
        if self.op == "like":
            return f"{name} LIKE {quote_literal(self.value)}"
        if self.op == "ilike":
            return f"UPPER({name}) LIKE UPPER({quote_literal(self.value)})"
        if self.op == "is_null":
            return f"{name} IS NULL"
        return f"{name} IS NOT NULL"


@dataclass(frozen=True)
class FilterGroup:
    """Conjunction (or disjunction) of filters."""

    filters: tuple = field(default_factory=tuple)
    combinator: str = "and"

    def __post_init__(self) -> None:
        if self.combinator not in {"and", "or"}:
            raise FilterError(f"unsupported combinator: {self.combinator!r}")
        object.__setattr__(self, "filters", tuple(self.filters))

    def to_where(self) -> str:
        parts = [to_where(f) for f in self.filters]
        if not parts:
            return "1=1"
        if len(parts) == 1:
            return parts[0]
        joiner = f" {self.combinator.upper()} "
        return joiner.join(f"({p})" for p in parts)


Filter = FieldFilter | FilterGroup


def to_where(flt: Filter | None) -> str:
    if flt is None:
        return "1=1"
    if isinstance(flt, (FieldFilter, FilterGroup)):
        return flt.to_where()
    raise FilterError(f"not a filter: {type(flt).__name__}")


def all_of(*filters: Filter | None) -> Filter | None:
    present = [f for f in filters if f is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return FilterGroup(tuple(present), "and")


def field_in(field_name: str, values: Iterable[Any]) -> FieldFilter:
    return FieldFilter(field_name, "in", tuple(values))


def filter_from_dict(payload: Any) -> Filter:
    """Build a filter from its JSON shape.

    Accepted shapes: {"field", "op", "value"} or {"all": [...]} / {"any": [...]}.
    """
    if not isinstance(payload, dict):
        raise FilterError("filter must be an object")
    if "all" in payload or "any" in payload:
        combinator = "and" if "all" in payload else "or"
        items = payload.get("all") if combinator == "and" else payload.get("any")
        if not isinstance(items, list):
            raise FilterError("filter group must hold a list")
        return FilterGroup(tuple(filter_from_dict(item) for item in items), combinator)
    return FieldFilter(
        field=payload.get("field", ""),
        op=payload.get("op", "eq"),
        value=payload.get("value"),
    )


def canonical(flt: Filter | None) -> str:
    """Stable text form, used as the scope key of filter-scoped syncs."""
    return to_where(flt)
