"""Join parent rows with their description and fact children.

One window of parents plus the children for the same relation keys becomes
one denormalized row per parent: child text fields are concatenated with a
separator and the raw child rows are kept alongside.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from .field_mapper import (
    DESCRIPTION_TEXT_FIELDS,
    FACT_TEXT_FIELDS,
    child_object_id,
    child_relation_key,
    find_attribute,
    map_parent_attributes,
)

logger = logging.getLogger(__name__)

DEFAULT_SEPARATOR = " | "


@dataclass(frozen=True)
class ChildRef:
    """A child row that may own attachments."""

    layer_id: int
    object_id: int


@dataclass
class JoinedRecord:
    relation_key: str
    columns: dict[str, Any]
    extra: dict[str, Any]
    descriptions: list[dict[str, Any]] = field(default_factory=list)
    facts: list[dict[str, Any]] = field(default_factory=list)
    children: list[ChildRef] = field(default_factory=list)

    @property
    def action_code(self) -> str | None:
        return self.columns.get("action_code")

    @property
    def object_id(self) -> int | None:
        return self.columns.get("object_id")


@dataclass
class JoinResult:
    records: list[JoinedRecord] = field(default_factory=list)
    missing_key: int = 0
    missing_key_object_ids: list[Any] = field(default_factory=list)
    duplicate_keys: int = 0
    orphan_children: int = 0

    @property
    def warnings(self) -> list[str]:
        out: list[str] = []
        if self.missing_key:
            out.append(f"{self.missing_key} parent row(s) had no usable relation key")
        if self.duplicate_keys:
            out.append(f"{self.duplicate_keys} parent row(s) repeated a relation key")
        if self.orphan_children:
            out.append(f"{self.orphan_children} child row(s) referenced an unknown parent")
        return out


def _child_sort_key(row: dict[str, Any]) -> tuple:
    oid = child_object_id(row)
    return (oid is None, oid or 0)


def _group_children(rows: list[dict[str, Any]]) -> tuple[dict[str, list[dict[str, Any]]], int]:
    grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
    unkeyed = 0
    for row in rows:
        if not isinstance(row, dict):
            unkeyed += 1
            continue
        key = child_relation_key(row)
        if key is None:
            unkeyed += 1
            continue
        grouped[key].append(row)
    for key in grouped:
        grouped[key].sort(key=_child_sort_key)
    return grouped, unkeyed


def concat_field(rows: list[dict[str, Any]], names: tuple[str, ...], separator: str) -> str | None:
    """Join one text field across child rows, skipping null/blank values."""
    values: list[str] = []
    for row in rows:
        _, value = find_attribute(row, names)
        if value is None:
            continue
        text = value if isinstance(value, str) else str(value)
        if text.strip():
            values.append(text)
    return separator.join(values) if values else None


def join_records(
    parents: list[dict[str, Any]],
    descriptions: list[dict[str, Any]],
    facts: list[dict[str, Any]],
    *,
    separator: str = DEFAULT_SEPARATOR,
    descriptions_layer_id: int = 1,
    facts_layer_id: int = 2,
) -> JoinResult:
    result = JoinResult()
    desc_by_key, desc_unkeyed = _group_children(descriptions)
    facts_by_key, facts_unkeyed = _group_children(facts)
    seen: set[str] = set()

    for attrs in parents:
        columns, extra = map_parent_attributes(attrs if isinstance(attrs, dict) else {})
        key = columns.get("relation_key")
        if not key:
            result.missing_key += 1
            result.missing_key_object_ids.append(columns.get("object_id"))
            logger.warning("Parent row without relation key skipped: object_id=%s", columns.get("object_id"))
            continue
        if key in seen:
            result.duplicate_keys += 1
            logger.warning("Duplicate relation key in window skipped: %s", key)
            continue
        seen.add(key)

        desc_rows = desc_by_key.get(key, [])
        fact_rows = facts_by_key.get(key, [])

        for column, names in DESCRIPTION_TEXT_FIELDS.items():
            columns[column] = concat_field(desc_rows, names, separator)
        for column, names in FACT_TEXT_FIELDS.items():
            columns[column] = concat_field(fact_rows, names, separator)

        children = [
            ChildRef(descriptions_layer_id, oid)
            for oid in (child_object_id(r) for r in desc_rows)
            if oid is not None
        ] + [
            ChildRef(facts_layer_id, oid)
            for oid in (child_object_id(r) for r in fact_rows)
            if oid is not None
        ]

        result.records.append(
            JoinedRecord(
                relation_key=key,
                columns=columns,
                extra=extra,
                descriptions=[dict(r) for r in desc_rows],
                facts=[dict(r) for r in fact_rows],
                children=children,
            )
        )

    orphans = sum(len(v) for k, v in desc_by_key.items() if k not in seen)
    orphans += sum(len(v) for k, v in facts_by_key.items() if k not in seen)
    result.orphan_children = orphans + desc_unkeyed + facts_unkeyed
    return result
