"""Change detection for joined rows.

The fingerprint is a sha256 over canonical JSON of the tracked fields:
keys are sorted, datetimes are ISO-8601 in UTC, and bookkeeping columns plus
configured volatile remote fields are left out. Two joins of the same remote
state therefore always hash identically.
"""

from __future__ import annotations

import enum
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Iterable

from ..models.record import InspectionRecord
from .field_mapper import BOOKKEEPING_COLUMNS
from .joiner import JoinedRecord

DEFAULT_IGNORED_FIELDS = frozenset(
    {
        "last_edited_date",
        "last_edited_user",
        "created_date",
        "created_user",
        "editdate",
        "editor",
        "creationdate",
        "creator",
        "last_queried",
    }
)


class ChangeKind(str, enum.Enum):
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def _canonical_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, float) and value.is_integer():
        # 12.0 and 12 must hash alike.
        return int(value)
    if isinstance(value, dict):
        return {str(k): _canonical_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(v) for v in value]
    return value


def tracked_payload(
    row: JoinedRecord,
    ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS,
) -> dict[str, Any]:
    ignored = {name.lower() for name in ignored_fields}
    columns = {
        k: v for k, v in row.columns.items() if k not in BOOKKEEPING_COLUMNS
    }
    extra = {
        k: v for k, v in row.extra.items() if str(k).lower() not in ignored
    }
    return _canonical_value({"columns": columns, "extra": extra})


def compute_fingerprint(
    row: JoinedRecord,
    ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS,
) -> str:
    payload = tracked_payload(row, ignored_fields)
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def classify(fingerprint: str, stored: InspectionRecord | None) -> ChangeKind:
    """New when absent, Updated when the hash differs or the row was soft-deleted."""
    if stored is None:
        return ChangeKind.NEW
    if stored.is_deleted or stored.fingerprint != fingerprint:
        return ChangeKind.UPDATED
    return ChangeKind.UNCHANGED
