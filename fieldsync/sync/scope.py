"""Sync scope and mode.

A scope says which remote rows a run looks at; the mode says whether the run
observed the whole scope. Soft-delete propagation is only sound when both are
complete: a full-mode run over an action code or over the whole mirror.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, true

from ..errors import FilterError
from ..models.record import InspectionRecord
from ..remote.filters import Filter, canonical

FULL_MIRROR_KEY = "*"


class ScopeKind(str, enum.Enum):
    ACTION_CODE = "action_code"
    ALL = "all"
    FILTER = "filter"


@dataclass(frozen=True)
class SyncScope:
    kind: ScopeKind
    action_code: str | None = None
    filter: Filter | None = None

    @classmethod
    def for_action_code(cls, code: str) -> "SyncScope":
        if not isinstance(code, str) or not code.strip():
            raise FilterError("action code required")
        return cls(ScopeKind.ACTION_CODE, action_code=code.strip())

    @classmethod
    def full_mirror(cls) -> "SyncScope":
        return cls(ScopeKind.ALL)

    @classmethod
    def for_filter(cls, flt: Filter) -> "SyncScope":
        if flt is None:
            raise FilterError("filter required")
        return cls(ScopeKind.FILTER, filter=flt)

    @property
    def key(self) -> str:
        if self.kind is ScopeKind.ACTION_CODE:
            return self.action_code or ""
        if self.kind is ScopeKind.ALL:
            return FULL_MIRROR_KEY
        return f"filter:{canonical(self.filter)}"

    def record_clause(self):
        """Local SQL clause selecting the rows this scope owns; None for filters."""
        if self.kind is ScopeKind.ACTION_CODE:
            return or_(
                InspectionRecord.action_code == self.action_code,
                InspectionRecord.alt_action_code == self.action_code,
            )
        if self.kind is ScopeKind.ALL:
            return true()
        return None


class ModeKind(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class SyncMode:
    kind: ModeKind = ModeKind.FULL
    since: datetime | None = None

    @classmethod
    def full(cls) -> "SyncMode":
        return cls(ModeKind.FULL)

    @classmethod
    def incremental(cls, since: datetime) -> "SyncMode":
        if since is None:
            raise FilterError("incremental mode needs a 'since' timestamp")
        return cls(ModeKind.INCREMENTAL, since)

    def allows_soft_delete(self, scope: SyncScope) -> bool:
        return self.kind is ModeKind.FULL and scope.kind is not ScopeKind.FILTER
