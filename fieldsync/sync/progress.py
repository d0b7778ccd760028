"""Run state, live progress and structured error entries for sync runs."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any

from ..errors import MirrorError


class SyncState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    JOINING = "joining"
    DIFFING = "diffing"
    PERSISTING = "persisting"
    SYNCING_ATTACHMENTS = "syncing_attachments"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncState.COMPLETED, SyncState.FAILED, SyncState.CANCELLED)


@dataclass(frozen=True)
class SyncErrorInfo:
    kind: str
    message: str
    relation_key: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, *, relation_key: str | None = None) -> "SyncErrorInfo":
        kind = exc.kind if isinstance(exc, MirrorError) else type(exc).__name__
        return cls(kind=kind, message=str(exc) or type(exc).__name__, relation_key=relation_key)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncProgress:
    """Mutable counters a running sync updates and pollers read."""

    state: SyncState = SyncState.IDLE
    fetched: int = 0
    total: int = 0
    photos_done: int = 0
    photos_total: int = 0
    errors: list[SyncErrorInfo] = field(default_factory=list)

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "fetched": self.fetched,
            "total": self.total,
            "photos_done": self.photos_done,
            "photos_total": self.photos_total,
            "errors": [e.to_dict() for e in self.errors],
        }
