"""Mirror models - re-exports all models and Base.metadata."""

from .base import Base, UUIDMixin, TimestampMixin, SoftDeleteMixin
from .record import InspectionRecord
from .photo import InspectionPhoto
from .sync_state import SyncScopeState, SyncLogEntry
from .overlay import OverlayEntry

__all__ = [
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "SoftDeleteMixin",
    "InspectionRecord",
    "InspectionPhoto",
    "SyncScopeState",
    "SyncLogEntry",
    "OverlayEntry",
]
