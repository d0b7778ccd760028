"""Exception hierarchy for the mirror.

The orchestrator turns these into structured error entries; nothing outside
the sync engine should need to catch raw library exceptions.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for all mirror errors."""

    kind = "error"


class RemoteServiceError(MirrorError):
    kind = "remote"

    def __init__(self, message: str, *, transient: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class RemoteTransientError(RemoteServiceError):
    """Timeouts, 5xx responses and connection resets."""

    kind = "remote_transient"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message, transient=True, status_code=status_code)


class DataShapeError(MirrorError):
    kind = "data_shape"


class AttachmentError(MirrorError):
    kind = "attachment"


class StoreError(MirrorError):
    kind = "store"


class SyncTimeoutError(MirrorError):
    kind = "timeout"


class ScopeBusyError(MirrorError):
    kind = "scope_busy"


class OverlayFieldError(MirrorError):
    kind = "overlay_field"


class PhotoStoreError(MirrorError):
    kind = "photo_store"


class FilterError(MirrorError):
    kind = "filter"


class JobNotFoundError(MirrorError):
    kind = "job_not_found"
