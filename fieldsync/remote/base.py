"""Contract the sync engine consumes from a remote feature service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

from ..errors import DataShapeError


@dataclass(frozen=True)
class AttachmentInfo:
    attachment_id: int
    name: str
    content_type: str | None = None
    size: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AttachmentInfo":
        raw_id = payload.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, (int, str)):
            raise DataShapeError(f"attachment entry without a usable id: {payload!r}")
        try:
            attachment_id = int(raw_id)
        except ValueError as e:
            raise DataShapeError(f"attachment id is not an integer: {raw_id!r}") from e
        return cls(
            attachment_id=attachment_id,
            name=str(payload.get("name") or f"{payload.get('id')}.jpg"),
            content_type=payload.get("contentType"),
            size=payload.get("size") if isinstance(payload.get("size"), int) else None,
        )


class RemoteFeatureClient(Protocol):
    """Query / list-attachments / download-attachment against numbered layers."""

    async def query(self, layer_id: int, where: str) -> list[dict[str, Any]]:
        """Return the attribute dicts of every feature matching `where`."""
        ...

    async def list_attachments(self, layer_id: int, object_id: int) -> list[AttachmentInfo]:
        ...

    def iter_attachment(
        self, layer_id: int, object_id: int, attachment_id: int
    ) -> AsyncIterator[bytes]:
        """Stream one attachment's bytes."""
        ...
