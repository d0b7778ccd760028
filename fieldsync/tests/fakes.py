"""In-process feature service double and seed data shared by the tests."""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fieldsync.errors import RemoteServiceError
from fieldsync.remote.base import AttachmentInfo
from fieldsync.sync.field_mapper import to_datetime

_EQ_RE = re.compile(r"^(\w+) = '((?:[^']|'')*)'$")
_IN_RE = re.compile(r"^(\w+) IN \((.*)\)$")
_AND_RE = re.compile(r"^\((.+)\) AND \((.+)\)$")
_LITERAL_RE = re.compile(r"'((?:[^']|'')*)'")
_GE_TS_RE = re.compile(r"^(\w+) >= timestamp '([^']+)'$")


def _lookup(attrs: dict[str, Any], name: str) -> Any:
    for key, value in attrs.items():
        if key.lower() == name.lower():
            return value
    return None


def _matches(attrs: dict[str, Any], where: str) -> bool:
    where = where.strip()
    if where == "1=1":
        return True
    m = _AND_RE.match(where)
    if m:
        return _matches(attrs, m.group(1)) and _matches(attrs, m.group(2))
    m = _EQ_RE.match(where)
    if m:
        return _lookup(attrs, m.group(1)) == m.group(2).replace("''", "'")
    m = _IN_RE.match(where)
    if m:
        values = {v.replace("''", "'") for v in _LITERAL_RE.findall(m.group(2))}
        return _lookup(attrs, m.group(1)) in values
    m = _GE_TS_RE.match(where)
    if m:
        since = datetime.strptime(m.group(2), "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)
        edited = to_datetime(_lookup(attrs, m.group(1)))
        return edited is not None and edited >= since
    raise AssertionError(f"fake remote cannot evaluate: {where}")


class FakeRemote:
    """In-memory stand-in for the feature service (query/list/download)."""

    def __init__(self) -> None:
        self.layers: dict[int, list[dict[str, Any]]] = {0: [], 1: [], 2: []}
        self.attachments: dict[tuple[int, int], list[dict[str, Any]]] = {}
        self.queries: list[tuple[int, str]] = []
        self.list_calls: list[tuple[int, int]] = []
        self.downloads: list[tuple[int, int, int]] = []
        self.fail_downloads: set[str] = set()
        self.fail_lists: set[tuple[int, int]] = set()
        self.query_error: Exception | None = None
        self.query_delay: float = 0.0
        self.download_delay: float = 0.0
        self.closed = False

    def add_attachment(self, layer_id: int, object_id: int, name: str, attachment_id: int | None = None) -> None:
        items = self.attachments.setdefault((layer_id, object_id), [])
        aid = attachment_id if attachment_id is not None else object_id * 100 + len(items) + 1
        items.append({"id": aid, "name": name, "contentType": "image/jpeg", "size": 10})

    async def aclose(self) -> None:
        self.closed = True

    async def query(self, layer_id: int, where: str) -> list[dict[str, Any]]:
        self.queries.append((layer_id, where))
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if self.query_error is not None:
            raise self.query_error
        return [dict(row) for row in self.layers.get(layer_id, []) if _matches(row, where)]

    async def list_attachments(self, layer_id: int, object_id: int) -> list[AttachmentInfo]:
        self.list_calls.append((layer_id, object_id))
        if (layer_id, object_id) in self.fail_lists:
            raise RemoteServiceError(f"listing failed for {layer_id}/{object_id}")
        return [AttachmentInfo.from_payload(p) for p in self.attachments.get((layer_id, object_id), [])]

    async def iter_attachment(self, layer_id: int, object_id: int, attachment_id: int) -> AsyncIterator[bytes]:
        self.downloads.append((layer_id, object_id, attachment_id))
        name = next(
            (p["name"] for p in self.attachments.get((layer_id, object_id), []) if p.get("id") == attachment_id),
            str(attachment_id),
        )
        if name in self.fail_downloads:
            raise RemoteServiceError(f"HTTP 404 for {name}")
        if self.download_delay:
            await asyncio.sleep(self.download_delay)
        yield b"jpeg:"
        yield name.encode("utf-8")


KEY_1 = "{AAAAAAAA-0000-0000-0000-000000000001}"
KEY_2 = "{AAAAAAAA-0000-0000-0000-000000000002}"
KEY_3 = "{AAAAAAAA-0000-0000-0000-000000000003}"


def parent_row(oid: int, key: str, code: str = "CA-001", **extra: Any) -> dict[str, Any]:
    row = {
        "OBJECTID": oid,
        "GLOBALID": key,
        "CA": code,
        "OTRO_CA": None,
        "FECHA_HORA": 1700000000000 + oid,
        "NORTE": 8650000.5 + oid,
        "ESTE": 300000.0,
        "ZONA": "18S",
        "COMPONENTE": "Tanque",
        "SUPERVISOR": "Ana Rojas",
        "DESCRIPCION": f"Punto {oid}",
        "LAST_EDITED_DATE": 1700000500000,
    }
    row.update(extra)
    return row


def seed_ca001(remote: FakeRemote) -> FakeRemote:
    """Three parents; the first has two descriptions and one fact; two photos each."""
    remote.layers[0] = [parent_row(1, KEY_1), parent_row(2, KEY_2), parent_row(3, KEY_3)]
    remote.layers[1] = [
        {"OBJECTID": 11, "GUID": KEY_1, "DESCRIP_1": "Fuga menor en brida"},
        {"OBJECTID": 12, "GUID": KEY_1, "DESCRIP_1": "Corrosion en soporte"},
    ]
    remote.layers[2] = [
        {"OBJECTID": 21, "GUID": KEY_1, "HECHO_DETEC_1": "Derrame", "DESCRIP_2": "Area 2 m2"},
    ]
    remote.add_attachment(1, 11, "desc_11_a.jpg")
    remote.add_attachment(2, 21, "fact_21_a.jpg")
    remote.add_attachment(0, 2, "p2_a.jpg")
    remote.add_attachment(0, 2, "p2_b.jpg")
    remote.add_attachment(0, 3, "p3_a.jpg")
    remote.add_attachment(0, 3, "p3_b.jpg")
    return remote
