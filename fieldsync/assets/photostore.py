"""Filesystem store for downloaded photographs.

Layout (gitignored):
  data/photos/<relation-key>/<file name>

Paths are derived from (relation key, file name) only, so the same attachment
always lands in the same place. Names that need sanitizing get a short hash
suffix of the original so two distinct names never collapse onto one path.
"""

from __future__ import annotations

import hashlib
import os
import re
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from ..errors import PhotoStoreError

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]")


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8", "surrogatepass")).hexdigest()[:10]


def safe_component(value: str) -> str:
    """Filesystem-safe, collision-safe rendering of one path component."""
    if not isinstance(value, str) or not value.strip():
        raise PhotoStoreError("path component must be a non-empty string")
    cleaned = _UNSAFE_RE.sub("_", value.strip()).strip(".")
    if cleaned == value and cleaned:
        return cleaned
    stem, dot, ext = cleaned.rpartition(".")
    if not dot or not stem:
        stem, ext = cleaned or "file", ""
    suffix = f".{ext}" if ext else ""
    return f"{stem[:120]}_{_short_hash(value)}{suffix}"


@dataclass(frozen=True)
class PhotoWriteResult:
    path: Path
    size_bytes: int
    sha256: str


class PhotoStore:
    """Deterministic per-record directories with atomic writes."""

    def __init__(self, root_dir: str | Path = "data/photos"):
        self.root_dir = Path(root_dir)
        self.tmp_dir = self.root_dir / ".tmp"

    def dir_for(self, relation_key: str) -> Path:
        return self.root_dir / safe_component(relation_key.strip("{}"))

    def path_for(self, relation_key: str, file_name: str) -> Path:
        return self.dir_for(relation_key) / safe_component(file_name)

    def exists(self, path: str | Path) -> bool:
        return Path(path).is_file()

    async def write_stream(self, dest: Path, chunks: AsyncIterator[bytes]) -> PhotoWriteResult:
        """Stream into a temp file, then rename into place.

        A partially received download never appears at `dest`.
        """
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.tmp_dir / f"tmp_{secrets.token_hex(16)}"
        h = hashlib.sha256()
        size = 0

        try:
            with open(tmp_path, "wb") as f:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    if not isinstance(chunk, (bytes, bytearray)):
                        raise PhotoStoreError("photo chunks must be bytes")
                    h.update(chunk)
                    size += len(chunk)
                    f.write(chunk)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, dest)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        return PhotoWriteResult(path=dest, size_bytes=size, sha256=h.hexdigest())

    async def write_bytes(self, dest: Path, data: bytes) -> PhotoWriteResult:
        async def _iter() -> AsyncIterator[bytes]:
            yield data or b""

        return await self.write_stream(dest, _iter())

    def remove(self, path: str | Path) -> bool:
        target = Path(path)
        if not target.is_file():
            return False
        target.unlink()
        return True

    def remove_record_dir(self, relation_key: str) -> None:
        directory = self.dir_for(relation_key)
        if directory.is_dir():
            shutil.rmtree(directory)
