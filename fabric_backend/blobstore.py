"""Key-addressed blob storage on the local filesystem.

Each blob lives under ``<root>/<aa>/<sha256(key)>`` with a JSON sidecar holding
the original key, content type and custom metadata. Hashing the key keeps
arbitrary archive paths (``docs`` next to ``docs/readme.md``, very long names)
from clashing with the filesystem layout.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .content import DEFAULT_CONTENT_TYPE, checksum
from .security import safe_join


@dataclass(frozen=True)
class BlobInfo:
    key: str
    size: int
    content_type: str
    etag: str
    uploaded_at: float
    custom_metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Blob:
    info: BlobInfo
    data: bytes


class BlobStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: str) -> tuple[Path, Path]:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        data_path = safe_join(self.root, digest[:2], f"{digest}.bin")
        meta_path = safe_join(self.root, digest[:2], f"{digest}.json")
        return data_path, meta_path

    @staticmethod
    def _atomic_write(dest: Path, payload: bytes) -> None:
        # Temp file in the same directory so os.replace() is atomic.
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".tmp-{uuid.uuid4().hex}")
        try:
            tmp.write_bytes(payload)
            os.replace(tmp, dest)
        finally:
            if tmp.exists():
                tmp.unlink()

    @staticmethod
    def _load_info(meta_path: Path, size: int) -> BlobInfo:
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        return BlobInfo(
            key=meta["key"],
            size=size,
            content_type=meta.get("content_type") or DEFAULT_CONTENT_TYPE,
            etag=meta.get("etag", ""),
            uploaded_at=float(meta.get("uploaded_at", 0)),
            custom_metadata=dict(meta.get("custom_metadata") or {}),
        )

    def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = DEFAULT_CONTENT_TYPE,
        custom_metadata: dict[str, str] | None = None,
    ) -> BlobInfo:
        data_path, meta_path = self._paths(key)
        info = BlobInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            etag=checksum(data),
            uploaded_at=time.time(),
            custom_metadata=dict(custom_metadata or {}),
        )
        self._atomic_write(data_path, data)
        meta = {
            "key": info.key,
            "content_type": info.content_type,
            "etag": info.etag,
            "uploaded_at": info.uploaded_at,
            "custom_metadata": info.custom_metadata,
        }
        self._atomic_write(meta_path, json.dumps(meta, sort_keys=True).encode("utf-8"))
        return info

    def get(self, key: str) -> Blob | None:
        data_path, meta_path = self._paths(key)
        if not data_path.is_file() or not meta_path.is_file():
            return None
        data = data_path.read_bytes()
        return Blob(info=self._load_info(meta_path, len(data)), data=data)

    def delete(self, key: str) -> bool:
        data_path, meta_path = self._paths(key)
        existed = data_path.exists()
        data_path.unlink(missing_ok=True)
        meta_path.unlink(missing_ok=True)
        return existed

    def list(self, prefix: str = "") -> Iterator[BlobInfo]:
        """Yield every blob whose key starts with prefix (unordered)."""
        for meta_path in self.root.glob("*/*.json"):
            data_path = meta_path.with_suffix(".bin")
            try:
                info = self._load_info(meta_path, data_path.stat().st_size)
            except (OSError, ValueError, KeyError):
                # Half-written or foreign file; not one of ours.
                continue
            if info.key.startswith(prefix):
                yield info
