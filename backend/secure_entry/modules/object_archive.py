"""Object archive — key → bytes store for proof photos.

The service only needs ``put``/``get``/``delete``; ``ObjectArchive`` is that
contract and ``LocalObjectArchive`` implements it on a directory tree. Writes
go to a temp path first and are atomically renamed, so a reader never sees a
half-written object.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_META_SUFFIX = ".meta.json"


@dataclass
class StoredObject:
    body: bytes
    content_type: str = "application/octet-stream"
    metadata: dict[str, str] = field(default_factory=dict)


class ObjectArchive(Protocol):
    def put(self, key: str, data: bytes, content_type: str, metadata: dict[str, str] | None = None) -> None:
        ...

    def get(self, key: str) -> StoredObject | None:
        ...

    def delete(self, key: str) -> None:
        ...


class LocalObjectArchive:
    """Filesystem-backed object archive rooted at ``root``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ValueError(f"Invalid object key: {key!r}")
        return self.root.joinpath(*parts)

    def put(self, key: str, data: bytes, content_type: str, metadata: dict[str, str] | None = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        meta = {"content_type": content_type, "metadata": metadata or {}}

        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        meta_path = path.with_name(path.name + _META_SUFFIX)
        meta_tmp = meta_path.with_name(meta_path.name + ".tmp")
        meta_tmp.write_text(json.dumps(meta), encoding="utf-8")
        os.replace(meta_tmp, meta_path)
        logger.debug("Stored object %s (%d bytes)", key, len(data))

    def get(self, key: str) -> StoredObject | None:
        path = self._path(key)
        if not path.is_file():
            return None
        obj = StoredObject(body=path.read_bytes())
        meta_path = path.with_name(path.name + _META_SUFFIX)
        if meta_path.is_file():
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                meta = {}
            obj.content_type = meta.get("content_type") or obj.content_type
            obj.metadata = meta.get("metadata") or {}
        return obj

    def delete(self, key: str) -> None:
        """Remove the object and its metadata; deleting a missing key is a no-op."""
        path = self._path(key)
        for p in (path, path.with_name(path.name + _META_SUFFIX)):
            try:
                p.unlink()
            except FileNotFoundError:
                pass
        logger.debug("Deleted object %s", key)
