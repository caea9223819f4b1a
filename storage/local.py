"""Filesystem storage backend."""

from __future__ import annotations

import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from storage.base import StoredObject, Storage

logger = logging.getLogger(__name__)


class LocalStorage(Storage):
    """Stores objects as files under ``root``; served by ``/api/v1/uploads``."""

    def __init__(self, root: str | Path, public_base_url: str = "/api/v1/uploads"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        return self.root / self.normalize_key(key)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> StoredObject:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return StoredObject(
            key=self.normalize_key(key),
            size_bytes=len(data),
            content_type=content_type or mimetypes.guess_type(path.name)[0],
            last_modified=datetime.now(timezone.utc),
        )

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {key}")
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def url(self, key: str, expires_in: int = 3600) -> str:
        return f"{self.public_base_url}/{self.normalize_key(key)}"
