"""
Object storage interface for uploaded images (user avatars, organization
logos, note and comment attachments).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class StoredObject:
    key: str
    size_bytes: int
    content_type: Optional[str] = None
    last_modified: Optional[datetime] = None


class Storage(ABC):
    """Key/value blob store; keys are ``/``-separated relative paths."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> StoredObject:
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Raise ``FileNotFoundError`` if the key does not exist."""
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Return False if there was nothing to delete."""
        ...

    @abstractmethod
    def url(self, key: str, expires_in: int = 3600) -> str:
        """Return a URL the browser can fetch the object from."""
        ...

    @staticmethod
    def normalize_key(key: str) -> str:
        key = key.replace("\\", "/").lstrip("/")
        if not key or any(part in ("", ".", "..") for part in key.split("/")):
            raise ValueError(f"Invalid object key: {key!r}")
        return key
