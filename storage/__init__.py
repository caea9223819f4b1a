"""
storage — object storage backends and image upload processing.
"""

from __future__ import annotations

from functools import lru_cache

from config.settings import config
from storage.base import StoredObject, Storage


@lru_cache(maxsize=1)
def get_storage() -> Storage:
    """Return the configured backend (process-wide)."""
    if config.storage_backend == "s3":
        from storage.s3 import S3Storage

        return S3Storage(
            bucket=config.s3_bucket,
            endpoint_url=config.s3_endpoint_url,
            region=config.s3_region,
        )
    from storage.local import LocalStorage

    return LocalStorage(config.storage_local_root)


__all__ = ["Storage", "StoredObject", "get_storage"]
