"""S3-compatible object storage backend (AWS S3, MinIO, R2, Tigris, ...)."""

from __future__ import annotations

import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from storage.base import StoredObject, Storage

logger = logging.getLogger(__name__)


class S3Storage(Storage):
    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        if client is None:
            client_kwargs = {
                "service_name": "s3",
                "config": Config(signature_version="s3v4"),
            }
            if region:
                client_kwargs["region_name"] = region
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self.client = client
        logger.info("S3 storage initialised (bucket=%s, endpoint=%s)", bucket, endpoint_url)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> StoredObject:
        key = self.normalize_key(key)
        extra = {"ContentType": content_type} if content_type else {}
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        logger.debug("Uploaded s3://%s/%s (%d bytes)", self.bucket, key, len(data))
        return StoredObject(key=key, size_bytes=len(data), content_type=content_type)

    def get(self, key: str) -> bytes:
        key = self.normalize_key(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response["Error"]["Code"] in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"File not found: {key}") from exc
            raise
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self.normalize_key(key))
            return True
        except ClientError as exc:
            if exc.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        self.client.delete_object(Bucket=self.bucket, Key=self.normalize_key(key))
        return True

    def url(self, key: str, expires_in: int = 3600) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": self.normalize_key(key)},
            ExpiresIn=expires_in,
        )
