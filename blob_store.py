"""Object storage for generated certificate documents."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

BLOB_BACKEND = os.getenv("BLOB_BACKEND", "local")
BLOB_LOCAL_DIR = os.getenv("BLOB_LOCAL_DIR", "blobs")
CERTIFICATES_BUCKET = os.getenv("CERTIFICATES_BUCKET", "certificates")


class BlobStoreError(Exception):
    """Raised when an object could not be written to the blob store."""


class BlobStore(ABC):
    """Write-only object storage port; returns a URL for the stored object."""

    @abstractmethod
    def put_object(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return a URL that serves it."""
        ...


class LocalBlobStore(BlobStore):
    def __init__(self, root: str, base_url: Optional[str] = None):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/") if base_url else None

    def put_object(self, key: str, data: bytes, content_type: str) -> str:
        target = (self.root / key).resolve()
        if self.root.resolve() not in target.parents:
            raise BlobStoreError(f"Refusing to write outside the blob root: {key}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise BlobStoreError(f"Could not write {key}: {exc}") from exc
        if self.base_url:
            return f"{self.base_url}/{key}"
        return target.as_uri()


def _create_s3_client(endpoint_url: Optional[str], access_key: Optional[str], secret_key: Optional[str]) -> Any:
    import boto3

    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name="auto",
    )


class S3BlobStore(BlobStore):
    """S3-compatible bucket (AWS, R2, MinIO); the client is created on first use."""

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client: Any = None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.access_key = access_key
        self.secret_key = secret_key
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _create_s3_client(self.endpoint_url, self.access_key, self.secret_key)
        return self._client

    def object_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def put_object(self, key: str, data: bytes, content_type: str) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except ClientError as exc:
            code = (exc.response.get("Error") or {}).get("Code")
            raise BlobStoreError(f"Upload of {key} to {self.bucket} failed ({code})") from exc
        except BotoCoreError as exc:
            raise BlobStoreError(f"Upload of {key} to {self.bucket} failed: {exc}") from exc
        return self.object_url(key)


def create_blob_store(backend: Optional[str] = None) -> BlobStore:
    """Build the configured blob store from the environment."""
    backend = (backend or os.getenv("BLOB_BACKEND") or BLOB_BACKEND).lower()
    if backend == "s3":
        return S3BlobStore(
            os.getenv("CERTIFICATES_BUCKET") or CERTIFICATES_BUCKET,
            endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
            access_key=os.getenv("S3_ACCESS_KEY") or None,
            secret_key=os.getenv("S3_SECRET_KEY") or None,
            public_base_url=os.getenv("S3_PUBLIC_BASE_URL") or None,
        )
    if backend == "local":
        return LocalBlobStore(os.getenv("BLOB_LOCAL_DIR") or BLOB_LOCAL_DIR)
    raise ValueError(f"Unknown blob backend: {backend}")
