"""
Storage abstraction for S3 product images and in-memory testing.
"""

from __future__ import annotations

import posixpath
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
from botocore.config import Config

PRODUCT_IMAGE_PREFIX = "products"


def build_product_image_key(filename: Optional[str]) -> str:
    """
    Build a collision-resistant key for an uploaded product image.

    The key combines a random identifier with the client's filename, minus any
    directory components it may carry.
    """
    name = posixpath.basename((filename or "").replace("\\", "/")).strip()
    return f"{PRODUCT_IMAGE_PREFIX}/{uuid.uuid4().hex}-{name or 'image'}"


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        ...

    def presign_get(self, key: str, expires_in: int = 3600) -> str:
        ...

    def object_url(self, key: str) -> str:
        ...

    def delete(self, key: str) -> None:
        ...


@dataclass
class StoredObject:
    data: bytes
    content_type: str


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict[str, StoredObject] = field(default_factory=dict)

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        self.stored_objects[key] = StoredObject(data=data, content_type=content_type)

    def presign_get(self, key: str, expires_in: int = 3600) -> str:
        return f"{self.base_url}/{key}?op=get&expires={expires_in}"

    def object_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def delete(self, key: str) -> None:
        # S3 DeleteObject succeeds for missing keys too.
        self.stored_objects.pop(key, None)


@dataclass
class S3StorageClient:
    """
    boto3-backed client for a private S3 (or S3-compatible) bucket.
    """

    bucket: str
    region: str
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint: Optional[str] = None

    def __post_init__(self):
        config = Config(signature_version="s3v4")
        # Missing credentials fall through to boto3's default provider chain.
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    def presign_get(self, key: str, expires_in: int = 3600) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def object_url(self, key: str) -> str:
        if self.endpoint:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)
