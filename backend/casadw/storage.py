"""
Media storage for uploaded files: S3-compatible object storage and an in-memory test double.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
from botocore.config import Config

from .config import Settings


class MediaStorage(Protocol):
    """Defines the operations the upload endpoints need from the media provider."""

    backend_name: str

    def put_object(self, key: str, body: bytes, content_type: str) -> str:
        ...

    def delete_object(self, key: str) -> None:
        ...


@dataclass
class InMemoryMediaStorage:
    """Test double for media storage."""

    base_url: str = "https://media.example.test"
    stored_objects: dict[str, tuple[bytes, str]] = field(default_factory=dict)
    backend_name: str = "memory"

    def put_object(self, key: str, body: bytes, content_type: str) -> str:
        self.stored_objects[key] = (body, content_type)
        return f"{self.base_url}/{key}"

    def delete_object(self, key: str) -> None:
        self.stored_objects.pop(key, None)


@dataclass
class S3MediaStorage:
    """
    S3-compatible media storage.

    Objects are written with a public-read ACL; the returned URL is built from
    ``public_base_url`` when set, otherwise from the endpoint and bucket.
    """

    bucket: str
    region: Optional[str] = None
    endpoint: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    public_base_url: Optional[str] = None
    backend_name: str = "s3"

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def _url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint:
            scheme, _, host = self.endpoint.partition("://")
            return f"{scheme}://{self.bucket}.{host.rstrip('/')}/{key}"
        region = self.region or "us-east-1"
        return f"https://{self.bucket}.s3.{region}.amazonaws.com/{key}"

    def put_object(self, key: str, body: bytes, content_type: str) -> str:
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
            ACL="public-read",
        )
        return self._url_for(key)

    def delete_object(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)


def get_media_storage(settings: Settings) -> MediaStorage:
    if settings.media_backend == "s3" and settings.media_bucket:
        return S3MediaStorage(
            bucket=settings.media_bucket,
            region=settings.media_region,
            endpoint=settings.media_endpoint,
            access_key_id=settings.media_access_key_id,
            secret_access_key=settings.media_secret_access_key,
            public_base_url=settings.media_public_base_url,
        )
    return InMemoryMediaStorage()
