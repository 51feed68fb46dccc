"""
Storage transfer adapters.
The pipeline hands recorded files to one of these after ingestion.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from uploadkit.config import Settings
from uploadkit.domain.errors import InvalidOptions, IOFailure

logger = logging.getLogger(__name__)

PUBLIC_READ = "public-read"
S3_ERRORS = (ClientError, BotoCoreError, S3UploadFailedError)


class StorageBackend(Protocol):
    def store(self, source: str | os.PathLike[str] | bytes, bucket: str, key: str) -> str: ...

    def delete(self, bucket: str, key_or_url: str) -> bool: ...


def object_key(key_or_url: str) -> Optional[str]:
    """Reduce a full URL to its object key; plain keys pass through."""
    if key_or_url.startswith(("http://", "https://")):
        path = urlparse(key_or_url).path.strip("/")
        return path or None
    return key_or_url.strip("/") or None


class LocalDirectoryStorage:
    """Stores objects as files under `root/<bucket>/<key>`."""

    def __init__(self, root: str | os.PathLike[str], base_url: str = "file://"):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def _path(self, bucket: str, key: str) -> Path:
        target = (self.root / bucket / key).resolve()
        if self.root not in target.parents:
            raise InvalidOptions("Invalid storage key", code="path_traversal")
        return target

    def store(self, source: str | os.PathLike[str] | bytes, bucket: str, key: str) -> str:
        target = self._path(bucket, key)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            if isinstance(source, (bytes, bytearray)):
                target.write_bytes(source)
            else:
                shutil.copyfile(source, target)
        except OSError as exc:
            raise IOFailure(f"Could not store {key}: {exc}") from exc

        if self.base_url == "file:":
            return target.as_uri()
        return f"{self.base_url}/{bucket}/{key}"

    def delete(self, bucket: str, key_or_url: str) -> bool:
        key = object_key(key_or_url)
        if not key:
            return False
        if key.startswith(f"{bucket}/"):
            key = key[len(bucket) + 1 :]
        target = self._path(bucket, key)
        if not target.exists():
            return False
        target.unlink()
        return True


class S3Storage:
    """Amazon S3 transfer with public-read objects."""

    def __init__(self, client: Any = None, **client_options: Any):
        self.client = client or boto3.client("s3", **client_options)

    @staticmethod
    def public_url(bucket: str, key: str) -> str:
        return f"https://{bucket}.s3.amazonaws.com/{key}"

    def store(self, source: str | os.PathLike[str] | bytes, bucket: str, key: str) -> str:
        extra = {"ACL": PUBLIC_READ}
        try:
            if isinstance(source, (bytes, bytearray)):
                self.client.put_object(Bucket=bucket, Key=key, Body=bytes(source), **extra)
            else:
                self.client.upload_file(os.fspath(source), bucket, key, ExtraArgs=extra)
        except S3_ERRORS as exc:
            raise IOFailure(f"Could not transfer {key} to s3://{bucket}: {exc}", status=502) from exc
        logger.info("Transferred object to s3://%s/%s", bucket, key)
        return self.public_url(bucket, key)

    def delete(self, bucket: str, key_or_url: str) -> bool:
        key = object_key(key_or_url)
        if not key:
            return False
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except S3_ERRORS as exc:
            raise IOFailure(f"Could not delete s3://{bucket}/{key}: {exc}", status=502) from exc
        return True


def storage_from_settings(settings: Settings) -> StorageBackend:
    """
    Build the transfer backend for `settings`.

    `storage_root` selects a local directory, otherwise objects go to S3 with
    the default boto3 credentials. A bucket must be configured either way.
    """
    if not settings.storage_bucket:
        raise InvalidOptions("No storage bucket is configured for transfers")
    if settings.storage_root is not None:
        return LocalDirectoryStorage(settings.storage_root, base_url=settings.storage_url)
    return S3Storage()
