"""
Tests for transfer storage adapters.
"""

import pytest
from botocore.exceptions import ClientError

from uploadkit.adapters.storage import (
    LocalDirectoryStorage,
    S3Storage,
    object_key,
    storage_from_settings,
)
from uploadkit.domain.errors import InvalidOptions, IOFailure


class RecordingS3Client:
    """Minimal stand-in for a boto3 S3 client."""

    def __init__(self):
        self.calls = []

    def put_object(self, **kwargs):
        self.calls.append(("put_object", kwargs))

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        self.calls.append(("upload_file", (filename, bucket, key, ExtraArgs)))

    def delete_object(self, **kwargs):
        self.calls.append(("delete_object", kwargs))


class DenyingS3Client:
    """Answers every call with an AccessDenied error."""

    def _deny(self, operation):
        raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, operation)

    def put_object(self, **kwargs):
        self._deny("PutObject")

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        self._deny("PutObject")

    def delete_object(self, **kwargs):
        self._deny("DeleteObject")


class TestS3Storage:
    def test_store_file_is_public_read(self, tmp_path):
        source = tmp_path / "photo.png"
        source.write_bytes(b"data")
        client = RecordingS3Client()

        url = S3Storage(client=client).store(source, "media", "photo.png")

        assert url == "https://media.s3.amazonaws.com/photo.png"
        assert client.calls == [
            ("upload_file", (str(source), "media", "photo.png", {"ACL": "public-read"}))
        ]

    def test_store_bytes(self):
        client = RecordingS3Client()
        S3Storage(client=client).store(b"raw", "media", "raw.txt")
        name, kwargs = client.calls[0]
        assert name == "put_object"
        assert kwargs == {"Bucket": "media", "Key": "raw.txt", "Body": b"raw", "ACL": "public-read"}

    def test_delete_accepts_full_url(self):
        client = RecordingS3Client()
        assert S3Storage(client=client).delete("media", "https://media.s3.amazonaws.com/a/b.png")
        assert client.calls == [("delete_object", {"Bucket": "media", "Key": "a/b.png"})]

    def test_delete_without_key(self):
        client = RecordingS3Client()
        assert S3Storage(client=client).delete("media", "") is False
        assert client.calls == []

    def test_client_errors_become_io_failures(self, tmp_path):
        source = tmp_path / "photo.png"
        source.write_bytes(b"data")
        storage = S3Storage(client=DenyingS3Client())

        with pytest.raises(IOFailure) as stored:
            storage.store(source, "media", "photo.png")
        assert stored.value.status == 502
        with pytest.raises(IOFailure):
            storage.store(b"raw", "media", "raw.txt")
        with pytest.raises(IOFailure):
            storage.delete("media", "photo.png")


class TestLocalDirectoryStorage:
    def test_store_and_delete(self, tmp_path):
        storage = LocalDirectoryStorage(tmp_path, base_url="https://files.example.com/")
        assert storage.store(b"hi", "media", "notes.txt") == "https://files.example.com/media/notes.txt"
        assert (tmp_path / "media" / "notes.txt").read_bytes() == b"hi"

        assert storage.delete("media", "https://files.example.com/media/notes.txt") is True
        assert storage.delete("media", "notes.txt") is False

    def test_rejects_traversal(self, tmp_path):
        storage = LocalDirectoryStorage(tmp_path / "root")
        with pytest.raises(InvalidOptions):
            storage.store(b"x", "media", "../../escape.txt")


def test_object_key():
    assert object_key("https://bucket.s3.amazonaws.com/dir/file.png") == "dir/file.png"
    assert object_key("/dir/file.png") == "dir/file.png"
    assert object_key("https://bucket.s3.amazonaws.com/") is None


class TestStorageFromSettings:
    def test_requires_bucket(self, settings):
        with pytest.raises(InvalidOptions):
            storage_from_settings(settings)

    def test_local_root(self, settings, tmp_path):
        configured = settings.model_copy(
            update={
                "storage_bucket": "media",
                "storage_root": tmp_path / "store",
                "storage_url": "https://files.example.com",
            }
        )
        storage = storage_from_settings(configured)
        assert isinstance(storage, LocalDirectoryStorage)
        assert storage.store(b"hi", "media", "a.txt") == "https://files.example.com/media/a.txt"
