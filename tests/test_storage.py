"""
Tests for fetching uploaded files from storage.
"""
import io

import pytest
import requests
from botocore.exceptions import ClientError

from jobimport.core.config import settings
from jobimport.domain.imports.errors import StorageDownloadError
from jobimport.integrations import storage


@pytest.fixture
def storage_credentials(monkeypatch):
    monkeypatch.setattr(settings, "storage_access_key_id", "key")
    monkeypatch.setattr(settings, "storage_secret_access_key", "secret")
    monkeypatch.setattr(settings, "storage_bucket_name", "uploads")


class FakeS3Client:
    def __init__(self, objects):
        self.objects = objects
        self.requests = []

    def get_object(self, Bucket, Key):
        self.requests.append((Bucket, Key))
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}


class TestLocalFiles:
    def test_file_url(self, tmp_path):
        path = tmp_path / "jobs.csv"
        path.write_bytes(b"title\nEngineer\n")
        assert storage.download_file(path.as_uri()) == b"title\nEngineer\n"

    def test_missing_local_file(self, tmp_path):
        with pytest.raises(StorageDownloadError, match="Cannot read"):
            storage.download_file((tmp_path / "nope.csv").as_uri())

    def test_size_limit(self, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "upload_max_file_size_mb", 0)
        path = tmp_path / "jobs.csv"
        path.write_bytes(b"title\n")
        with pytest.raises(StorageDownloadError, match="limit"):
            storage.download_file(path.as_uri())


class TestObjectStorage:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("s3://imports/2024/jobs.csv", ("imports", "2024/jobs.csv")),
            ("uploads/jobs.csv", ("uploads", "uploads/jobs.csv")),
            ("/jobs.csv", ("uploads", "jobs.csv")),
        ],
    )
    def test_split_object_url(self, storage_credentials, url, expected):
        assert storage.split_object_url(url) == expected

    def test_bare_key_without_bucket(self, monkeypatch):
        monkeypatch.setattr(settings, "storage_bucket_name", "")
        with pytest.raises(StorageDownloadError, match="No bucket"):
            storage.split_object_url("jobs.csv")

    def test_download_object(self, storage_credentials, monkeypatch):
        client = FakeS3Client({("imports", "jobs.csv"): b"title\n"})
        monkeypatch.setattr(storage, "get_storage_client", lambda: client)
        assert storage.download_file("s3://imports/jobs.csv") == b"title\n"
        assert client.requests == [("imports", "jobs.csv")]

    def test_missing_object(self, storage_credentials, monkeypatch):
        monkeypatch.setattr(storage, "get_storage_client", lambda: FakeS3Client({}))
        with pytest.raises(StorageDownloadError, match="NoSuchKey"):
            storage.download_file("s3://imports/jobs.csv")

    def test_incomplete_configuration(self, monkeypatch):
        monkeypatch.setattr(settings, "storage_access_key_id", "")
        with pytest.raises(StorageDownloadError, match="incomplete"):
            storage.get_storage_client()

    def test_client_uses_configured_endpoint(self, storage_credentials, monkeypatch):
        captured = {}
        monkeypatch.setattr(settings, "storage_endpoint_url", "http://minio:9000")
        monkeypatch.setattr(storage.boto3, "client", lambda **kwargs: captured.update(kwargs) or "client")
        assert storage.get_storage_client() == "client"
        assert captured["endpoint_url"] == "http://minio:9000"
        assert captured["service_name"] == "s3"


class TestHttpDownloads:
    def test_http_url(self, monkeypatch):
        class Response:
            content = b"title\n"

            def raise_for_status(self):
                return None

        monkeypatch.setattr(storage.requests, "get", lambda url, timeout: Response())
        assert storage.download_file("https://files.example.com/jobs.csv") == b"title\n"

    def test_http_error(self, monkeypatch):
        def fail(url, timeout):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(storage.requests, "get", fail)
        with pytest.raises(StorageDownloadError, match="refused"):
            storage.download_file("https://files.example.com/jobs.csv")
