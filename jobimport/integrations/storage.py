"""
Fetch uploaded spreadsheets for the import workers.

Uploads live in S3-compatible storage (AWS S3, Backblaze B2, MinIO, ...).
An import's ``file_url`` is one of:

- ``s3://bucket/key``: explicit bucket and key
- ``uploads/jobs.csv``: key inside the configured bucket
- ``https://...``: pre-signed or public URL
- ``file:///path/jobs.csv``: local file, for development and tests
"""
import logging
from pathlib import Path
from typing import Tuple
from urllib.parse import unquote, urlparse

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from jobimport.core.config import settings
from jobimport.domain.imports.errors import StorageDownloadError

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 60


def get_storage_client():
    """
    Get S3-compatible storage client.

    Raises:
        StorageDownloadError: If storage configuration is incomplete
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key]):
        raise StorageDownloadError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID "
            "and STORAGE_SECRET_ACCESS_KEY in your environment."
        )

    config = Config(
        signature_version="s3v4",
        retries={"max_attempts": settings.storage_max_retries, "mode": "standard"},
    )
    client_kwargs = {
        "service_name": "s3",
        "aws_access_key_id": settings.storage_access_key_id,
        "aws_secret_access_key": settings.storage_secret_access_key,
        "config": config,
    }
    # Add endpoint URL for non-AWS providers (B2, MinIO, etc.)
    if settings.storage_endpoint_url:
        client_kwargs["endpoint_url"] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs["region_name"] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except BotoCoreError as e:
        logger.error("Failed to create storage client: %s", e)
        raise StorageDownloadError(f"Failed to connect to storage: {e}") from e


def split_object_url(file_url: str) -> Tuple[str, str]:
    """Return ``(bucket, key)`` for an ``s3://`` URL or a bare key."""
    parsed = urlparse(file_url)
    if parsed.scheme == "s3":
        bucket, key = parsed.netloc, parsed.path.lstrip("/")
    else:
        bucket, key = settings.storage_bucket_name, file_url.lstrip("/")
    if not bucket:
        raise StorageDownloadError(f"No bucket given for '{file_url}' and STORAGE_BUCKET_NAME is not set")
    if not key:
        raise StorageDownloadError(f"No object key in '{file_url}'")
    return bucket, key


def _download_object(file_url: str) -> bytes:
    bucket, key = split_object_url(file_url)
    client = get_storage_client()
    try:
        response = client.get_object(Bucket=bucket, Key=key)
        return response["Body"].read()
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        logger.error("Storage download of %s/%s failed: %s", bucket, key, error_code)
        raise StorageDownloadError(f"Download failed ({error_code}): {e}") from e
    except BotoCoreError as e:
        logger.error("Storage download of %s/%s failed: %s", bucket, key, e)
        raise StorageDownloadError(f"Download failed: {e}") from e


def _download_http(file_url: str) -> bytes:
    try:
        response = requests.get(file_url, timeout=HTTP_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error("HTTP download of %s failed: %s", file_url, e)
        raise StorageDownloadError(f"Download failed: {e}") from e
    return response.content


def _read_local(file_url: str) -> bytes:
    path = Path(unquote(urlparse(file_url).path))
    try:
        return path.read_bytes()
    except OSError as e:
        raise StorageDownloadError(f"Cannot read {path}: {e}") from e


def download_file(file_url: str) -> bytes:
    """
    Download an uploaded file.

    Raises:
        StorageDownloadError: If the file cannot be fetched
    """
    scheme = urlparse(file_url).scheme
    if scheme == "file":
        content = _read_local(file_url)
    elif scheme in ("http", "https"):
        content = _download_http(file_url)
    else:
        content = _download_object(file_url)

    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise StorageDownloadError(
            f"File is {len(content)} bytes; the limit is {settings.upload_max_file_size_mb} MB"
        )
    logger.debug("Fetched %d bytes from %s", len(content), file_url)
    return content
