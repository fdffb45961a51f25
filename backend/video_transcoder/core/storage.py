"""Object storage backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Failures surface as StorageError; retries are left to the underlying SDK.
"""

import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageError(Exception):
    """Raised when an object cannot be read from or written to storage."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


@dataclass
class StorageResult:
    """Result of a storage write."""
    key: str
    file_size: int = 0
    etag: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration for a single bucket."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Implementations must be safe to share between concurrently running jobs.
    """

    @abstractmethod
    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> StorageResult:
        """Upload a local file to ``key``, replacing any existing object."""

    @abstractmethod
    def download(self, key: str, destination: str) -> None:
        """Download ``key`` into the local file ``destination``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete ``key``. Deleting a missing object is not an error."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def list_files(self, prefix: str = "") -> list[str]:
        """List object keys with the given prefix."""


class LocalStorage(StorageBackend):
    """Local filesystem storage backend.

    Keys map to paths below ``config.local_path``.
    """

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        """Get full path for a key, refusing keys that escape the base path."""
        path = (self.base_path / key).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise StorageError(f"invalid key: {key}", key=key)
        return path

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> StorageResult:
        dest_path = self._get_full_path(key)
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(file_path, dest_path)
        except OSError as e:
            raise StorageError(f"failed to upload {file_path} to {key}: {e}", key=key) from e

        return StorageResult(key=key, file_size=dest_path.stat().st_size)

    def download(self, key: str, destination: str) -> None:
        src_path = self._get_full_path(key)
        if not src_path.is_file():
            raise StorageError(f"object not found: {key}", key=key)
        try:
            shutil.copyfile(src_path, destination)
        except OSError as e:
            raise StorageError(f"failed to download {key}: {e}", key=key) from e

    def delete(self, key: str) -> None:
        file_path = self._get_full_path(key)
        try:
            file_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"failed to delete {key}: {e}", key=key) from e

    def exists(self, key: str) -> bool:
        return self._get_full_path(key).is_file()

    def list_files(self, prefix: str = "") -> list[str]:
        files = []
        for path in self.base_path.rglob("*"):
            if path.is_file():
                rel_path = path.relative_to(self.base_path).as_posix()
                if rel_path.startswith(prefix):
                    files.append(rel_path)
        return sorted(files)


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self):
        """Get or create the S3 client. boto3 clients are thread safe."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    client_kwargs = {
                        "service_name": "s3",
                        "region_name": self.config.region or "us-east-1",
                    }

                    if self.config.access_key and self.config.secret_key:
                        client_kwargs["aws_access_key_id"] = self.config.access_key
                        client_kwargs["aws_secret_access_key"] = self.config.secret_key

                    # For MinIO or other S3-compatible storage
                    if self.config.endpoint_url:
                        client_kwargs["endpoint_url"] = self.config.endpoint_url
                        client_kwargs["config"] = BotoConfig(
                            signature_version="s3v4",
                            s3={"addressing_style": "path"},
                        )
                        if not self.config.use_ssl:
                            client_kwargs["use_ssl"] = False

                    self._client = boto3.client(**client_kwargs)

        return self._client

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> StorageResult:
        try:
            file_size = os.path.getsize(file_path)
            self._get_client().upload_file(
                file_path,
                self.config.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (OSError, S3UploadFailedError, ClientError, BotoCoreError) as e:
            raise StorageError(
                f"failed to upload {file_path} to s3://{self.config.bucket}/{key}: {e}",
                key=key,
            ) from e

        return StorageResult(key=key, file_size=file_size)

    def download(self, key: str, destination: str) -> None:
        try:
            self._get_client().download_file(self.config.bucket, key, destination)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise StorageError(
                    f"object not found: s3://{self.config.bucket}/{key}", key=key
                ) from e
            raise StorageError(
                f"failed to download s3://{self.config.bucket}/{key}: {e}", key=key
            ) from e
        except (OSError, BotoCoreError) as e:
            raise StorageError(
                f"failed to download s3://{self.config.bucket}/{key}: {e}", key=key
            ) from e

    def delete(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"failed to delete s3://{self.config.bucket}/{key}: {e}", key=key
            ) from e

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise StorageError(
                f"failed to stat s3://{self.config.bucket}/{key}: {e}", key=key
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"failed to stat s3://{self.config.bucket}/{key}: {e}", key=key
            ) from e

    def list_files(self, prefix: str = "") -> list[str]:
        try:
            paginator = self._get_client().get_paginator("list_objects_v2")
            files = []
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    files.append(obj["Key"])
            return files
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"failed to list s3://{self.config.bucket}/{prefix}: {e}", key=prefix
            ) from e


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def create_storage_backend(config: StorageConfig) -> StorageBackend:
    """Create the backend selected by ``config.backend``.

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = config.backend.lower()
    if backend == "local":
        return LocalStorage(config)
    if backend in ("s3", "minio"):
        return S3Storage(config)
    raise ValueError(f"Unsupported storage backend: {config.backend}")
