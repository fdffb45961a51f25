"""Storage gateway for transcode jobs.

Reads source videos from the download bucket and publishes renditions to
the upload bucket under a fixed key layout:

    transcoded/{base}/{rendition}/index.m3u8
    transcoded/{base}/{rendition}/segment_000.ts

where ``base`` is the source key's file name without directory or extension.
"""

import logging
import os
import posixpath
import tempfile
from pathlib import Path
from typing import Optional

from video_transcoder.core.config import Settings, settings as default_settings
from video_transcoder.core.metrics import STORAGE_OPERATIONS_TOTAL
from video_transcoder.core.storage import (
    DEFAULT_CONTENT_TYPE,
    StorageBackend,
    StorageConfig,
    StorageError,
    StorageResult,
    create_storage_backend,
)
from video_transcoder.modules.transcoding.ffmpeg import PLAYLIST_FILENAME
from video_transcoder.modules.transcoding.models import Rendition

logger = logging.getLogger(__name__)

TRANSCODED_PREFIX = "transcoded"
DEFAULT_SOURCE_EXTENSION = ".mp4"

CONTENT_TYPES = {
    ".m3u8": "application/x-mpegURL",
    ".ts": "video/MP2T",
}


def source_base_name(source_key: str) -> str:
    """Get the source key's file name with directory and extension stripped."""
    name = posixpath.basename(source_key)
    stem, _ = posixpath.splitext(name)
    return stem


def build_rendition_prefix(source_key: str, rendition: Rendition) -> str:
    """Get the destination prefix holding one rendition's files."""
    return f"{TRANSCODED_PREFIX}/{source_base_name(source_key)}/{rendition.value}"


def build_playlist_key(source_key: str, rendition: Rendition) -> str:
    """Get the destination key of a rendition's playlist."""
    return f"{build_rendition_prefix(source_key, rendition)}/{PLAYLIST_FILENAME}"


def build_segment_key(source_key: str, rendition: Rendition, segment_name: str) -> str:
    """Get the destination key of one segment file."""
    return f"{build_rendition_prefix(source_key, rendition)}/{segment_name}"


def content_type_for(path: str) -> str:
    """Get the media type declared when uploading ``path``."""
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


class StorageGateway:
    """Downloads sources and uploads renditions.

    One gateway is shared by all jobs; the backends it wraps are thread safe.
    """

    def __init__(self, source: StorageBackend, destination: StorageBackend):
        """Initialize gateway.

        Args:
            source: Backend holding the source videos
            destination: Backend receiving the renditions
        """
        self.source = source
        self.destination = destination

    def download(self, source_key: str, directory: Optional[str] = None) -> Path:
        """Download a source video into a new temporary file.

        The file is named ``video-*`` with the source key's extension and is
        owned by the caller, who removes it (normally by removing ``directory``).

        Args:
            source_key: Key of the source object
            directory: Directory for the temporary file (system temp dir if None)

        Returns:
            Path of the downloaded file

        Raises:
            StorageError: If the object is missing or cannot be read
        """
        _, extension = posixpath.splitext(posixpath.basename(source_key))
        try:
            fd, local_path = tempfile.mkstemp(
                prefix="video-",
                suffix=extension or DEFAULT_SOURCE_EXTENSION,
                dir=directory,
            )
            os.close(fd)
        except OSError as e:
            raise StorageError(f"failed to create temp file: {e}", key=source_key) from e

        try:
            self.source.download(source_key, local_path)
        except StorageError:
            STORAGE_OPERATIONS_TOTAL.labels(operation="download", status="failed").inc()
            Path(local_path).unlink(missing_ok=True)
            raise

        STORAGE_OPERATIONS_TOTAL.labels(operation="download", status="success").inc()
        logger.info(
            f"Downloaded {source_key} ({os.path.getsize(local_path)} bytes)",
            extra={"source_key": source_key, "local_path": local_path},
        )
        return Path(local_path)

    def upload(self, local_path: str, destination_key: str) -> StorageResult:
        """Upload a rendition file.

        Raises:
            StorageError: If the upload fails
        """
        try:
            result = self.destination.upload(
                str(local_path),
                destination_key,
                content_type=content_type_for(str(local_path)),
            )
        except StorageError:
            STORAGE_OPERATIONS_TOTAL.labels(operation="upload", status="failed").inc()
            raise

        STORAGE_OPERATIONS_TOTAL.labels(operation="upload", status="success").inc()
        logger.debug(f"Uploaded {destination_key} ({result.file_size} bytes)")
        return result

    def delete(self, destination_key: str) -> None:
        """Delete a previously uploaded rendition file.

        Raises:
            StorageError: If the delete fails
        """
        try:
            self.destination.delete(destination_key)
        except StorageError:
            STORAGE_OPERATIONS_TOTAL.labels(operation="delete", status="failed").inc()
            raise
        STORAGE_OPERATIONS_TOTAL.labels(operation="delete", status="success").inc()


def create_storage_gateway(settings: Optional[Settings] = None) -> StorageGateway:
    """Build the gateway for the configured buckets."""
    settings = settings or default_settings

    def _config(bucket: str, local_path: str) -> StorageConfig:
        return StorageConfig(
            backend=settings.STORAGE_BACKEND,
            bucket=bucket,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            local_path=local_path,
        )

    return StorageGateway(
        source=create_storage_backend(
            _config(settings.AWS_DOWNLOAD_BUCKET_NAME, settings.LOCAL_SOURCE_PATH)
        ),
        destination=create_storage_backend(
            _config(settings.AWS_UPLOAD_BUCKET_NAME, settings.LOCAL_DESTINATION_PATH)
        ),
    )
