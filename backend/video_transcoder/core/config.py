"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Video Transcoder Service"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Listen address
    HOST: str = "0.0.0.0"
    PORT: int = 50051

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Storage Configuration
    # STORAGE_BACKEND: s3 (S3/MinIO compatible) or local (directories on disk)
    STORAGE_BACKEND: str = "s3"

    # Source videos are read from the download bucket, renditions are
    # written to the upload bucket.
    AWS_DOWNLOAD_BUCKET_NAME: str = ""
    AWS_UPLOAD_BUCKET_NAME: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_SOURCE_PATH: str = "./storage/source"
    LOCAL_DESTINATION_PATH: str = "./storage/transcoded"

    # External tools
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    PROBE_TIMEOUT_SECONDS: float = 60.0
    ENCODE_TIMEOUT_SECONDS: float = 3600.0

    # Encoding profile, shared by every rendition of a job
    VIDEO_CODEC: str = "libx264"
    VIDEO_PRESET: str = "medium"
    VIDEO_CRF: int = 23
    AUDIO_CODEC: str = "aac"
    AUDIO_BITRATE: str = "128k"
    HLS_SEGMENT_SECONDS: int = 10
    HLS_PLAYLIST_TYPE: str = "vod"

    # Job workspace
    SCRATCH_DIR: Optional[str] = None  # System temp dir when unset
    ROLLBACK_ON_FAILURE: bool = True

    # Tracing
    OTLP_ENDPOINT: Optional[str] = None
    TRACING_CONSOLE_EXPORT: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
