"""HTTP client for the transcode endpoint."""

import json
import logging
from typing import Iterable, Iterator, Optional

import httpx

from video_transcoder.modules.transcoding.schemas import NDJSON_MEDIA_TYPE, TranscodeVideoResponse

logger = logging.getLogger(__name__)


class TranscoderClientError(Exception):
    """Raised when the transcode call itself fails (transport or HTTP error)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


def encode_request_stream(filenames: Iterable[str]) -> Iterator[bytes]:
    """Yield one NDJSON line per filename."""
    for filename in filenames:
        yield (json.dumps({"filename": filename}) + "\n").encode("utf-8")


class TranscoderClient:
    """Client for ``POST /transcode``.

    Example:
        with TranscoderClient("http://localhost:50051") as client:
            response = client.transcode_video(["uploads/movie.mp4"])
    """

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        api_prefix: str = "/api/v1",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize client.

        Args:
            base_url: Server base URL
            timeout: Request timeout in seconds (None waits for the job to finish)
            api_prefix: API path prefix
            transport: Optional httpx transport, mainly for tests
        """
        self.base_url = base_url.rstrip("/")
        self.api_prefix = api_prefix
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    def transcode_video(self, filenames: Iterable[str]) -> TranscodeVideoResponse:
        """Stream source keys to the server and wait for the outcome.

        The server transcodes only the last key it receives.

        Raises:
            TranscoderClientError: If the request cannot be completed
        """
        try:
            response = self._client.post(
                f"{self.api_prefix}/transcode",
                content=encode_request_stream(filenames),
                headers={"Content-Type": NDJSON_MEDIA_TYPE},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TranscoderClientError(
                f"transcode request failed: {e.response.status_code} {e.response.text}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise TranscoderClientError(f"transcode request failed: {e}") from e

        result = TranscodeVideoResponse.model_validate(response.json())
        logger.debug(f"Transcode response: success={result.success} message={result.message}")
        return result

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TranscoderClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
