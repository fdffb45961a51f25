"""Transcode API router.

``POST /transcode`` is a client-streaming call: the request body is NDJSON,
one ``{"filename": ...}`` object per line, read as it arrives. Only the last
filename counts. When the body ends the job runs once and a single JSON
response is returned; pipeline failures come back as ``success=false``.
"""

import asyncio
import contextvars
import logging
import threading
from enum import Enum
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from video_transcoder.modules.transcoding.models import TranscodeResult
from video_transcoder.modules.transcoding.schemas import (
    NDJSON_MEDIA_TYPE,
    TranscodeVideoRequest,
    TranscodeVideoResponse,
)
from video_transcoder.modules.transcoding.service import (
    OrchestrationError,
    TranscodeOrchestrator,
    create_orchestrator,
)

logger = logging.getLogger(__name__)

# A source key is at most 1 KiB; anything near this is not a request chunk
MAX_CHUNK_BYTES = 64 * 1024

router = APIRouter(prefix="/transcode", tags=["transcoding"])


class CallState(str, Enum):
    """Lifecycle of one transcode call."""
    AWAITING_INPUT = "awaiting_input"
    RECEIVED_FINAL = "received_final"
    DISPATCHED = "dispatched"
    RESPONDED = "responded"


class InvalidChunkError(ValueError):
    """Raised when a request line is not a valid TranscodeVideoRequest."""


@lru_cache
def get_orchestrator() -> TranscodeOrchestrator:
    """Get the process-wide orchestrator."""
    return create_orchestrator()


def parse_chunk(line: bytes) -> Optional[str]:
    """Parse one NDJSON line into a source key.

    Blank lines carry nothing and return None.

    Raises:
        InvalidChunkError: If the line is not a valid request chunk
    """
    if len(line) > MAX_CHUNK_BYTES:
        raise InvalidChunkError(f"request chunk exceeds {MAX_CHUNK_BYTES} bytes")
    line = line.strip()
    if not line:
        return None
    try:
        return TranscodeVideoRequest.model_validate_json(line).filename
    except ValidationError as e:
        raise InvalidChunkError(
            f"invalid request chunk: {e.errors(include_url=False)[0]['msg']}"
        ) from e


async def read_source_key(request: Request) -> Optional[str]:
    """Drain the request stream and return the last source key received.

    Raises:
        InvalidChunkError: If any line is not a valid request chunk or
            grows past MAX_CHUNK_BYTES before its newline arrives
        ClientDisconnect: If the caller disconnects before the stream ends
    """
    source_key: Optional[str] = None
    buffer = bytearray()

    async for chunk in request.stream():
        buffer += chunk
        newline = buffer.find(b"\n")
        while newline >= 0:
            source_key = parse_chunk(bytes(buffer[:newline])) or source_key
            del buffer[: newline + 1]
            newline = buffer.find(b"\n")
        # What is left is an unterminated line
        if len(buffer) > MAX_CHUNK_BYTES:
            raise InvalidChunkError(f"request chunk exceeds {MAX_CHUNK_BYTES} bytes")

    return parse_chunk(bytes(buffer)) or source_key


async def _watch_disconnect(request: Request, cancel_event: threading.Event) -> None:
    """Set ``cancel_event`` once the caller disconnects.

    Only started after the body is fully read, so the next message the server
    delivers on ``receive`` is the disconnect. Runs until then or until the
    job finishes and the task is cancelled.
    """
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            logger.warning("Client disconnected, cancelling transcode job")
            cancel_event.set()
            return


async def run_transcode_job(
    request: Request,
    orchestrator: TranscodeOrchestrator,
    source_key: str,
) -> TranscodeResult:
    """Run a job in a worker thread, cancelling it if the caller goes away.

    The thread gets a copy of the request's context so job logs keep the
    request's correlation ID.
    """
    cancel_event = threading.Event()
    loop = asyncio.get_running_loop()
    context = contextvars.copy_context()

    job = loop.run_in_executor(None, context.run, orchestrator.run, source_key, cancel_event)
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        return await job
    except asyncio.CancelledError:
        cancel_event.set()
        raise
    finally:
        watcher.cancel()


@router.post(
    "",
    response_model=TranscodeVideoResponse,
    summary="Transcode a source video into HLS renditions",
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {
                NDJSON_MEDIA_TYPE: {
                    "schema": TranscodeVideoRequest.model_json_schema(),
                },
            },
        },
    },
)
async def transcode_video(
    request: Request,
    orchestrator: TranscodeOrchestrator = Depends(get_orchestrator),
) -> TranscodeVideoResponse:
    """Transcode the video named by the last request chunk."""
    state = CallState.AWAITING_INPUT

    try:
        source_key = await read_source_key(request)
    except ClientDisconnect:
        # The caller is gone, so there is nobody to report to
        logger.warning("Request stream interrupted, transcode job not dispatched")
        return TranscodeVideoResponse.failure("request stream interrupted; job not dispatched")
    except InvalidChunkError as e:
        logger.warning(f"Rejected transcode request: {e}")
        return TranscodeVideoResponse.failure(str(e))

    state = CallState.RECEIVED_FINAL
    if source_key is None:
        logger.warning("Request stream ended without a source key")
        return TranscodeVideoResponse.failure("no source key received")

    logger.info(
        f"Received video key {source_key}",
        extra={"source_key": source_key, "state": state.value},
    )

    state = CallState.DISPATCHED
    try:
        result = await run_transcode_job(request, orchestrator, source_key)
    except OrchestrationError as e:
        response = TranscodeVideoResponse.failure(e.message)
    except Exception as e:
        logger.error(f"Unexpected error transcoding {source_key}", exc_info=True)
        response = TranscodeVideoResponse.failure(f"internal error: {e}")
    else:
        logger.info(f"Transcoded files: {result.rendition_names}", extra={"source_key": source_key})
        response = TranscodeVideoResponse(
            message="Transcoded successfully",
            success=True,
            transcoded_files=result.rendition_names,
            duration_millis=result.source_duration_millis,
        )

    state = CallState.RESPONDED
    logger.debug(f"Transcode call for {source_key} {state.value}")
    return response
