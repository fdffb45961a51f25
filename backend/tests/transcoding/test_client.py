"""Tests for the transcode HTTP client."""

import json

import httpx
import pytest

from video_transcoder.modules.transcoding.client import (
    TranscoderClient,
    TranscoderClientError,
    encode_request_stream,
)


def test_encode_request_stream() -> None:
    lines = list(encode_request_stream(["a.mp4", "dir/b.mp4"]))

    assert lines == [b'{"filename": "a.mp4"}\n', b'{"filename": "dir/b.mp4"}\n']


class TestTranscoderClient:
    """Tests against a mocked transport."""

    def test_streams_keys_and_parses_response(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            request.read()
            seen["path"] = request.url.path
            seen["content_type"] = request.headers["content-type"]
            seen["lines"] = [json.loads(line) for line in request.content.splitlines()]
            return httpx.Response(200, json={
                "message": "Transcoded successfully",
                "success": True,
                "transcodedFiles": ["240p", "360p"],
                "durationMillis": 4_200,
            })

        with TranscoderClient("http://transcoder:50051/", transport=httpx.MockTransport(handler)) as client:
            response = client.transcode_video(["first.mp4", "second.mp4"])

        assert seen["path"] == "/api/v1/transcode"
        assert seen["content_type"] == "application/x-ndjson"
        assert seen["lines"] == [{"filename": "first.mp4"}, {"filename": "second.mp4"}]
        assert response.success is True
        assert response.transcoded_files == ["240p", "360p"]
        assert response.duration_millis == 4_200

    def test_failure_body_is_not_an_exception(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"message": "probe failed: bad file", "success": False})

        client = TranscoderClient("http://transcoder", transport=httpx.MockTransport(handler))
        response = client.transcode_video(["a.mp4"])
        client.close()

        assert response.success is False
        assert response.message == "probe failed: bad file"
        assert response.transcoded_files == []

    def test_http_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        with TranscoderClient("http://transcoder", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TranscoderClientError) as exc_info:
                client.transcode_video(["a.mp4"])

        assert exc_info.value.status_code == 503

    def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with TranscoderClient("http://transcoder", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TranscoderClientError, match="connection refused"):
                client.transcode_video(["a.mp4"])
