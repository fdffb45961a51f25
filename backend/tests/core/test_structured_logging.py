"""Tests for JSON logging and correlation ids."""

import contextvars
import json
import logging
import sys

from video_transcoder.core.logging import (
    CorrelationIdFilter,
    JsonFormatter,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from video_transcoder.core.tracing import create_span


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="video_transcoder.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _format(record: logging.LogRecord) -> dict:
    return json.loads(JsonFormatter().format(record))


class TestCorrelationId:
    """Tests for the correlation id context."""

    def test_unset_outside_a_request(self) -> None:
        assert contextvars.Context().run(get_correlation_id) is None

    def test_set_and_reset(self) -> None:
        token = set_correlation_id("req-1")
        try:
            assert get_correlation_id() == "req-1"
        finally:
            reset_correlation_id(token)
        assert get_correlation_id() != "req-1"

    def test_copied_context_keeps_the_id(self) -> None:
        token = set_correlation_id("req-2")
        try:
            # The job worker thread runs in a copy of the request context
            assert contextvars.copy_context().run(get_correlation_id) == "req-2"
        finally:
            reset_correlation_id(token)

    def test_filter_stamps_records(self) -> None:
        token = set_correlation_id("req-3")
        try:
            record = _record()
            assert CorrelationIdFilter().filter(record) is True
        finally:
            reset_correlation_id(token)

        assert record.correlation_id == "req-3"


class TestJsonFormatter:
    """Tests for the JSON formatter."""

    def test_basic_fields(self) -> None:
        data = _format(_record("Transcoded clip.mp4", correlation_id="req-4"))

        assert data["level"] == "INFO"
        assert data["logger"] == "video_transcoder.test"
        assert data["message"] == "Transcoded clip.mp4"
        assert data["correlation_id"] == "req-4"
        assert data["timestamp"].endswith("Z")
        assert data["location"] == "test_structured_logging:10"

    def test_no_correlation_id_field_outside_a_request(self) -> None:
        data = contextvars.Context().run(_format, _record())

        assert "correlation_id" not in data

    def test_extra_fields_at_top_level(self) -> None:
        data = _format(_record(source_key="clip.mp4", renditions=["240p"]))

        assert data["source_key"] == "clip.mp4"
        assert data["renditions"] == ["240p"]
        assert "args" not in data and "lineno" not in data

    def test_extra_field_cannot_replace_message(self) -> None:
        data = _format(_record("real", level="spoofed"))

        assert data["level"] == "INFO"

    def test_unserializable_extra_is_stringified(self) -> None:
        data = _format(_record(path=object()))

        assert data["path"].startswith("<object object")

    def test_trace_ids_inside_a_span(self) -> None:
        with create_span("transcode.test"):
            data = _format(_record())

        # Without an SDK provider the span is non-recording and has no ids
        if "trace_id" in data:
            assert len(data["trace_id"]) == 32
            assert len(data["span_id"]) == 16

    def test_exception(self) -> None:
        try:
            raise ValueError("bad duration")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()

        data = _format(record)

        assert "ValueError: bad duration" in data["exception"]
