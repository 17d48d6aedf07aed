# -*- coding: utf-8 -*-
"""
Tests for the logging setup.
"""
import json
import logging

from content_platform import __version__
from content_platform.logging_config import (
    PlatformJsonFormatter,
    RequestIDFilter,
    build_formatter,
)
from content_platform.middleware import request_id_ctx


def _record(message="Content ingested", **extra):
    record = logging.LogRecord("content_platform.pipeline", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for PlatformJsonFormatter."""

    def test_standard_fields(self):
        record = _record(content_id="c-1")
        RequestIDFilter().filter(record)

        data = json.loads(build_formatter("json").format(record))

        assert data["message"] == "Content ingested"
        assert data["level"] == "INFO"
        assert data["logger"] == "content_platform.pipeline"
        assert data["service"] == "content-platform"
        assert data["version"] == __version__
        assert data["request_id"] == "-"
        assert data["content_id"] == "c-1"
        assert "@timestamp" in data

    def test_request_id_from_context(self):
        token = request_id_ctx.set("req-42")
        try:
            record = _record()
            RequestIDFilter().filter(record)
        finally:
            request_id_ctx.reset(token)

        assert json.loads(PlatformJsonFormatter("%(message)s").format(record))["request_id"] == "req-42"


def test_text_formatter():
    record = _record()
    RequestIDFilter().filter(record)

    line = build_formatter("text").format(record)

    assert "[-] content_platform.pipeline: Content ingested" in line
