"""JSON log lines and request timing."""

import json
import logging

import pytest

from app.core.monitoring import JSONLogFormatter


def make_record(level=logging.INFO, msg="Share created", **extra):
    record = logging.LogRecord("app.services.share_store", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONLogFormatter:
    def test_standard_fields(self):
        line = json.loads(JSONLogFormatter('%(timestamp)s %(level)s %(message)s').format(make_record()))

        assert line["message"] == "Share created"
        assert line["level"] == "INFO"
        assert line["logger"] == "app.services.share_store"
        assert line["service"] == "ShareTrack"
        assert line["timestamp"].endswith("Z")

    def test_extra_fields_are_kept(self):
        record = make_record(logging.WARNING, "Slow request", path="/health", duration=1.5)

        line = json.loads(JSONLogFormatter('%(level)s %(message)s').format(record))

        assert line["level"] == "WARNING"
        assert line["path"] == "/health"
        assert line["duration"] == 1.5


class TestPerformanceMiddleware:
    @pytest.mark.asyncio
    async def test_process_time_header(self, client):
        response = await client.get("/health")

        assert float(response.headers["X-Process-Time"]) >= 0
