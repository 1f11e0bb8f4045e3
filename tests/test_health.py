"""
CrowdBeat Session Core
Tests — health checks, response headers, request guards and event publishing.
"""

import json
import logging
from unittest.mock import MagicMock

from flask import g

from conftest import HOST, headers
from crowdbeat.middleware.logging_config import RequestContextFilter, SessionLogFormatter
from crowdbeat.services.event_publisher import (
    LoggingEventPublisher,
    RedisEventPublisher,
    emit,
    init_event_publisher,
)


class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["redis"]["status"] == "skipped"
        assert body["checks"]["app"]["testing"] is True


class TestResponseHeaders:
    def test_security_headers(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.headers["X-Content-Type-Options"] == "nosniff"
        assert res.headers["X-Frame-Options"] == "DENY"
        assert "default-src 'none'" in res.headers["Content-Security-Policy"]
        assert res.headers["Cache-Control"] == "no-store"

    def test_request_id_echoed(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_generated(self, client):
        assert len(client.get("/api/v1/health/ready").headers["X-Request-ID"]) == 12


class TestRequestGuards:
    def test_unknown_route(self, client):
        res = client.get("/api/v1/nowhere")
        assert res.status_code == 404
        assert res.get_json()["details"] == {"path": "/api/v1/nowhere"}

    def test_method_not_allowed(self, client):
        res = client.delete("/api/v1/health/ready")
        assert res.status_code == 405

    def test_body_too_large(self, app, client):
        res = client.post(
            "/api/v1/sessions",
            data=json.dumps({"title": "x" * (app.config["MAX_CONTENT_LENGTH"] + 1)}),
            headers={**headers(HOST, role="creator"), "Content-Type": "application/json"},
        )
        assert res.status_code == 413

    def test_unknown_role_header_is_plain_user(self, client):
        res = client.post("/api/v1/sessions", json={"title": "x"}, headers=headers(HOST, role="superuser"))
        assert res.status_code == 403


class TestEventPublisher:
    def test_default_is_logging(self, app):
        assert isinstance(init_event_publisher(app), LoggingEventPublisher)

    def test_redis_publisher_message(self):
        client = MagicMock()
        RedisEventPublisher("redis://events:6379/0", client=client).publish(
            "s1", "element:voted", {"votes": 2},
        )
        channel, message = client.publish.call_args.args
        assert channel == "session:s1"
        assert json.loads(message) == {"event": "element:voted", "session_id": "s1", "data": {"votes": 2}}

    def test_emit_survives_transport_failure(self, app):
        broken = MagicMock()
        broken.publish.side_effect = ConnectionError("bus down")
        app.extensions["event_publisher"] = broken
        try:
            emit("s1", "session:started", {})
        finally:
            init_event_publisher(app)
        broken.publish.assert_called_once()


def _record(msg="Vote cast", **extra):
    record = logging.LogRecord("crowdbeat.services.song_service", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogFormatting:
    def test_json_keeps_session_context(self):
        line = SessionLogFormatter(as_json=True).format(
            _record(session_id="s1", user_id="alice", unrelated="dropped"),
        )
        entry = json.loads(line)
        assert entry["message"] == "Vote cast"
        assert entry["session_id"] == "s1"
        assert entry["user_id"] == "alice"
        assert "unrelated" not in entry
        assert "request_id" not in entry

    def test_readable_line_appends_context(self):
        line = SessionLogFormatter().format(_record(session_id="s1", request_id="abc", duration_ms=12.4))
        assert line.endswith("crowdbeat.services.song_service: Vote cast (req=abc session=s1) [12ms]")

    def test_filter_stamps_request_id(self, app):
        record = _record()
        with app.test_request_context("/api/v1/health/ready"):
            g.request_id = "req-42"
            assert RequestContextFilter().filter(record) is True
        assert record.request_id == "req-42"

    def test_filter_outside_request(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert getattr(record, "request_id", None) is None
