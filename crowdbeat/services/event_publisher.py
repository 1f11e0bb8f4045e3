"""
Session event publisher.

Every mutating session-core operation announces its outcome as a semantic
event ``(session_id, event_name, payload)``, for example ``element:voted`` with the
updated counts.  Delivery to browsers (websockets, SSE, push) belongs to the
real-time transport, which subscribes to these events; this module only
emits them.

Backends:
    RedisEventPublisher   — PUBLISH JSON on channel ``session:<id>``
                            (EVENTS_REDIS_URL set)
    LoggingEventPublisher — logs the event; default for dev / testing

The active publisher lives in ``app.extensions["event_publisher"]`` so tests
can swap in a recorder.  Events are emitted after the DB commit; a transport
failure is logged and never rolls back the action.
"""

import json
import logging
from datetime import datetime

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

EXTENSION_KEY = "event_publisher"


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class LoggingEventPublisher:
    """Publisher used when no event bus is configured."""

    def publish(self, session_id, event, payload):
        logger.info(
            "Session event %s session=%s",
            event,
            session_id,
            extra={"session_id": session_id, "event_type": event},
        )


class RedisEventPublisher:
    """Publishes events as JSON on the Redis channel ``session:<session_id>``."""

    def __init__(self, redis_url, client=None):
        self._redis_url = redis_url
        self._client = client

    @property
    def client(self):
        """Return (or lazily create) the Redis client."""
        if self._client is None:
            import redis as redis_lib
            self._client = redis_lib.from_url(self._redis_url, socket_timeout=2)
        return self._client

    def publish(self, session_id, event, payload):
        message = json.dumps(
            {"event": event, "session_id": session_id, "data": payload},
            default=_json_default,
        )
        self.client.publish(f"session:{session_id}", message)
        logger.debug("Published %s to session:%s", event, session_id)


def init_event_publisher(app, publisher=None):
    """Attach the configured publisher to ``app.extensions``."""
    if publisher is None:
        redis_url = app.config.get("EVENTS_REDIS_URL", "")
        if redis_url and "redis" in redis_url:
            publisher = RedisEventPublisher(redis_url)
            app.logger.info("Session events: Redis pub/sub at %s", redis_url.split("@")[-1])
        else:
            publisher = LoggingEventPublisher()
    app.extensions[EXTENSION_KEY] = publisher
    return publisher


def emit(session_id, event, payload=None):
    """Publish one session event through the app's publisher.

    Transport errors are logged and swallowed: the state change has already
    been committed and must not be reported as failed.
    """
    if not has_app_context():
        return
    publisher = current_app.extensions.get(EXTENSION_KEY)
    if publisher is None:
        return
    try:
        publisher.publish(session_id, event, payload or {})
    except Exception as exc:
        logger.warning("Event publish failed event=%s session=%s: %s", event, session_id, exc)
