"""
Shared pytest fixtures for the CrowdBeat session core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - events: Recorder replacing the event publisher for one test
    - headers(): X-User-* identity headers for API calls
    - live_session / host: a session started by "host-1" with two participants
"""

from datetime import datetime, timedelta, timezone

import pytest

from crowdbeat import create_app
from crowdbeat.models import db as _db
from crowdbeat.services import participant_service, session_service
from crowdbeat.services.event_publisher import EXTENSION_KEY

HOST = "host-1"
ALICE = "alice"
BOB = "bob"

# Fixed clock for deadline tests
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingPublisher:
    """Collects published events instead of sending them anywhere."""

    def __init__(self):
        self.events = []

    def publish(self, session_id, event, payload):
        self.events.append((session_id, event, payload))

    def names(self):
        return [name for _, name, _ in self.events]

    def last(self, name):
        for _, event, payload in reversed(self.events):
            if event == name:
                return payload
        return None


def headers(user_id=None, role="user", user_type="casual", reputation=0):
    """Trusted identity headers as forwarded by the upstream gateway."""
    result = {"X-User-Role": role, "X-User-Type": user_type, "X-User-Reputation": str(reputation)}
    if user_id:
        result["X-User-Id"] = user_id
    return result


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def events(app):
    """Swap in a RecordingPublisher for the duration of one test."""
    original = app.extensions[EXTENSION_KEY]
    recorder = RecordingPublisher()
    app.extensions[EXTENSION_KEY] = recorder
    yield recorder
    app.extensions[EXTENSION_KEY] = original


# ── Convenience fixtures ─────────────────────────────────────────────────


def make_session(host_id=HOST, **data):
    payload = {"title": "Late Night Jam", "genre": "lofi"}
    payload.update(data)
    return session_service.create_session(host_id, payload)


@pytest.fixture()
def draft_session():
    """A draft session hosted by HOST."""
    return make_session()


@pytest.fixture()
def live_session(draft_session):
    """An active (started) session with ALICE and BOB joined."""
    session_service.start_session(draft_session.id, HOST)
    participant_service.join_session(draft_session.id, ALICE)
    participant_service.join_session(draft_session.id, BOB)
    return session_service.get_session(draft_session.id)


@pytest.fixture()
def in_future():
    """Helper returning an ISO timestamp *hours* from now."""
    def _at(hours=1):
        return (datetime.now(timezone.utc) + timedelta(hours=hours)).isoformat()
    return _at
