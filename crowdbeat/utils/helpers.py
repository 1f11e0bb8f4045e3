"""Shared utility functions used by services and blueprints.

get_or_raise:        primary-key lookup that raises NotFoundError
utcnow / as_utc:     timezone-aware timestamps (SQLite hands back naive values)
parse_datetime:      lenient ISO-8601 parsing, None on bad input
parse_datetime_input: strict variant, raises ValueError for 400 responses
commit_or_conflict:  commit, turning unique-constraint violations into ConflictError
write_or_conflict:   same for a whole block of writes, rolling back on any error
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError

from crowdbeat.core.exceptions import ConflictError, NotFoundError
from crowdbeat.models import db

logger = logging.getLogger(__name__)


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    label = label or model.__name__
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(label, pk)
    return obj


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return *value* as an aware UTC datetime.

    SQLite drops tzinfo on round-trip even for ``DateTime(timezone=True)``
    columns; stored values are always UTC, so naive values are tagged.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_datetime(value):
    """Parse an ISO-8601 string (``Z`` suffix accepted) to an aware datetime.

    Returns None for empty/invalid input. Date-only strings map to midnight UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        return None


def parse_datetime_input(value, field="datetime"):
    """Same as parse_datetime() but raises ValueError instead of returning None."""
    if not value:
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid {field} format. Use ISO-8601 (YYYY-MM-DDTHH:MM:SSZ).")
    return parsed


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_conflict(message):
    """Commit the current session; a unique-constraint violation becomes ConflictError.

    The losing writer of a concurrent double-vote / double-join hits the
    database constraint here, after its own pre-check passed.
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.info("Integrity error on commit: %s", exc.orig)
        raise ConflictError(message) from exc


@contextmanager
def write_or_conflict(message):
    """Run a multi-step write as one unit: commit on success, roll back on any error.

    A unique-constraint violation raised while flushing inside the block, or
    at commit, becomes ConflictError(message).
    """
    try:
        yield
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.info("Integrity error on write: %s", exc.orig)
        raise ConflictError(message) from exc
    except Exception:
        db.session.rollback()
        raise
