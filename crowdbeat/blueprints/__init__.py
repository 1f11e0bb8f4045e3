"""
CrowdBeat Session Core
Blueprint registry and shared view helpers.
"""

from flask import g, request

from crowdbeat.services.permission import resolve_permissions
from crowdbeat.services.reputation import vote_weight
from crowdbeat.utils.errors import E, api_error


def paginate_query(query, default_limit=50, max_limit=200):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def require_user():
    """Return ``(user_id, None)`` or ``(None, 401 response)`` for anonymous callers."""
    user_id = getattr(g, "user_id", None)
    if not user_id:
        return None, api_error(E.UNAUTHENTICATED, "Authentication required")
    return user_id, None


def caller_permissions(session):
    """Resolve the caller's capability record for *session*."""
    return resolve_permissions(
        session,
        getattr(g, "user_id", None),
        getattr(g, "user_role", "user"),
        getattr(g, "user_type", "casual"),
    )


def caller_weight() -> float:
    """Vote weight from the caller's reputation, snapshotted on the vote."""
    return vote_weight(getattr(g, "user_reputation", 0))


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def flag_arg(name, default=False) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")
