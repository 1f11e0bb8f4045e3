"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in crowdbeat/__init__.py with no default
limits; this module applies granular limits per route category, and the
vote / feedback views carry their own tighter, per-user limits through
``vote_limit`` and ``feedback_limit``.

Windows are fixed and counters live in RATELIMIT_STORAGE_URI (Redis in
production), which evicts expired windows on its own.

Usage:
    from crowdbeat.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import current_app, g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_BLUEPRINTS = ("sessions", "moderation", "elements", "competitions", "lyrics")


def user_or_ip_key():
    """Rate limit key: caller's user id if known, else remote IP."""
    user_id = getattr(g, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def _vote_limit():
    return current_app.config.get("VOTE_RATE_LIMIT", "5/second")


def _feedback_limit():
    return current_app.config.get("FEEDBACK_RATE_LIMIT", "20 per 10 seconds")


def vote_limit(limiter):
    """Decorator for vote endpoints: VOTE_RATE_LIMIT per user."""
    return limiter.limit(_vote_limit, key_func=user_or_ip_key)


def feedback_limit(limiter):
    return limiter.limit(_feedback_limit, key_func=user_or_ip_key)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Session / element / competition routes: WRITE_RATE_LIMIT (60/minute)
        - Reads inside them:                      READ_RATE_LIMIT (200/minute)
        - Vote endpoints:                         VOTE_RATE_LIMIT per user
        - Health check:                           exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("WRITE_RATE_LIMIT", "60/minute")
    read_limit = app.config.get("READ_RATE_LIMIT", "200/minute")

    for bp_name in WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit, methods=["POST", "PUT", "PATCH", "DELETE"])(bp)
            limiter.limit(read_limit, methods=["GET"])(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — write: %s, read: %s, votes: %s",
        write_limit, read_limit, app.config.get("VOTE_RATE_LIMIT"),
    )
