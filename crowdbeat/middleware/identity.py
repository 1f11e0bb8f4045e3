"""
Caller identity from the upstream gateway.

Authentication happens before requests reach this service; the gateway
forwards the verified caller in trusted headers:

    X-User-Id          opaque user id (absent = anonymous)
    X-User-Role        platform role: user | creator | moderator | admin
    X-User-Type        casual | technical
    X-User-Reputation  integer reputation score (drives vote weight)

The values are copied to ``g`` once per request; blueprints read ``g`` and
never the headers.

Usage:
    from crowdbeat.middleware.identity import init_identity
    init_identity(app)
"""

import logging

from flask import g, request

from crowdbeat.services.permission import PLATFORM_ROLES, USER_TYPES

logger = logging.getLogger(__name__)


def _reputation(raw) -> int:
    try:
        return max(int(raw), 0)
    except (TypeError, ValueError):
        return 0


def init_identity(app):
    """Register a before_request hook populating g.user_* from headers."""

    @app.before_request
    def _load_identity():
        user_id = (request.headers.get("X-User-Id") or "").strip() or None
        role = (request.headers.get("X-User-Role") or "user").strip().lower()
        user_type = (request.headers.get("X-User-Type") or "casual").strip().lower()

        if role not in PLATFORM_ROLES:
            logger.debug("Unknown platform role %r treated as 'user'", role)
            role = "user"
        if user_type not in USER_TYPES:
            user_type = "casual"

        g.user_id = user_id
        g.user_role = role
        g.user_type = user_type
        g.user_reputation = _reputation(request.headers.get("X-User-Reputation"))
