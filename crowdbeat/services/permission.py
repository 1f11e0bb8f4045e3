"""
Session permission resolution.

Capabilities are resolved once per request into an explicit, immutable
record by one pure function, ``resolve_permissions(session, user_id, ...)``.
Blueprints ask the record (``perms.can_kick``) instead of re-deriving role
logic at every call site.

Roles involved:
    platform role  — issued by the identity service: user | creator | moderator | admin
    session role   — participant | moderator | host (SessionParticipant.role)
    user type      — casual | technical (technical users may submit audio/options)

"Staff" for a session = the host, a session moderator, or a platform
moderator/admin.

Usage:
    perms = resolve_permissions(session, g.user_id, g.user_role, g.user_type)
    require(perms, "can_advance", "Only the host or a moderator can advance the stage")
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from crowdbeat.core.exceptions import BadRequestError, ForbiddenError
from crowdbeat.services import moderation_service

logger = logging.getLogger(__name__)

PLATFORM_ROLES = ("user", "creator", "moderator", "admin")
USER_TYPES = ("casual", "technical")

SESSION_CREATOR_ROLES = frozenset({"creator", "moderator", "admin"})
PLATFORM_STAFF_ROLES = frozenset({"moderator", "admin"})


@dataclass(frozen=True)
class PermissionCheck:
    """Outcome of a gate predicate: allowed, or refused with a reason.

    ``kind`` selects the error raised by ``raise_if_denied``:
    "forbidden" (ban / role / ownership) or "bad_request" (stage, deadline, cap).
    """

    allowed: bool
    reason: str | None = None
    kind: str = "bad_request"

    @classmethod
    def ok(cls) -> "PermissionCheck":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "PermissionCheck":
        return cls(False, reason, "bad_request")

    @classmethod
    def forbid(cls, reason: str) -> "PermissionCheck":
        return cls(False, reason, "forbidden")

    def raise_if_denied(self) -> None:
        if self.allowed:
            return
        if self.kind == "forbidden":
            raise ForbiddenError(self.reason)
        raise BadRequestError(self.reason)

    def to_dict(self) -> dict:
        data = {"allowed": self.allowed}
        if not self.allowed:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class SessionPermissions:
    """What one user may do in one session, resolved once per request."""

    user_id: str | None
    platform_role: str
    session_role: str | None
    is_host: bool
    is_moderator: bool
    is_participant: bool
    is_banned: bool
    is_muted: bool
    can_edit: bool
    can_delete: bool
    can_advance: bool
    can_kick: bool
    can_ban: bool
    can_promote: bool
    can_add_song: bool
    can_remove_song: bool
    can_vote: bool
    can_submit_feedback: bool
    can_manage_elements: bool
    can_submit_options: bool
    can_manage_competitions: bool
    can_submit_to_competitions: bool
    can_view_stats: bool

    @property
    def is_staff(self) -> bool:
        return self.is_host or self.is_moderator

    def to_dict(self) -> dict:
        return asdict(self)


def can_create_session(platform_role) -> bool:
    return (platform_role or "user") in SESSION_CREATOR_ROLES


def resolve_permissions(session, user_id, platform_role="user", user_type="casual", now=None):
    """Resolve the capability record for *user_id* in *session*.

    Pure with respect to the database: reads only the already-loaded session
    and its participant / ban / mute collections.
    """
    platform_role = (platform_role or "user").lower()
    user_type = (user_type or "casual").lower()

    if not user_id:
        return SessionPermissions(
            user_id=None, platform_role=platform_role, session_role=None,
            is_host=False, is_moderator=False, is_participant=False,
            is_banned=False, is_muted=False,
            can_edit=False, can_delete=False, can_advance=False, can_kick=False,
            can_ban=False, can_promote=False, can_add_song=False,
            can_remove_song=False, can_vote=False, can_submit_feedback=False,
            can_manage_elements=False, can_submit_options=False,
            can_manage_competitions=False, can_submit_to_competitions=False,
            can_view_stats=False,
        )

    participant = session.participant_for(user_id)
    is_participant = bool(participant and participant.is_active)
    session_role = participant.role if participant else None

    is_admin = platform_role == "admin"
    is_host = session.host_id == user_id
    is_moderator = (
        platform_role in PLATFORM_STAFF_ROLES
        or (is_participant and session_role == "moderator")
    )
    staff = is_host or is_moderator

    banned = moderation_service.is_banned(session, user_id, now)
    muted = moderation_service.is_muted(session, user_id, now)
    technical = user_type == "technical" or platform_role in ("creator", "admin")

    return SessionPermissions(
        user_id=user_id,
        platform_role=platform_role,
        session_role=session_role,
        is_host=is_host,
        is_moderator=is_moderator,
        is_participant=is_participant,
        is_banned=banned,
        is_muted=muted,
        can_edit=staff,
        can_delete=is_host or is_admin,
        can_advance=staff,
        can_kick=staff,
        can_ban=staff,
        can_promote=is_host or is_admin,
        can_add_song=not banned and (staff or bool(session.setting("allow_song_requests"))),
        can_remove_song=staff,
        can_vote=not banned,
        can_submit_feedback=not banned,
        can_manage_elements=is_host or platform_role in PLATFORM_STAFF_ROLES,
        can_submit_options=technical and not banned and not muted,
        can_manage_competitions=is_host or is_admin,
        can_submit_to_competitions=technical and not banned,
        can_view_stats=staff,
    )


def require(perms: SessionPermissions, capability: str, message: str) -> None:
    """Raise ForbiddenError unless *perms* grants *capability*."""
    if not getattr(perms, capability):
        logger.info(
            "Permission denied capability=%s user=%s",
            capability,
            perms.user_id,
        )
        raise ForbiddenError(message)
