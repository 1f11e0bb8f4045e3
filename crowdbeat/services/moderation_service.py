"""
Moderation guard — session bans and mutes.

Answers "may this user act in this session?" from the session's ban / mute
rows, honouring expiry (``expires_at`` NULL = permanent), and applies the
ban / mute / unban / unmute actions.

Business rules:
    - at most one ban and one mute row per (session, user); a new ban or
      mute replaces the earlier one (unique constraint + in-place update)
    - a ban cascades into the participant registry: the participant is
      deactivated with kick metadata
    - nobody can ban or mute themselves or the session host
    - only a platform admin can ban / mute a platform moderator or admin
    - a banned user's historical votes and submissions stay valid; they
      are never purged retroactively

Banned users are blocked from every action; muted users only from
publishing content (options, songs, competition entries).
"""

from __future__ import annotations

import logging
from datetime import timedelta

from crowdbeat.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from crowdbeat.models import db
from crowdbeat.models.session import Session, SessionBan, SessionMute
from crowdbeat.services import participant_service
from crowdbeat.services.event_publisher import emit
from crowdbeat.utils.helpers import as_utc, commit_or_conflict, get_or_raise, isoformat, utcnow

logger = logging.getLogger(__name__)

PROTECTED_PLATFORM_ROLES = frozenset({"moderator", "admin"})


# ── Guard predicates ─────────────────────────────────────────────────────────


def _entry_active(entry, now) -> bool:
    expires_at = as_utc(entry.expires_at)
    return expires_at is None or expires_at > now


def active_ban(session: Session, user_id, now=None):
    """Return the non-expired ban row for *user_id*, or None."""
    now = as_utc(now) or utcnow()
    for ban in session.bans:
        if ban.user_id == user_id and _entry_active(ban, now):
            return ban
    return None


def active_mute(session: Session, user_id, now=None):
    """Return the non-expired mute row for *user_id*, or None."""
    now = as_utc(now) or utcnow()
    for mute in session.mutes:
        if mute.user_id == user_id and _entry_active(mute, now):
            return mute
    return None


def is_banned(session: Session, user_id, now=None) -> bool:
    return bool(user_id) and active_ban(session, user_id, now) is not None


def is_muted(session: Session, user_id, now=None) -> bool:
    return bool(user_id) and active_mute(session, user_id, now) is not None


# ── Private helpers ──────────────────────────────────────────────────────────


def _expiry(now, duration_ms):
    if duration_ms is None:
        return None
    try:
        duration_ms = int(duration_ms)
    except (TypeError, ValueError) as exc:
        raise BadRequestError("duration must be a whole number") from exc
    if duration_ms <= 0:
        raise BadRequestError("duration must be positive")
    return now + timedelta(milliseconds=duration_ms)


def _check_target(session, target_id, actor_id, actor_role, target_role, verb):
    """Shared refusals for ban / mute targets."""
    if not target_id:
        raise BadRequestError("user_id is required")
    if target_id == actor_id:
        raise BadRequestError(f"You cannot {verb} yourself")
    if target_id == session.host_id:
        raise ForbiddenError(f"Cannot {verb} the session host")
    if (target_role or "user") in PROTECTED_PLATFORM_ROLES and (actor_role or "user") != "admin":
        raise ForbiddenError(f"Only an admin can {verb} a platform moderator or admin")


# ── Public API ───────────────────────────────────────────────────────────────


def ban_user(
    session_id: str,
    target_id: str,
    actor_id: str,
    reason: str | None = None,
    duration_ms: int | None = None,
    actor_role: str | None = "user",
    target_role: str | None = None,
    now=None,
) -> SessionBan:
    """Ban *target_id* from the session, replacing any earlier ban.

    Args:
        session_id:  Session to ban from.
        target_id:   User being banned.
        actor_id:    Host / moderator performing the ban.
        reason:      Optional justification, shown in the ban list.
        duration_ms: Ban length; None = permanent.
        actor_role:  Platform role of the actor.
        target_role: Platform role of the target, when known.
        now:         Clock override for tests.

    Returns:
        The (new or replaced) SessionBan row.

    Raises:
        NotFoundError: session does not exist.
        BadRequestError: self-ban, bad duration.
        ForbiddenError: target is the host or a protected platform role.
    """
    session = get_or_raise(Session, session_id, "Session")
    _check_target(session, target_id, actor_id, actor_role, target_role, "ban")

    now = as_utc(now) or utcnow()
    expires_at = _expiry(now, duration_ms)
    reason = (reason or "").strip() or None

    ban = SessionBan.query.filter_by(session_id=session.id, user_id=target_id).one_or_none()
    if ban is None:
        ban = SessionBan(session_id=session.id, user_id=target_id, banned_by=actor_id)
        session.bans.append(ban)
    ban.banned_by = actor_id
    ban.reason = reason
    ban.banned_at = now
    ban.expires_at = expires_at

    participant = session.participant_for(target_id)
    if participant is not None and participant.is_active:
        participant_service.deactivate_participant(
            participant, now=now, kicked_by=actor_id, reason=reason or "Banned",
        )

    commit_or_conflict("User was banned concurrently; retry")

    logger.info(
        "User banned session=%s user=%s by=%s expires=%s",
        session.id, target_id, actor_id, isoformat(expires_at),
        extra={"session_id": session.id, "user_id": target_id},
    )
    emit(session.id, "session:userBanned", {
        "user_id": target_id,
        "banned_by": actor_id,
        "reason": reason,
        "expires_at": isoformat(expires_at),
    })
    return ban


def unban_user(session_id: str, target_id: str, actor_id: str) -> None:
    """Remove the ban row for *target_id*; NotFoundError if there is none."""
    session = get_or_raise(Session, session_id, "Session")
    ban = SessionBan.query.filter_by(session_id=session.id, user_id=target_id).one_or_none()
    if ban is None:
        raise NotFoundError("Ban", target_id, message="User is not banned from this session")

    session.bans.remove(ban)
    db.session.commit()

    logger.info("User unbanned session=%s user=%s by=%s", session.id, target_id, actor_id)
    emit(session.id, "session:userUnbanned", {"user_id": target_id, "unbanned_by": actor_id})


def mute_user(
    session_id: str,
    target_id: str,
    actor_id: str,
    reason: str | None = None,
    duration_ms: int | None = None,
    actor_role: str | None = "user",
    target_role: str | None = None,
    now=None,
) -> SessionMute:
    """Mute *target_id* in the session, replacing any earlier mute.

    Same refusals as ban_user; does not touch participation.
    """
    session = get_or_raise(Session, session_id, "Session")
    _check_target(session, target_id, actor_id, actor_role, target_role, "mute")

    now = as_utc(now) or utcnow()
    expires_at = _expiry(now, duration_ms)
    reason = (reason or "").strip() or None

    mute = SessionMute.query.filter_by(session_id=session.id, user_id=target_id).one_or_none()
    if mute is None:
        mute = SessionMute(session_id=session.id, user_id=target_id, muted_by=actor_id)
        session.mutes.append(mute)
    mute.muted_by = actor_id
    mute.reason = reason
    mute.muted_at = now
    mute.expires_at = expires_at

    commit_or_conflict("User was muted concurrently; retry")

    logger.info(
        "User muted session=%s user=%s by=%s expires=%s",
        session.id, target_id, actor_id, isoformat(expires_at),
    )
    emit(session.id, "session:userMuted", {
        "user_id": target_id,
        "muted_by": actor_id,
        "reason": reason,
        "expires_at": isoformat(expires_at),
    })
    return mute


def unmute_user(session_id: str, target_id: str, actor_id: str) -> None:
    """Remove the mute row for *target_id*; NotFoundError if there is none."""
    session = get_or_raise(Session, session_id, "Session")
    mute = SessionMute.query.filter_by(session_id=session.id, user_id=target_id).one_or_none()
    if mute is None:
        raise NotFoundError("Mute", target_id, message="User is not muted in this session")

    session.mutes.remove(mute)
    db.session.commit()

    logger.info("User unmuted session=%s user=%s by=%s", session.id, target_id, actor_id)
    emit(session.id, "session:userUnmuted", {"user_id": target_id, "unmuted_by": actor_id})


def list_banned(session_id: str, include_expired: bool = False, now=None) -> list[dict]:
    """Return the session's bans, newest first; expired ones only on request."""
    session = get_or_raise(Session, session_id, "Session")
    now = as_utc(now) or utcnow()
    bans = [b for b in session.bans if include_expired or _entry_active(b, now)]
    bans.sort(key=lambda b: as_utc(b.banned_at), reverse=True)
    return [b.to_dict() for b in bans]


def list_muted(session_id: str, include_expired: bool = False, now=None) -> list[dict]:
    session = get_or_raise(Session, session_id, "Session")
    now = as_utc(now) or utcnow()
    mutes = [m for m in session.mutes if include_expired or _entry_active(m, now)]
    mutes.sort(key=lambda m: as_utc(m.muted_at), reverse=True)
    return [m.to_dict() for m in mutes]
