"""
Participant registry.

Tracks who joined a session, their session role and per-session counters.

Business rules:
    - one participant row per (session, user), never deleted while the
      session exists; leave / kick / ban / end all converge on the same
      soft-delete shape (is_active=False, left_at set, optional kick
      metadata) via deactivate_participant()
    - joining while already active is a no-op signal, not an error
    - a previously-left participant rejoins by reactivation with a fresh
      joined_at
    - max_participants is a hard cap on *active* participants
    - the host role is never altered by promote / demote
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import update

from crowdbeat.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from crowdbeat.models import db
from crowdbeat.models.session import PARTICIPANT_ROLES, Session, SessionParticipant
from crowdbeat.services import moderation_service
from crowdbeat.services.event_publisher import emit
from crowdbeat.utils.helpers import as_utc, commit_or_conflict, get_or_raise, utcnow

logger = logging.getLogger(__name__)


@dataclass
class JoinResult:
    """Outcome of join_session.

    created:  a new participant row was inserted
    rejoined: an inactive participant was reactivated
    Neither flag set means the user was already active (no-op).
    """

    participant: SessionParticipant
    created: bool = False
    rejoined: bool = False

    @property
    def changed(self) -> bool:
        return self.created or self.rejoined


# ── Shared soft-delete shape ─────────────────────────────────────────────────


def deactivate_participant(participant, now=None, kicked_by=None, reason=None):
    """Mark *participant* inactive; kick metadata only when *kicked_by* is given.

    Does not commit.
    """
    now = as_utc(now) or utcnow()
    participant.is_active = False
    participant.left_at = now
    if kicked_by:
        participant.kicked_at = now
        participant.kicked_by = kicked_by
        participant.kick_reason = reason
    return participant


def _refresh_peak(session: Session) -> None:
    """Raise peak_concurrent_users to the current active count (never lowers it)."""
    active = session.active_participant_count()
    db.session.execute(
        update(Session)
        .where(Session.id == session.id, Session.peak_concurrent_users < active)
        .values(peak_concurrent_users=active)
        .execution_options(synchronize_session=False)
    )


# ── Join / leave ─────────────────────────────────────────────────────────────


def join_session(session_id: str, user_id: str, role: str = "participant", now=None) -> JoinResult:
    """Add *user_id* to the session or reactivate a previous membership.

    Args:
        session_id: Session to join.
        user_id:    Joining user.
        role:       Session role for a brand-new participant.
        now:        Clock override for tests.

    Returns:
        JoinResult describing what happened.

    Raises:
        NotFoundError:   session does not exist.
        BadRequestError: session ended / cancelled, or full.
        ForbiddenError:  user is banned from the session.
        ConflictError:   a concurrent join of the same user won the race.
    """
    if role not in PARTICIPANT_ROLES:
        raise BadRequestError(f"Invalid role '{role}'")
    session = get_or_raise(Session, session_id, "Session")
    now = as_utc(now) or utcnow()

    if session.status == "cancelled":
        raise BadRequestError("Session has been cancelled")
    if session.status == "completed":
        raise BadRequestError("Session has ended")
    if moderation_service.is_banned(session, user_id, now):
        raise ForbiddenError("You are banned from this session")

    participant = session.participant_for(user_id)
    if participant is not None and participant.is_active:
        return JoinResult(participant)

    if session.max_participants and session.active_participant_count() >= session.max_participants:
        raise BadRequestError("Session is full")

    if participant is not None:
        participant.is_active = True
        participant.joined_at = now
        participant.left_at = None
        result = JoinResult(participant, rejoined=True)
    else:
        participant = SessionParticipant(
            session_id=session.id,
            user_id=user_id,
            role="host" if user_id == session.host_id else role,
            joined_at=now,
        )
        session.participants.append(participant)
        db.session.execute(
            update(Session)
            .where(Session.id == session.id)
            .values(total_participants=Session.total_participants + 1)
            .execution_options(synchronize_session=False)
        )
        result = JoinResult(participant, created=True)

    db.session.flush()
    _refresh_peak(session)
    commit_or_conflict("Already joined this session")

    logger.info(
        "Participant joined session=%s user=%s rejoined=%s",
        session.id, user_id, result.rejoined,
        extra={"session_id": session.id, "user_id": user_id},
    )
    emit(session.id, "session:participantJoined", {
        "user_id": user_id,
        "role": participant.role,
        "rejoined": result.rejoined,
        "participant_count": session.active_participant_count(),
    })
    return result


def leave_session(session_id: str, user_id: str, now=None) -> SessionParticipant:
    """Deactivate the caller's membership. The host cannot leave."""
    session = get_or_raise(Session, session_id, "Session")
    if user_id == session.host_id:
        raise BadRequestError("Host cannot leave the session")

    participant = session.participant_for(user_id)
    if participant is None or not participant.is_active:
        raise NotFoundError("Participant", user_id, message="You are not a participant in this session")

    deactivate_participant(participant, now=now)
    db.session.commit()

    logger.info("Participant left session=%s user=%s", session.id, user_id)
    emit(session.id, "session:participantLeft", {
        "user_id": user_id,
        "participant_count": session.active_participant_count(),
    })
    return participant


def kick_participant(session_id: str, target_id: str, actor_id: str, reason=None, now=None):
    """Remove *target_id* from the session with kick metadata."""
    session = get_or_raise(Session, session_id, "Session")
    if target_id == actor_id:
        raise BadRequestError("You cannot kick yourself")
    if target_id == session.host_id:
        raise ForbiddenError("Cannot kick the session host")

    participant = session.participant_for(target_id)
    if participant is None or not participant.is_active:
        raise NotFoundError("Participant", target_id, message="User is not an active participant")

    reason = (reason or "").strip() or None
    deactivate_participant(participant, now=now, kicked_by=actor_id, reason=reason)
    db.session.commit()

    logger.info("Participant kicked session=%s user=%s by=%s", session.id, target_id, actor_id)
    emit(session.id, "session:participantKicked", {
        "user_id": target_id,
        "kicked_by": actor_id,
        "reason": reason,
    })
    return participant


# ── Roles ────────────────────────────────────────────────────────────────────


def _active_participant(session, user_id):
    participant = session.participant_for(user_id)
    if participant is None or not participant.is_active:
        raise NotFoundError("Participant", user_id, message="User is not an active participant")
    return participant


def promote_to_moderator(session_id: str, target_id: str, actor_id: str):
    session = get_or_raise(Session, session_id, "Session")
    participant = _active_participant(session, target_id)
    if participant.role == "host" or target_id == session.host_id:
        raise ForbiddenError("The host's role cannot be changed")
    if participant.role == "moderator":
        raise ConflictError("User is already a moderator")

    participant.role = "moderator"
    db.session.commit()

    logger.info("Participant promoted session=%s user=%s by=%s", session.id, target_id, actor_id)
    emit(session.id, "session:userPromoted", {"user_id": target_id, "role": "moderator", "by": actor_id})
    return participant


def demote_to_participant(session_id: str, target_id: str, actor_id: str):
    session = get_or_raise(Session, session_id, "Session")
    participant = _active_participant(session, target_id)
    if participant.role == "host" or target_id == session.host_id:
        raise ForbiddenError("The host's role cannot be changed")
    if participant.role != "moderator":
        raise BadRequestError("User is not a moderator")

    participant.role = "participant"
    db.session.commit()

    logger.info("Participant demoted session=%s user=%s by=%s", session.id, target_id, actor_id)
    emit(session.id, "session:userDemoted", {"user_id": target_id, "role": "participant", "by": actor_id})
    return participant


# ── Queries ──────────────────────────────────────────────────────────────────


def list_participants(session_id: str, active_only: bool = True) -> list[SessionParticipant]:
    get_or_raise(Session, session_id, "Session")
    query = SessionParticipant.query.filter_by(session_id=session_id)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(SessionParticipant.joined_at, SessionParticipant.id).all()


def get_participant(session_id: str, user_id: str) -> SessionParticipant:
    participant = SessionParticipant.query.filter_by(
        session_id=session_id, user_id=user_id,
    ).one_or_none()
    if participant is None:
        raise NotFoundError("Participant", user_id)
    return participant


# ── Counters (atomic, caller commits) ────────────────────────────────────────


def record_vote(session_id: str, user_id: str, delta: int = 1) -> None:
    """Bump the voter's ``votes_cast`` and the session's ``total_votes`` by *delta*."""
    db.session.execute(
        update(SessionParticipant)
        .where(SessionParticipant.session_id == session_id, SessionParticipant.user_id == user_id)
        .values(votes_cast=SessionParticipant.votes_cast + delta)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(Session)
        .where(Session.id == session_id)
        .values(total_votes=Session.total_votes + delta)
        .execution_options(synchronize_session=False)
    )


def record_submission(session_id: str, user_id: str, delta: int = 1) -> None:
    """Bump the submitter's ``submissions_made`` and the session's ``total_submissions``."""
    db.session.execute(
        update(SessionParticipant)
        .where(SessionParticipant.session_id == session_id, SessionParticipant.user_id == user_id)
        .values(submissions_made=SessionParticipant.submissions_made + delta)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(Session)
        .where(Session.id == session_id)
        .values(total_submissions=Session.total_submissions + delta)
        .execution_options(synchronize_session=False)
    )
