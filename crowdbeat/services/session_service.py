"""
Session state machine.

Owns the session's pipeline status, its derived stage number, schedule
stamps and settings, and the gate predicates every mutating action passes
before it touches the option registry, the vote ledger or a competition.

Pipeline (advance table):
    draft → waiting → lyrics-open → lyrics-voting → generation → song-voting → completed
    active → lyrics-open

Side branches:
    start   draft | waiting → active
    pause   lyrics-open | lyrics-voting | generation | song-voting | active → paused
            (previous_status remembered, stage frozen)
    resume  paused → previous_status
    end     any non-terminal → completed
    cancel  any non-terminal → cancelled (terminal, stage frozen)

Every status write is a compare-and-set on the status that was read
(``UPDATE ... WHERE status = :old``); a concurrent transition makes the
loser fail with ConflictError instead of silently overwriting.

Gate predicates (can_submit_lyrics, can_vote, can_vote_on_elements,
can_add_song, can_submit_feedback) are pure: they read the loaded session
and return a PermissionCheck carrying a human reason when refused.
"""

from __future__ import annotations

import logging
import secrets

from sqlalchemy import func, update

from crowdbeat.core.exceptions import (
    BadRequestError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from crowdbeat.models import db
from crowdbeat.models.competition import CompetitionSubmission, ElementCompetition
from crowdbeat.models.element import ElementVote
from crowdbeat.models.lyrics import RANKED_LYRICS_STATUSES, LyricsSubmission, ranking_order
from crowdbeat.models.session import (
    DEFAULT_SETTINGS,
    TERMINAL_STATUSES,
    VISIBILITIES,
    VOTING_SYSTEMS,
    Session,
    SessionFeedback,
    SessionParticipant,
    SessionSongVote,
    SessionSong,
)
from crowdbeat.services import moderation_service
from crowdbeat.services.event_publisher import emit
from crowdbeat.services.permission import PermissionCheck
from crowdbeat.utils.helpers import (
    as_utc,
    commit_or_conflict,
    get_or_raise,
    isoformat,
    parse_datetime_input,
    utcnow,
)

logger = logging.getLogger(__name__)

# ── Transition tables ────────────────────────────────────────────────────────

SESSION_TRANSITIONS = {
    "draft": "waiting",
    "waiting": "lyrics-open",
    "active": "lyrics-open",
    "lyrics-open": "lyrics-voting",
    "lyrics-voting": "generation",
    "generation": "song-voting",
    "song-voting": "completed",
}

STAGE_BY_STATUS = {
    "draft": 1,
    "waiting": 1,
    "active": 1,
    "lyrics-open": 2,
    "lyrics-voting": 3,
    "generation": 4,
    "song-voting": 5,
    "completed": 6,
}

STARTABLE_STATUSES = frozenset({"draft", "waiting"})
PAUSABLE_STATUSES = frozenset({"lyrics-open", "lyrics-voting", "generation", "song-voting", "active"})
VOTING_STATUSES = frozenset({"lyrics-voting", "song-voting"})
ELEMENT_VOTING_STATUSES = frozenset({"active", "lyrics-open", "lyrics-voting", "generation", "song-voting"})

SESSION_CODE_ATTEMPTS = 10

# Fields a host may edit before the session starts / at any time.
EDITABLE_BEFORE_START = frozenset({
    "title", "genre", "mood", "theme", "target_bpm", "max_participants",
    "scheduled_start", "lyrics_deadline",
})
EDITABLE_ALWAYS = frozenset({
    "description", "guidelines", "tags", "visibility", "voting_deadline", "settings",
})


def expected_stage(status: str, previous_status: str | None = None, current_stage: int | None = None) -> int:
    """Return the stage a session with *status* must carry.

    paused → stage of previous_status; cancelled → the stage it was frozen at.
    """
    if status == "paused":
        return STAGE_BY_STATUS.get(previous_status, current_stage or 1)
    if status == "cancelled":
        return current_stage or 1
    return STAGE_BY_STATUS[status]


def stage_matches_status(session: Session) -> bool:
    return session.stage == expected_stage(session.status, session.previous_status, session.stage)


# ── Gate predicates ──────────────────────────────────────────────────────────


def can_participate(session: Session, user_id, content: bool = False, now=None) -> PermissionCheck:
    """Checks shared by every gate: session still running, caller not banned
    (and, for content, not muted)."""
    if session.status == "cancelled":
        return PermissionCheck.deny("Session has been cancelled")
    if session.status == "completed":
        return PermissionCheck.deny("Session has ended")
    if not user_id:
        return PermissionCheck.forbid("Authentication required")
    if moderation_service.is_banned(session, user_id, now):
        return PermissionCheck.forbid("You are banned from this session")
    if content and moderation_service.is_muted(session, user_id, now):
        return PermissionCheck.forbid("You are muted in this session")
    return PermissionCheck.ok()


def _deadline_passed(deadline, now) -> bool:
    deadline = as_utc(deadline)
    return deadline is not None and now > deadline


def can_submit_lyrics(session: Session, user_id, reputation=0, now=None) -> PermissionCheck:
    now = as_utc(now) or utcnow()
    check = can_participate(session, user_id, content=True, now=now)
    if not check.allowed:
        return check
    if session.status != "lyrics-open":
        return PermissionCheck.deny("Lyrics submission is closed")
    if _deadline_passed(session.lyrics_deadline, now):
        return PermissionCheck.deny("Submission deadline has passed")
    minimum = session.setting("min_reputation_to_submit") or 0
    if (reputation or 0) < minimum:
        return PermissionCheck.deny(f"Minimum reputation of {minimum} required")
    return PermissionCheck.ok()


def can_vote(session: Session, user_id, now=None) -> PermissionCheck:
    """Gate for lyrics / song votes."""
    now = as_utc(now) or utcnow()
    check = can_participate(session, user_id, now=now)
    if not check.allowed:
        return check
    if session.status not in VOTING_STATUSES:
        return PermissionCheck.deny("Voting is not open")
    if not session.setting("voting_enabled"):
        return PermissionCheck.deny("Voting is disabled for this session")
    if _deadline_passed(session.voting_deadline, now):
        return PermissionCheck.deny("Voting deadline has passed")
    return PermissionCheck.ok()


def can_vote_on_elements(session: Session, user_id, now=None) -> PermissionCheck:
    """Gate for element-option votes: open from session start to song voting."""
    now = as_utc(now) or utcnow()
    check = can_participate(session, user_id, now=now)
    if not check.allowed:
        return check
    if session.status not in ELEMENT_VOTING_STATUSES:
        if session.status == "paused":
            return PermissionCheck.deny("Session is paused")
        return PermissionCheck.deny("Element voting is not open")
    if not session.setting("voting_enabled"):
        return PermissionCheck.deny("Voting is disabled for this session")
    if _deadline_passed(session.voting_deadline, now):
        return PermissionCheck.deny("Voting deadline has passed")
    return PermissionCheck.ok()


def can_add_song(session: Session, user_id, is_staff: bool = False, now=None) -> PermissionCheck:
    check = can_participate(session, user_id, content=True, now=now)
    if not check.allowed:
        return check
    if not is_staff and not session.setting("allow_song_requests"):
        return PermissionCheck.forbid("Song requests are disabled for this session")
    return PermissionCheck.ok()


def can_submit_feedback(session: Session, user_id, now=None) -> PermissionCheck:
    if session.status == "cancelled":
        return PermissionCheck.deny("Session has been cancelled")
    if not user_id:
        return PermissionCheck.forbid("Authentication required")
    if moderation_service.is_banned(session, user_id, now):
        return PermissionCheck.forbid("You are banned from this session")
    if session.status == "draft":
        return PermissionCheck.deny("Session has not started")
    return PermissionCheck.ok()


# ── Private helpers ──────────────────────────────────────────────────────────


def _generate_session_code() -> str:
    """Return an unused 6-char upper-case hex code."""
    for _ in range(SESSION_CODE_ATTEMPTS):
        code = secrets.token_hex(3).upper()
        if not Session.query.filter_by(session_code=code).first():
            return code
    raise ConflictError("Could not allocate a unique session code; retry")


def _compare_and_set(session: Session, expected_status: str, values: dict) -> None:
    """UPDATE sessions SET ... WHERE id = :id AND status = :expected (no commit)."""
    result = db.session.execute(
        update(Session)
        .where(Session.id == session.id, Session.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        raise ConflictError("Session status changed concurrently; reload and retry")


def _parse_deadline(value, field):
    try:
        return parse_datetime_input(value, field)
    except ValueError as exc:
        raise BadRequestError(str(exc), details={field: str(exc)}) from exc


def _clean_settings(raw) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise BadRequestError("settings must be an object")
    unknown = sorted(set(raw) - set(DEFAULT_SETTINGS))
    if unknown:
        raise BadRequestError(
            f"Unknown settings: {', '.join(unknown)}", details={"settings": unknown},
        )
    cleaned = dict(raw)
    if "voting_system" in cleaned and cleaned["voting_system"] not in VOTING_SYSTEMS:
        raise BadRequestError(
            f"Invalid voting_system '{cleaned['voting_system']}'. "
            f"Must be one of: {', '.join(VOTING_SYSTEMS)}",
        )
    for key in ("min_reputation_to_submit", "max_lyrics_per_user", "max_songs_per_user"):
        if key in cleaned:
            try:
                cleaned[key] = int(cleaned[key])
            except (TypeError, ValueError) as exc:
                raise BadRequestError(f"{key} must be a whole number") from exc
            if cleaned[key] < 0:
                raise BadRequestError(f"{key} must not be negative")
    return cleaned


def _clean_max_participants(value):
    if value is None:
        return None
    try:
        value = int(value)
    except (TypeError, ValueError) as exc:
        raise BadRequestError("max_participants must be a whole number") from exc
    if value < 1:
        raise BadRequestError("max_participants must be at least 1")
    return value


# ── CRUD ─────────────────────────────────────────────────────────────────────


def create_session(host_id: str, data: dict, default_max_participants: int | None = None) -> Session:
    """Create a session in ``draft`` with the host as its first participant.

    Args:
        host_id: User creating (and hosting) the session.
        data:    title (required), description, genre, mood, theme, guidelines,
                 target_bpm, tags, visibility, max_participants (None = unlimited),
                 scheduled_start, lyrics_deadline, voting_deadline, settings.
        default_max_participants: Cap applied when ``max_participants`` is absent.

    Returns:
        The persisted Session.

    Raises:
        BadRequestError: missing title, bad visibility, settings or deadline.
    """
    title = (data.get("title") or "").strip()
    if not title:
        raise BadRequestError("title is required", details={"title": "required"})
    if len(title) > 100:
        raise BadRequestError("title must be ≤ 100 characters")

    visibility = data.get("visibility") or "public"
    if visibility not in VISIBILITIES:
        raise BadRequestError(f"Invalid visibility '{visibility}'. Must be one of: {', '.join(VISIBILITIES)}")

    if "max_participants" in data:
        max_participants = _clean_max_participants(data.get("max_participants"))
    else:
        max_participants = default_max_participants

    tags = data.get("tags") or []
    if not isinstance(tags, list):
        raise BadRequestError("tags must be a list")

    session = Session(
        session_code=_generate_session_code(),
        title=title,
        description=data.get("description"),
        genre=data.get("genre"),
        mood=data.get("mood"),
        theme=data.get("theme"),
        guidelines=data.get("guidelines"),
        target_bpm=data.get("target_bpm"),
        tags=[str(t).strip() for t in tags if str(t).strip()],
        host_id=host_id,
        status="draft",
        stage=STAGE_BY_STATUS["draft"],
        visibility=visibility,
        max_participants=max_participants,
        settings=_clean_settings(data.get("settings")),
        scheduled_start=_parse_deadline(data.get("scheduled_start"), "scheduled_start"),
        lyrics_deadline=_parse_deadline(data.get("lyrics_deadline"), "lyrics_deadline"),
        voting_deadline=_parse_deadline(data.get("voting_deadline"), "voting_deadline"),
        total_participants=1,
        peak_concurrent_users=1,
    )
    session.participants.append(SessionParticipant(user_id=host_id, role="host"))
    db.session.add(session)
    commit_or_conflict("Session code collision; retry")

    logger.info(
        "Session created id=%s code=%s host=%s",
        session.id, session.session_code, host_id,
        extra={"session_id": session.id, "user_id": host_id},
    )
    emit(session.id, "session:created", {
        "session_id": session.id,
        "session_code": session.session_code,
        "title": session.title,
        "host_id": host_id,
    })
    return session


def get_session(session_id: str) -> Session:
    return get_or_raise(Session, session_id, "Session")


def get_session_by_code(code: str) -> Session:
    session = Session.query.filter_by(session_code=(code or "").strip().upper()).one_or_none()
    if session is None:
        raise NotFoundError("Session", code)
    return session


def list_sessions(
    status=None,
    genre=None,
    visibility=None,
    host_id=None,
    search=None,
):
    """Return the filtered session query, newest first (caller paginates).

    Without an explicit visibility filter only public sessions are listed,
    unless the listing is scoped to one host.
    """
    query = Session.query
    if status:
        statuses = [s.strip() for s in str(status).split(",") if s.strip()]
        query = query.filter(Session.status.in_(statuses))
    if genre:
        query = query.filter(Session.genre == genre)
    if visibility:
        query = query.filter(Session.visibility == visibility)
    elif not host_id:
        query = query.filter(Session.visibility == "public")
    if host_id:
        query = query.filter(Session.host_id == host_id)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(Session.title.ilike(like) | Session.description.ilike(like))

    return query.order_by(Session.created_at.desc(), Session.id)


def update_session(session_id: str, actor_id: str, data: dict) -> Session:
    """Update editable fields; the editable set shrinks once the session starts.

    Raises:
        BadRequestError: session ended, or a field is locked / invalid.
    """
    session = get_session(session_id)
    if session.is_terminal:
        raise BadRequestError(f"Cannot update a {session.status} session")

    allowed = set(EDITABLE_ALWAYS)
    if session.status in STARTABLE_STATUSES:
        allowed |= EDITABLE_BEFORE_START
    requested = set(data)
    locked = sorted(requested & (EDITABLE_BEFORE_START - allowed))
    if locked:
        raise BadRequestError(
            f"Fields locked after the session started: {', '.join(locked)}",
            details={"locked": locked},
        )

    changed = []
    for field in sorted(requested & allowed):
        value = data[field]
        if field == "title":
            value = (value or "").strip()
            if not value:
                raise BadRequestError("title cannot be empty")
        elif field == "visibility" and value not in VISIBILITIES:
            raise BadRequestError(f"Invalid visibility '{value}'")
        elif field == "max_participants":
            value = _clean_max_participants(value)
        elif field in ("scheduled_start", "lyrics_deadline", "voting_deadline"):
            value = _parse_deadline(value, field)
        elif field == "tags":
            if not isinstance(value, list):
                raise BadRequestError("tags must be a list")
        elif field == "settings":
            value = {**(session.settings or {}), **_clean_settings(value)}
        setattr(session, field, value)
        changed.append(field)

    if changed:
        db.session.commit()
        logger.info("Session updated id=%s fields=%s by=%s", session.id, ",".join(changed), actor_id)
        emit(session.id, "session:updated", {"fields": changed, "updated_by": actor_id})
    return session


# ── Transitions ──────────────────────────────────────────────────────────────


def advance_stage(session_id: str, actor_id: str | None = None, now=None) -> Session:
    """Move the session to the next pipeline status.

    Stamps lyrics_open_at (and started_at if unset) on lyrics-open,
    voting_start_at on lyrics-voting, completed_at / ended_at on completed.
    Leaving lyrics-voting freezes the lyrics placings in the same commit.

    Raises:
        InvalidTransitionError: current status has no successor
            (paused, completed, cancelled).
        ConflictError: another request changed the status first.
    """
    session = get_session(session_id)
    now = as_utc(now) or utcnow()
    current = session.status
    target = SESSION_TRANSITIONS.get(current)
    if target is None:
        raise InvalidTransitionError(current)

    values = {"status": target, "stage": STAGE_BY_STATUS[target], "previous_status": None}
    if target == "lyrics-open":
        values["lyrics_open_at"] = now
        if session.started_at is None:
            values["started_at"] = now
    elif target == "lyrics-voting":
        values["voting_start_at"] = now
    elif target == "completed":
        values["completed_at"] = now
        values["ended_at"] = now

    _compare_and_set(session, current, values)
    placings = _freeze_lyrics_placings(session) if current == "lyrics-voting" else None
    if target == "completed":
        _deactivate_all(session, now)
    db.session.commit()

    logger.info(
        "Session stage advanced id=%s %s→%s by=%s",
        session.id, current, target, actor_id,
        extra={"session_id": session.id},
    )
    emit(session.id, "session:stageChanged", {
        "session_id": session.id,
        "previous_status": current,
        "new_status": target,
        "new_stage": STAGE_BY_STATUS[target],
        "advanced_by": actor_id,
    })
    if placings:
        emit(session.id, "lyrics:winnerSelected", placings)
    return session


def start_session(session_id: str, actor_id: str | None = None, now=None) -> Session:
    """draft | waiting → active, stamping started_at."""
    session = get_session(session_id)
    current = session.status
    if current not in STARTABLE_STATUSES:
        raise InvalidTransitionError(current, "active")
    now = as_utc(now) or utcnow()

    _compare_and_set(session, current, {
        "status": "active",
        "stage": STAGE_BY_STATUS["active"],
        "started_at": session.started_at or now,
    })
    db.session.commit()

    logger.info("Session started id=%s by=%s", session.id, actor_id)
    emit(session.id, "session:started", {"session_id": session.id, "status": "active", "started_by": actor_id})
    return session


def pause_session(session_id: str, actor_id: str | None = None) -> Session:
    """Freeze an in-progress session, remembering where it was."""
    session = get_session(session_id)
    current = session.status
    if current not in PAUSABLE_STATUSES:
        raise InvalidTransitionError(current, "paused")

    _compare_and_set(session, current, {"status": "paused", "previous_status": current})
    db.session.commit()

    logger.info("Session paused id=%s from=%s by=%s", session.id, current, actor_id)
    emit(session.id, "session:paused", {"session_id": session.id, "paused_by": actor_id})
    return session


def resume_session(session_id: str, actor_id: str | None = None) -> Session:
    """paused → the status it was paused from."""
    session = get_session(session_id)
    if session.status != "paused":
        raise InvalidTransitionError(session.status, "resume")
    restored = session.previous_status if session.previous_status in PAUSABLE_STATUSES else "lyrics-open"

    _compare_and_set(session, "paused", {
        "status": restored,
        "stage": STAGE_BY_STATUS[restored],
        "previous_status": None,
    })
    db.session.commit()

    logger.info("Session resumed id=%s to=%s by=%s", session.id, restored, actor_id)
    emit(session.id, "session:resumed", {"session_id": session.id, "status": restored, "resumed_by": actor_id})
    return session


def _freeze_lyrics_placings(session: Session) -> dict | None:
    """Rank the lyrics: first is winner, next three runnerUp (no commit)."""
    ranked = (
        LyricsSubmission.query
        .filter(
            LyricsSubmission.session_id == session.id,
            LyricsSubmission.status.in_(RANKED_LYRICS_STATUSES),
        )
        .order_by(*ranking_order())
        .all()
    )
    if not ranked:
        return None
    for rank, submission in enumerate(ranked, start=1):
        submission.ranking = rank
        if rank == 1:
            submission.status = "winner"
        elif rank <= 4:
            submission.status = "runnerUp"
        elif submission.status in ("winner", "runnerUp"):
            submission.status = "approved"
    winner = ranked[0]
    logger.info(
        "Lyrics placings frozen session=%s winner=%s entries=%d",
        session.id, winner.id, len(ranked),
        extra={"session_id": session.id},
    )
    return {
        "lyrics_id": winner.id,
        "author_id": None if winner.is_anonymous else winner.author_id,
        "runner_up_ids": [s.id for s in ranked[1:4]],
    }


def _deactivate_all(session: Session, now) -> None:
    for participant in session.participants:
        if participant.is_active:
            participant.is_active = False
            participant.left_at = now


def end_session(session_id: str, actor_id: str | None = None, now=None) -> Session:
    """Finish the session from any non-terminal status; all participants go inactive."""
    session = get_session(session_id)
    current = session.status
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(current, "completed")
    now = as_utc(now) or utcnow()

    _compare_and_set(session, current, {
        "status": "completed",
        "stage": STAGE_BY_STATUS["completed"],
        "previous_status": None,
        "completed_at": now,
        "ended_at": now,
    })
    _deactivate_all(session, now)
    db.session.commit()

    logger.info("Session ended id=%s from=%s by=%s", session.id, current, actor_id)
    emit(session.id, "session:ended", {"session_id": session.id, "ended_by": actor_id})
    return session


def cancel_session(session_id: str, actor_id: str | None = None, now=None) -> Session:
    """Cancel from any non-terminal status. Terminal; the stage stays where it was."""
    session = get_session(session_id)
    current = session.status
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(current, "cancelled")
    now = as_utc(now) or utcnow()

    _compare_and_set(session, current, {"status": "cancelled", "previous_status": None, "ended_at": now})
    db.session.commit()

    logger.info("Session cancelled id=%s from=%s by=%s", session.id, current, actor_id)
    emit(session.id, "session:cancelled", {"session_id": session.id, "cancelled_by": actor_id})
    return session


# ── Feedback & stats ─────────────────────────────────────────────────────────


def submit_feedback(session_id: str, user_id: str, rating, comment=None, now=None) -> SessionFeedback:
    """Create or overwrite the caller's rating (1–5) for the session."""
    session = get_session(session_id)
    can_submit_feedback(session, user_id, now).raise_if_denied()
    try:
        rating = int(rating)
    except (TypeError, ValueError) as exc:
        raise BadRequestError("Rating must be between 1 and 5") from exc
    if not 1 <= rating <= 5:
        raise BadRequestError("Rating must be between 1 and 5")
    comment = (comment or "").strip()[:500] or None

    feedback = SessionFeedback.query.filter_by(session_id=session.id, user_id=user_id).one_or_none()
    created = feedback is None
    if created:
        feedback = SessionFeedback(session_id=session.id, user_id=user_id, rating=rating, comment=comment)
        db.session.add(feedback)
    else:
        feedback.rating = rating
        feedback.comment = comment
    commit_or_conflict("Feedback was submitted concurrently; retry")

    logger.info("Feedback %s session=%s user=%s rating=%s",
                "submitted" if created else "updated", session.id, user_id, rating)
    emit(session.id, "session:feedbackSubmitted", {"user_id": user_id, "rating": rating})
    return feedback


def get_session_stats(session_id: str) -> dict:
    """Aggregate participation, vote, submission and feedback figures."""
    session = get_session(session_id)

    element_votes = db.session.query(func.count(ElementVote.id)).filter(
        ElementVote.session_id == session.id,
    ).scalar() or 0
    song_votes = (
        db.session.query(func.count(SessionSongVote.id))
        .join(SessionSong, SessionSong.id == SessionSongVote.song_id)
        .filter(SessionSong.session_id == session.id)
        .scalar()
    ) or 0
    unique_voters = db.session.query(func.count(func.distinct(ElementVote.user_id))).filter(
        ElementVote.session_id == session.id,
    ).scalar() or 0
    competition_submissions = (
        db.session.query(func.count(CompetitionSubmission.id))
        .join(ElementCompetition, ElementCompetition.id == CompetitionSubmission.competition_id)
        .filter(ElementCompetition.session_id == session.id)
        .scalar()
    ) or 0
    lyrics_submissions = LyricsSubmission.query.filter_by(session_id=session.id).count()

    ratings = {str(i): 0 for i in range(1, 6)}
    total_rating = 0
    for fb in session.feedback:
        ratings[str(fb.rating)] += 1
        total_rating += fb.rating
    feedback_total = len(session.feedback)
    average = round(total_rating / feedback_total, 1) if feedback_total else 0

    started = as_utc(session.started_at)
    ended = as_utc(session.ended_at)
    duration = round((ended - started).total_seconds() / 60) if started and ended else None

    return {
        "participants": {
            "total": session.total_participants,
            "active": session.active_participant_count(),
            "peak": session.peak_concurrent_users,
        },
        "submissions": {
            "total": session.total_submissions,
            "lyrics": lyrics_submissions,
            "competition_entries": competition_submissions,
        },
        "votes": {
            "total": session.total_votes,
            "element_votes": element_votes,
            "song_votes": song_votes,
            "unique_voters": unique_voters,
        },
        "feedback": {"total": feedback_total, "average_rating": average, "ratings": ratings},
        "status": session.status,
        "stage": session.stage,
        "started_at": isoformat(session.started_at),
        "duration_minutes": duration,
    }
