"""
Lyrics submissions — write, review, vote on and rank session lyrics.

Stage gating:
    submit / edit      lyrics-open (can_submit_lyrics: deadline, reputation,
                       ban / mute), capped by ``max_lyrics_per_user``
    vote / unvote      lyrics-voting only (can_vote plus the stage check)
    results            once voting is over (generation, song-voting,
                       completed) or when ``show_vote_counts_during_voting``

Counters move by atomic increments like the song queue; every vote also
bumps the voter's participant counters.  Final places (winner, runnerUp)
are frozen by session_service.advance_stage when the session leaves
lyrics-voting; ``award_winner_prize`` then credits the winner through the
identity service.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, update

from crowdbeat.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from crowdbeat.integrations.identity_gateway import identity_gateway
from crowdbeat.models import db
from crowdbeat.models.lyrics import (
    MAX_LYRICS_LENGTH,
    MAX_SECTION_LENGTH,
    PUBLIC_LYRICS_STATUSES,
    RANKED_LYRICS_STATUSES,
    SECTION_TYPES,
    TARGET_MOODS,
    LyricsFeedback,
    LyricsSubmission,
    LyricsVote,
    ranking_order,
)
from crowdbeat.services import participant_service, session_service
from crowdbeat.services.event_publisher import emit
from crowdbeat.utils.helpers import as_utc, commit_or_conflict, utcnow, write_or_conflict

logger = logging.getLogger(__name__)

RESULTS_STATUSES = frozenset({"generation", "song-voting", "completed"})
MODERATION_STATUSES = ("approved", "rejected")
WINNER_REPUTATION_POINTS = 50


# ── Validation ───────────────────────────────────────────────────────────────


def _clean_text(data, field, max_length):
    value = data.get(field)
    if value is None:
        return None
    value = str(value).strip()
    if len(value) > max_length:
        raise BadRequestError(f"{field} cannot exceed {max_length} characters", details={field: "too_long"})
    return value or None


def _clean_lyrics(value) -> str:
    text = (value or "").strip() if isinstance(value, str) else ""
    if not text:
        raise BadRequestError("Lyrics content is required", details={"full_lyrics": "required"})
    if len(text) > MAX_LYRICS_LENGTH:
        raise BadRequestError(f"Lyrics cannot exceed {MAX_LYRICS_LENGTH} characters")
    return text


def _clean_sections(raw) -> list[dict]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise BadRequestError("sections must be a list")
    sections = []
    for order, item in enumerate(raw):
        if not isinstance(item, dict):
            raise BadRequestError("Each section must be an object")
        kind = item.get("type")
        if kind not in SECTION_TYPES:
            raise BadRequestError(f"Invalid section type '{kind}'. Must be one of: {', '.join(SECTION_TYPES)}")
        content = (item.get("content") or "").strip()
        if not content:
            raise BadRequestError("Section content is required")
        if len(content) > MAX_SECTION_LENGTH:
            raise BadRequestError(f"Section content cannot exceed {MAX_SECTION_LENGTH} characters")
        sections.append({
            "type": kind,
            "content": content,
            "line_count": sum(1 for line in content.split("\n") if line.strip()),
            "order": order,
        })
    return sections


def _clean_mood(value):
    if value in (None, ""):
        return None
    if value not in TARGET_MOODS:
        raise BadRequestError(f"Invalid target_mood '{value}'. Must be one of: {', '.join(TARGET_MOODS)}")
    return value


def _show_votes(session) -> bool:
    return session.status in RESULTS_STATUSES or bool(session.setting("show_vote_counts_during_voting"))


def _get_lyrics(session_id: str, lyrics_id: int) -> LyricsSubmission:
    submission = LyricsSubmission.query.filter_by(id=lyrics_id, session_id=session_id).one_or_none()
    if submission is None:
        raise NotFoundError("Lyrics submission", lyrics_id)
    return submission


# ── Submissions ──────────────────────────────────────────────────────────────


def submit_lyrics(session_id: str, user_id: str, data: dict, reputation=0, now=None) -> LyricsSubmission:
    """Create a lyrics submission for *user_id*.

    Raises:
        BadRequestError: stage closed, deadline passed, reputation too low,
            per-user cap reached, or invalid content.
        ForbiddenError:  caller banned or muted.
    """
    session = session_service.get_session(session_id)
    now = as_utc(now) or utcnow()
    session_service.can_submit_lyrics(session, user_id, reputation, now).raise_if_denied()

    limit = session.setting("max_lyrics_per_user")
    mine = LyricsSubmission.query.filter_by(session_id=session.id, author_id=user_id).count()
    if limit and mine >= limit:
        raise BadRequestError(f"You can only submit {limit} lyrics per session")

    submission = LyricsSubmission(
        session_id=session.id,
        author_id=user_id,
        title=_clean_text(data, "title", 100),
        full_lyrics=_clean_lyrics(data.get("full_lyrics")),
        sections=_clean_sections(data.get("sections")),
        theme=_clean_text(data, "theme", 100),
        inspiration=_clean_text(data, "inspiration", 300),
        target_mood=_clean_mood(data.get("target_mood")),
        language=_clean_text(data, "language", 10) or "en",
        is_anonymous=bool(session.setting("allow_anonymous") and data.get("is_anonymous")),
        status="pending" if session.setting("require_approval") else "approved",
    )
    with write_or_conflict("Lyrics could not be submitted; retry"):
        db.session.add(submission)
        participant_service.record_submission(session.id, user_id, 1)

    logger.info(
        "Lyrics submitted session=%s lyrics=%s author=%s status=%s",
        session.id, submission.id, user_id, submission.status,
        extra={"session_id": session.id, "user_id": user_id},
    )
    emit(session.id, "lyrics:submitted", {
        "lyrics_id": submission.id,
        "status": submission.status,
        "author_id": None if submission.is_anonymous else user_id,
    })
    return submission


def list_lyrics(session_id: str, viewer_id=None, status=None, include_hidden=False) -> dict:
    """Public listing; staff (``include_hidden``) also see pending / rejected."""
    session = session_service.get_session(session_id)
    query = LyricsSubmission.query.filter_by(session_id=session.id)
    if status:
        statuses = [s.strip() for s in status.split(",") if s.strip()]
        if not include_hidden:
            statuses = [s for s in statuses if s in PUBLIC_LYRICS_STATUSES]
        query = query.filter(LyricsSubmission.status.in_(statuses))
    elif not include_hidden:
        query = query.filter(LyricsSubmission.status.in_(PUBLIC_LYRICS_STATUSES))

    show_votes = _show_votes(session)
    order = ranking_order() if show_votes else (LyricsSubmission.created_at.desc(), LyricsSubmission.id.desc())
    items = query.order_by(*order).all()
    return {
        "items": [s.to_dict(viewer_id, show_votes=show_votes) for s in items],
        "total": len(items),
        "show_votes": show_votes,
        "voting_system": session.setting("voting_system"),
    }


def get_lyrics(session_id: str, lyrics_id: int, viewer_id=None) -> dict:
    session = session_service.get_session(session_id)
    submission = _get_lyrics(session.id, lyrics_id)
    return submission.to_dict(viewer_id, show_votes=_show_votes(session), include_feedback=True)


def update_lyrics(session_id: str, lyrics_id: int, actor_id: str, data: dict) -> LyricsSubmission:
    """Author-only edit while the session is still lyrics-open."""
    session = session_service.get_session(session_id)
    submission = _get_lyrics(session.id, lyrics_id)
    if submission.author_id != actor_id:
        raise ForbiddenError("You can only edit your own lyrics")
    if session.status != "lyrics-open":
        raise BadRequestError("Cannot edit lyrics after submission period ends")

    changed = []
    if "full_lyrics" in data:
        submission.full_lyrics = _clean_lyrics(data.get("full_lyrics"))
        changed.append("full_lyrics")
    if "sections" in data:
        submission.sections = _clean_sections(data.get("sections"))
        changed.append("sections")
    if "target_mood" in data:
        submission.target_mood = _clean_mood(data.get("target_mood"))
        changed.append("target_mood")
    for field, max_length in (("title", 100), ("theme", 100), ("inspiration", 300)):
        if field in data:
            setattr(submission, field, _clean_text(data, field, max_length))
            changed.append(field)

    if changed:
        db.session.commit()
        logger.info("Lyrics updated session=%s lyrics=%s fields=%s", session.id, submission.id, ",".join(changed))
    return submission


def delete_lyrics(session_id: str, lyrics_id: int, actor_id: str, is_staff: bool = False) -> None:
    """Remove a submission and reverse the counters its votes contributed.

    Authors may delete only while lyrics-open; staff at any time.
    """
    session = session_service.get_session(session_id)
    submission = _get_lyrics(session.id, lyrics_id)
    is_author = submission.author_id == actor_id
    if not is_author and not is_staff:
        raise ForbiddenError("You cannot delete this submission")
    if not is_staff and session.status != "lyrics-open":
        raise BadRequestError("Cannot delete lyrics after submission period ends")

    voter_ids = [v.user_id for v in submission.voters]
    with write_or_conflict("Lyrics were changed concurrently; retry"):
        for voter_id in voter_ids:
            participant_service.record_vote(session.id, voter_id, -1)
        participant_service.record_submission(session.id, submission.author_id, -1)
        db.session.delete(submission)

    logger.info(
        "Lyrics deleted session=%s lyrics=%s by=%s votes_reversed=%d",
        session.id, lyrics_id, actor_id, len(voter_ids),
    )
    emit(session.id, "lyrics:deleted", {"lyrics_id": lyrics_id, "deleted_by": actor_id})


def set_lyrics_status(session_id: str, lyrics_id: int, status: str, actor_id: str, note=None, now=None) -> LyricsSubmission:
    """Staff review of a submission: approve or reject."""
    if status not in MODERATION_STATUSES:
        raise BadRequestError(f"Invalid status '{status}'. Must be one of: {', '.join(MODERATION_STATUSES)}")
    session = session_service.get_session(session_id)
    submission = _get_lyrics(session.id, lyrics_id)
    if submission.status in ("winner", "runnerUp"):
        raise ConflictError("Final placings cannot be changed")

    previous = submission.status
    submission.status = status
    submission.moderated_by = actor_id
    submission.moderated_at = as_utc(now) or utcnow()
    submission.moderation_note = (note or "").strip()[:500] or None
    db.session.commit()

    logger.info("Lyrics status session=%s lyrics=%s %s→%s by=%s", session.id, submission.id, previous, status, actor_id)
    emit(session.id, "lyrics:statusChanged", {"lyrics_id": submission.id, "status": status})
    return submission


# ── Voting ───────────────────────────────────────────────────────────────────


def vote_lyrics(session_id: str, lyrics_id: int, user_id: str, weight: float = 1.0, now=None) -> LyricsSubmission:
    """One weighted vote per user per submission; no votes on your own lyrics."""
    session = session_service.get_session(session_id)
    session_service.can_vote(session, user_id, now).raise_if_denied()
    if session.status != "lyrics-voting":
        raise BadRequestError("Lyrics voting is not open for this session")
    submission = _get_lyrics(session.id, lyrics_id)
    if submission.status not in PUBLIC_LYRICS_STATUSES:
        raise BadRequestError("This submission is not open for votes")
    if submission.author_id == user_id:
        raise ForbiddenError("You cannot vote on your own lyrics")
    if submission.has_voted(user_id):
        raise ConflictError("You have already voted on this submission")

    weight = float(weight)
    with write_or_conflict("You have already voted on this submission"):
        submission.voters.append(LyricsVote(user_id=user_id, weight=weight))
        db.session.execute(
            update(LyricsSubmission)
            .where(LyricsSubmission.id == submission.id)
            .values(
                votes=LyricsSubmission.votes + 1,
                weighted_votes=LyricsSubmission.weighted_votes + weight,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.expire(submission, ["votes", "weighted_votes"])
        participant_service.record_vote(session.id, user_id, 1)

    logger.info("Lyrics vote session=%s lyrics=%s user=%s weight=%s", session.id, submission.id, user_id, weight)
    emit(session.id, "lyrics:voteUpdate", {
        "lyrics_id": submission.id,
        "votes": submission.votes,
        "weighted_votes": round(submission.weighted_votes, 2),
    })
    return submission


def unvote_lyrics(session_id: str, lyrics_id: int, user_id: str, now=None) -> LyricsSubmission:
    """Withdraw a vote while voting is still open; the frozen weight is subtracted."""
    session = session_service.get_session(session_id)
    if session.status != "lyrics-voting":
        raise BadRequestError("Voting is no longer open")
    session_service.can_participate(session, user_id, now=now).raise_if_denied()
    submission = _get_lyrics(session.id, lyrics_id)
    vote = next((v for v in submission.voters if v.user_id == user_id), None)
    if vote is None:
        raise NotFoundError("Vote", user_id, message="You have not voted on this submission")

    with write_or_conflict("Vote was removed concurrently; retry"):
        submission.voters.remove(vote)
        db.session.execute(
            update(LyricsSubmission)
            .where(LyricsSubmission.id == submission.id)
            .values(
                votes=LyricsSubmission.votes - 1,
                weighted_votes=LyricsSubmission.weighted_votes - vote.weight,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.expire(submission, ["votes", "weighted_votes"])
        participant_service.record_vote(session.id, user_id, -1)

    logger.info("Lyrics vote removed session=%s lyrics=%s user=%s", session.id, submission.id, user_id)
    emit(session.id, "lyrics:voteUpdate", {
        "lyrics_id": submission.id,
        "votes": submission.votes,
        "weighted_votes": round(submission.weighted_votes, 2),
    })
    return submission


# ── Feedback ─────────────────────────────────────────────────────────────────


def add_feedback(session_id: str, lyrics_id: int, user_id: str, rating, comment=None, now=None) -> LyricsSubmission:
    """Create or overwrite the caller's rating and refresh ``average_rating``."""
    session = session_service.get_session(session_id)
    session_service.can_participate(session, user_id, content=bool(comment), now=now).raise_if_denied()
    try:
        rating = int(rating)
    except (TypeError, ValueError) as exc:
        raise BadRequestError("Rating must be between 1 and 5") from exc
    if not 1 <= rating <= 5:
        raise BadRequestError("Rating must be between 1 and 5")
    submission = _get_lyrics(session.id, lyrics_id)
    if submission.author_id == user_id:
        raise BadRequestError("You cannot rate your own lyrics")

    comment = (comment or "").strip()[:500] or None
    feedback = next((f for f in submission.feedback if f.user_id == user_id), None)
    if feedback is None:
        submission.feedback.append(LyricsFeedback(user_id=user_id, rating=rating, comment=comment))
    else:
        feedback.rating = rating
        feedback.comment = comment
    db.session.flush()
    average = (
        db.session.query(func.avg(LyricsFeedback.rating))
        .filter(LyricsFeedback.submission_id == submission.id)
        .scalar()
    )
    submission.average_rating = round(float(average or 0), 1)
    commit_or_conflict("Feedback was submitted concurrently; retry")

    logger.info("Lyrics feedback session=%s lyrics=%s user=%s rating=%s", session.id, submission.id, user_id, rating)
    return submission


# ── Results ──────────────────────────────────────────────────────────────────


def get_lyrics_results(session_id: str, viewer_id=None) -> dict:
    """Ranked lyrics with winner and up to three runners-up.

    Raises:
        BadRequestError: voting still running and vote counts are hidden.
    """
    session = session_service.get_session(session_id)
    if not _show_votes(session):
        raise BadRequestError("Results are not available yet")

    ranked = (
        LyricsSubmission.query
        .filter(
            LyricsSubmission.session_id == session.id,
            LyricsSubmission.status.in_(RANKED_LYRICS_STATUSES),
        )
        .order_by(*ranking_order())
        .all()
    )
    results = []
    for rank, submission in enumerate(ranked, start=1):
        item = submission.to_dict(viewer_id)
        item["ranking"] = submission.ranking or rank
        results.append(item)
    return {
        "session_id": session.id,
        "status": session.status,
        "results": results,
        "winner": results[0] if results else None,
        "runner_ups": results[1:4],
        "total_votes": sum(s.votes for s in ranked),
        "voting_system": session.setting("voting_system"),
    }


def award_winner_prize(session_id: str, gateway=None, points: int = WINNER_REPUTATION_POINTS) -> bool:
    """Credit the frozen lyrics winner through the identity service.

    Returns True when the award went through; failures are logged.
    """
    winner = LyricsSubmission.query.filter_by(session_id=session_id, status="winner").one_or_none()
    if winner is None:
        return False
    result = (gateway or identity_gateway).award_reputation(winner.author_id, points, "Winning lyrics")
    if not result.ok:
        logger.warning(
            "Lyrics prize award failed session=%s user=%s error=%s",
            session_id, winner.author_id, result.error,
        )
    return result.ok

