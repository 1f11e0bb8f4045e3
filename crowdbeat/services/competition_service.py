"""
Competition engine.

A competition collects user-generated audio for one element slot, then lets
the session vote on the entries and freezes a winner.

Lifecycle (competition.status):
    draft → open → voting → closed
    draft | open | voting → cancelled

Engine primitives (no commit, no identity side effects):
    can_submit / can_vote_on_competition   PermissionCheck with a reason
    add_submission                         append + stats
    vote_on_submission                     voter row + atomic counters
    determine_winner                       compare-and-set voting → closed

Prize reputation is awarded by close_competition through the identity
gateway only after determine_winner has committed.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import distinct, func, select, update

from crowdbeat.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
)
from crowdbeat.integrations.identity_gateway import identity_gateway
from crowdbeat.models import db
from crowdbeat.models.competition import (
    COMPETITION_ELEMENT_TYPES,
    DEFAULT_PRIZE,
    CompetitionSubmission,
    CompetitionSubmissionVoter,
    ElementCompetition,
)
from crowdbeat.services import participant_service, session_service
from crowdbeat.services.event_publisher import emit
from crowdbeat.services.permission import PermissionCheck
from crowdbeat.utils.helpers import (
    as_utc,
    commit_or_conflict,
    get_or_raise,
    isoformat,
    parse_datetime_input,
    utcnow,
    write_or_conflict,
)

logger = logging.getLogger(__name__)

COMPETITION_TRANSITIONS = {
    "draft": {"open", "cancelled"},
    "open": {"voting", "cancelled"},
    "voting": {"closed", "cancelled"},
    "closed": set(),
    "cancelled": set(),
}

ACTIVE_STATUSES = ("open", "voting")
DEFAULT_VOTING_HOURS = 48


def validate_competition_transition(current: str, target: str) -> None:
    if target not in COMPETITION_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current, target)


# ── Predicates ───────────────────────────────────────────────────────────────


def can_submit(competition: ElementCompetition, user_id, now=None) -> PermissionCheck:
    now = as_utc(now) or utcnow()
    if competition.status == "cancelled":
        return PermissionCheck.deny("Competition has been cancelled")
    if competition.status != "open":
        return PermissionCheck.deny("Competition is not open for submissions")
    if now > as_utc(competition.submission_deadline):
        return PermissionCheck.deny("Submission deadline has passed")
    if len(competition.submissions_by(user_id)) >= competition.max_submissions_per_user:
        return PermissionCheck.deny("Maximum submissions reached")
    return PermissionCheck.ok()


def can_vote_on_competition(competition: ElementCompetition, user_id, now=None) -> PermissionCheck:
    now = as_utc(now) or utcnow()
    if competition.status == "cancelled":
        return PermissionCheck.deny("Competition has been cancelled")
    if competition.status != "voting":
        return PermissionCheck.deny("Voting is not open")
    deadline = as_utc(competition.voting_deadline)
    if deadline is not None and now > deadline:
        return PermissionCheck.deny("Voting deadline has passed")
    return PermissionCheck.ok()


# ── Engine primitives ────────────────────────────────────────────────────────


def _compare_and_set(competition: ElementCompetition, expected: str, values: dict) -> None:
    result = db.session.execute(
        update(ElementCompetition)
        .where(ElementCompetition.id == competition.id, ElementCompetition.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        raise ConflictError("Competition status changed concurrently; reload and retry")
    db.session.expire(competition, list(values))


def add_submission(competition: ElementCompetition, user_id: str, data: dict, now=None) -> CompetitionSubmission:
    """Append an entry and refresh the competition stats (caller commits)."""
    can_submit(competition, user_id, now).raise_if_denied()
    audio_url = (data.get("audio_url") or "").strip()
    if not audio_url:
        raise BadRequestError("audio_url is required", details={"audio_url": "required"})

    submission = CompetitionSubmission(
        index=max((s.index for s in competition.submissions), default=-1) + 1,
        user_id=user_id,
        audio_url=audio_url,
        waveform_data=data.get("waveform_data"),
        description=(data.get("description") or "").strip()[:500] or None,
        meta=data.get("metadata"),
        status="pending",
        submitted_at=as_utc(now) or utcnow(),
    )
    competition.submissions.append(submission)
    db.session.flush()

    distinct_submitters = (
        select(func.count(distinct(CompetitionSubmission.user_id)))
        .where(CompetitionSubmission.competition_id == competition.id)
        .scalar_subquery()
    )
    db.session.execute(
        update(ElementCompetition)
        .where(ElementCompetition.id == competition.id)
        .values(
            total_submissions=ElementCompetition.total_submissions + 1,
            unique_participants=distinct_submitters,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.expire(competition, ["total_submissions", "unique_participants"])
    return submission


def vote_on_submission(
    competition: ElementCompetition, index: int, user_id: str, weight: float = 1.0, now=None,
) -> CompetitionSubmission:
    """Record a weighted vote on the entry at *index* (caller commits).

    Raises:
        BadRequestError: not in voting, or voting deadline passed.
        NotFoundError:   no entry at *index*.
        ForbiddenError:  voting on one's own entry.
        ConflictError:   repeat vote on the same entry.
    """
    can_vote_on_competition(competition, user_id, now).raise_if_denied()
    submission = competition.submission_at(index)
    if submission is None:
        raise NotFoundError("Submission", index, message="Submission not found")
    if submission.user_id == user_id:
        raise ForbiddenError("Cannot vote on your own submission")
    if submission.has_voted(user_id):
        raise ConflictError("Already voted on this submission")

    weight = float(weight)
    submission.voters.append(CompetitionSubmissionVoter(user_id=user_id, weight=weight))
    db.session.execute(
        update(CompetitionSubmission)
        .where(CompetitionSubmission.id == submission.id)
        .values(
            votes=CompetitionSubmission.votes + 1,
            weighted_votes=CompetitionSubmission.weighted_votes + weight,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(ElementCompetition)
        .where(ElementCompetition.id == competition.id)
        .values(total_votes=ElementCompetition.total_votes + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(submission, ["votes", "weighted_votes"])
    db.session.expire(competition, ["total_votes"])
    return submission


def _ranked(submissions) -> list[CompetitionSubmission]:
    return sorted(submissions, key=lambda s: (-(s.weighted_votes or 0.0), -(s.votes or 0), s.index))


def determine_winner(competition: ElementCompetition, now=None) -> CompetitionSubmission:
    """Freeze the winner and move voting → closed (caller commits).

    Ties on weighted votes fall back to raw votes, then to the earlier entry.

    Raises:
        ConflictError:          already closed (by this or a concurrent call).
        InvalidTransitionError: competition is not in voting.
        BadRequestError:        no submissions.
    """
    if competition.status == "closed":
        raise ConflictError("Competition is already closed")
    if competition.status != "voting":
        raise InvalidTransitionError(competition.status, "closed")
    if not competition.submissions:
        raise BadRequestError("No submissions to determine winner")

    ranked = _ranked(competition.submissions)
    winner = ranked[0]
    winner.status = "winner"
    if len(ranked) > 1:
        ranked[1].status = "runnerUp"

    _compare_and_set(competition, "voting", {
        "status": "closed",
        "winner_id": winner.user_id,
        "winning_submission_index": winner.index,
        "closed_at": as_utc(now) or utcnow(),
    })
    return winner


# ── Queries ──────────────────────────────────────────────────────────────────


def get_competition(competition_id: str) -> ElementCompetition:
    return get_or_raise(ElementCompetition, competition_id, "Competition")


def list_competitions(session_id: str, status=None, element_type=None) -> list[ElementCompetition]:
    session_service.get_session(session_id)
    query = ElementCompetition.query.filter_by(session_id=session_id)
    if status:
        query = query.filter(ElementCompetition.status.in_([s.strip() for s in status.split(",")]))
    if element_type:
        query = query.filter_by(element_type=element_type)
    return query.order_by(ElementCompetition.created_at.desc(), ElementCompetition.id).all()


def get_active_competitions(session_id: str) -> list[ElementCompetition]:
    return (
        ElementCompetition.query.filter(
            ElementCompetition.session_id == session_id,
            ElementCompetition.status.in_(ACTIVE_STATUSES),
        )
        .order_by(ElementCompetition.submission_deadline, ElementCompetition.id)
        .all()
    )


def get_ranked_results(competition_id: str, viewer_id=None) -> dict:
    """Entries by (weighted_votes, votes) with rank; the winner flag only once closed."""
    competition = get_competition(competition_id)
    closed = competition.status == "closed"
    results = []
    for rank, submission in enumerate(_ranked(competition.submissions), start=1):
        item = submission.to_dict(viewer_id)
        item["rank"] = rank
        item["is_winner"] = closed and rank == 1
        results.append(item)
    return {
        "competition": competition.to_dict(viewer_id, include_submissions=False),
        "results": results,
    }


# ── Workflows ────────────────────────────────────────────────────────────────


def _parse_deadline(value, field):
    try:
        return parse_datetime_input(value, field)
    except ValueError as exc:
        raise BadRequestError(str(exc), details={field: str(exc)}) from exc


def create_competition(session_id: str, actor_id: str, data: dict, now=None) -> ElementCompetition:
    """Create a competition in ``open`` (or ``draft`` when requested).

    Raises:
        BadRequestError: ended session, bad element type, missing title,
            missing / past submission deadline, voting deadline not after it.
    """
    session = session_service.get_session(session_id)
    if session.is_terminal:
        raise BadRequestError(f"Cannot create a competition in a {session.status} session")
    now = as_utc(now) or utcnow()

    element_type = data.get("element_type")
    if element_type not in COMPETITION_ELEMENT_TYPES:
        raise BadRequestError(
            f"Invalid element_type '{element_type}'",
            details={"element_type": "not a competition element"},
        )
    title = (data.get("title") or "").strip()
    if not title:
        raise BadRequestError("title is required", details={"title": "required"})

    submission_deadline = _parse_deadline(data.get("submission_deadline"), "submission_deadline")
    if submission_deadline is None:
        raise BadRequestError("submission_deadline is required", details={"submission_deadline": "required"})
    if submission_deadline <= now:
        raise BadRequestError("Submission deadline must be in the future")
    voting_deadline = _parse_deadline(data.get("voting_deadline"), "voting_deadline")
    if voting_deadline is not None and voting_deadline <= submission_deadline:
        raise BadRequestError("Voting deadline must be after the submission deadline")

    try:
        max_subs = int(data.get("max_submissions_per_user") or 1)
    except (TypeError, ValueError) as exc:
        raise BadRequestError("max_submissions_per_user must be a whole number") from exc
    if max_subs < 1:
        raise BadRequestError("max_submissions_per_user must be at least 1")

    requirements = data.get("requirements") or {}
    prize = data.get("prize") or dict(DEFAULT_PRIZE)
    if not isinstance(requirements, dict) or not isinstance(prize, dict):
        raise BadRequestError("requirements and prize must be objects")

    competition = ElementCompetition(
        session_id=session.id,
        element_type=element_type,
        title=title[:100],
        description=data.get("description"),
        guidelines=data.get("guidelines"),
        requirements=requirements,
        submission_deadline=submission_deadline,
        voting_deadline=voting_deadline,
        max_submissions_per_user=max_subs,
        status="draft" if data.get("status") == "draft" else "open",
        prize=prize,
        created_by=actor_id,
    )
    db.session.add(competition)
    commit_or_conflict("Competition could not be created; retry")

    logger.info(
        "Competition created id=%s session=%s type=%s status=%s",
        competition.id, session.id, element_type, competition.status,
        extra={"session_id": session.id},
    )
    emit(session.id, "competition:created", {
        "competition_id": competition.id,
        "element_type": element_type,
        "title": competition.title,
        "status": competition.status,
        "submission_deadline": isoformat(submission_deadline),
    })
    return competition


def open_competition(competition_id: str, actor_id: str) -> ElementCompetition:
    """draft → open."""
    competition = get_competition(competition_id)
    validate_competition_transition(competition.status, "open")
    _compare_and_set(competition, "draft", {"status": "open"})
    db.session.commit()

    logger.info("Competition opened id=%s by=%s", competition.id, actor_id)
    emit(competition.session_id, "competition:opened", {"competition_id": competition.id})
    return competition


def submit_entry(competition_id: str, user_id: str, data: dict, now=None) -> CompetitionSubmission:
    """Submit an entry on behalf of *user_id* (banned / muted users refused)."""
    competition = get_competition(competition_id)
    session = session_service.get_session(competition.session_id)
    session_service.can_participate(session, user_id, content=True, now=now).raise_if_denied()

    with write_or_conflict("Submission was added concurrently; retry"):
        submission = add_submission(competition, user_id, data or {}, now)
        participant_service.record_submission(session.id, user_id, 1)

    logger.info(
        "Competition entry id=%s index=%s user=%s",
        competition.id, submission.index, user_id,
        extra={"session_id": session.id, "user_id": user_id},
    )
    emit(session.id, "competition:submissionAdded", {
        "competition_id": competition.id,
        "index": submission.index,
        "user_id": user_id,
        "total_submissions": competition.total_submissions,
        "unique_participants": competition.unique_participants,
    })
    return submission


def vote_entry(competition_id: str, index, user_id: str, weight: float = 1.0, now=None) -> CompetitionSubmission:
    """Vote on the entry at *index*; banned users refused."""
    try:
        index = int(index)
    except (TypeError, ValueError) as exc:
        raise BadRequestError("submission_index must be a whole number") from exc
    competition = get_competition(competition_id)
    session = session_service.get_session(competition.session_id)
    session_service.can_participate(session, user_id, now=now).raise_if_denied()

    with write_or_conflict("Already voted on this submission"):
        submission = vote_on_submission(competition, index, user_id, weight, now)
        participant_service.record_vote(session.id, user_id, 1)

    logger.info(
        "Competition vote id=%s index=%s user=%s weight=%s",
        competition.id, index, user_id, weight,
        extra={"session_id": session.id, "user_id": user_id},
    )
    emit(session.id, "competition:voted", {
        "competition_id": competition.id,
        "index": index,
        "votes": submission.votes,
        "weighted_votes": round(submission.weighted_votes, 2),
        "total_votes": competition.total_votes,
    })
    return submission


def start_voting(competition_id: str, actor_id: str, voting_deadline=None, now=None,
                 default_hours: int = DEFAULT_VOTING_HOURS) -> ElementCompetition:
    """open → voting; the voting deadline defaults to *default_hours* from now."""
    competition = get_competition(competition_id)
    if competition.status != "open":
        raise BadRequestError("Competition must be open to start voting")
    now = as_utc(now) or utcnow()

    deadline = _parse_deadline(voting_deadline, "voting_deadline") or as_utc(competition.voting_deadline)
    if deadline is None or deadline <= now:
        deadline = now + timedelta(hours=default_hours)

    _compare_and_set(competition, "open", {"status": "voting", "voting_deadline": deadline})
    db.session.commit()

    logger.info("Competition voting started id=%s deadline=%s by=%s",
                competition.id, isoformat(deadline), actor_id)
    emit(competition.session_id, "competition:votingStarted", {
        "competition_id": competition.id,
        "voting_deadline": isoformat(deadline),
        "total_submissions": competition.total_submissions,
    })
    return competition


def close_competition(competition_id: str, actor_id: str, now=None, gateway=None) -> dict:
    """Determine the winner, commit, then award the prize reputation.

    A failed award is logged and reported; it never reopens the competition.

    Returns:
        ``{"competition", "winner", "prize_awarded", "award_error"}``.
    """
    competition = get_competition(competition_id)
    winner = determine_winner(competition, now)
    db.session.commit()

    logger.info(
        "Competition closed id=%s winner=%s index=%s by=%s",
        competition.id, competition.winner_id, competition.winning_submission_index, actor_id,
        extra={"session_id": competition.session_id},
    )

    gateway = gateway or identity_gateway
    points = int((competition.prize or {}).get("reputation_points") or 0)
    awarded, award_error = False, None
    if points > 0:
        result = gateway.award_reputation(
            winner.user_id, points, f"Won competition '{competition.title}'",
        )
        awarded, award_error = result.ok, result.error
        if not result.ok:
            logger.warning(
                "Prize award failed competition=%s user=%s error=%s",
                competition.id, winner.user_id, result.error,
            )

    emit(competition.session_id, "competition:closed", {
        "competition_id": competition.id,
        "winner_id": competition.winner_id,
        "winning_submission_index": competition.winning_submission_index,
        "winning_votes": winner.votes,
        "winning_weighted_votes": round(winner.weighted_votes, 2),
        "prize_awarded": awarded,
    })
    return {
        "competition": competition,
        "winner": winner,
        "prize_awarded": awarded,
        "award_error": award_error,
    }


def cancel_competition(competition_id: str, actor_id: str) -> ElementCompetition:
    """Cancel from any pre-closed status. Terminal."""
    competition = get_competition(competition_id)
    current = competition.status
    validate_competition_transition(current, "cancelled")
    _compare_and_set(competition, current, {"status": "cancelled"})
    db.session.commit()

    logger.info("Competition cancelled id=%s from=%s by=%s", competition.id, current, actor_id)
    emit(competition.session_id, "competition:cancelled", {"competition_id": competition.id})
    return competition
