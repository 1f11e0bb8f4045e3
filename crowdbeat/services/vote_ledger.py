"""
Element vote ledger.

Durable record of every element vote, one row per
(session, user, element_type, element_id).  Re-voting the same slot
overwrites value / vote_value / weight / comment in place; removal deletes
the row.  The ledger never commits: callers compose it with the option
registry and the participant counters inside one transaction.

Aggregates:
    approvals      rows with vote_value == 1
    rejections     rows with vote_value == -1
    approval_rate  approvals / total_votes, percent
    avg_rating     mean of vote_value over rating rows (1..5), 1 decimal
    weighted_*     weighted_approvals / total_weight, by the snapshotted vote weight
"""

from __future__ import annotations

import logging

from sqlalchemy import and_, case, func

from crowdbeat.core.exceptions import BadRequestError
from crowdbeat.models import db
from crowdbeat.models.element import VOTE_VALUES, ElementOption, ElementOptionVoter, ElementVote
from crowdbeat.models.session import Session
from crowdbeat.utils.helpers import get_or_raise

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 200


def _clean_vote_value(vote_value) -> int:
    try:
        vote_value = int(vote_value)
    except (TypeError, ValueError) as exc:
        raise BadRequestError("vote_value must be -1 or between 1 and 5") from exc
    if vote_value not in VOTE_VALUES:
        raise BadRequestError("vote_value must be -1 or between 1 and 5")
    return vote_value


def cast_vote(
    session_id: str,
    user_id: str,
    element_type: str,
    element_id: str,
    *,
    value=None,
    vote_value=1,
    weight: float = 1.0,
    song_id=None,
    comment: str | None = None,
):
    """Upsert the ledger row for the slot.

    Returns:
        ``(vote, created)``; *created* is False when an existing row was
        overwritten.

    Raises:
        BadRequestError: vote_value out of range or comment too long.
    """
    vote_value = _clean_vote_value(vote_value)
    comment = (comment or "").strip() or None
    if comment and len(comment) > MAX_COMMENT_LENGTH:
        raise BadRequestError(f"comment must be ≤ {MAX_COMMENT_LENGTH} characters")

    vote = ElementVote.query.filter_by(
        session_id=session_id,
        user_id=user_id,
        element_type=element_type,
        element_id=element_id,
    ).one_or_none()
    created = vote is None
    if created:
        vote = ElementVote(
            session_id=session_id,
            user_id=user_id,
            element_type=element_type,
            element_id=element_id,
        )
        db.session.add(vote)

    vote.value = value
    vote.vote_value = vote_value
    vote.weight = float(weight)
    vote.song_id = song_id
    vote.comment = comment

    logger.debug(
        "Ledger %s session=%s user=%s slot=%s/%s value=%s",
        "insert" if created else "update", session_id, user_id,
        element_type, element_id, vote_value,
    )
    return vote, created


def remove_vote(session_id: str, user_id: str, element_type: str, element_id: str) -> bool:
    """Delete the ledger row for the slot; False when there was none."""
    vote = ElementVote.query.filter_by(
        session_id=session_id,
        user_id=user_id,
        element_type=element_type,
        element_id=element_id,
    ).one_or_none()
    if vote is None:
        return False
    db.session.delete(vote)
    return True


def get_user_votes(session_id: str, user_id: str, element_type: str | None = None) -> list[ElementVote]:
    query = ElementVote.query.filter_by(session_id=session_id, user_id=user_id)
    if element_type:
        query = query.filter_by(element_type=element_type)
    return query.order_by(ElementVote.created_at, ElementVote.id).all()


# ── Aggregates ───────────────────────────────────────────────────────────────


def _summary_columns():
    approve = ElementVote.vote_value == 1
    reject = ElementVote.vote_value == -1
    rating = and_(ElementVote.vote_value >= 1, ElementVote.vote_value <= 5)
    return (
        func.count(ElementVote.id).label("total_votes"),
        func.sum(case((approve, 1), else_=0)).label("approvals"),
        func.sum(case((reject, 1), else_=0)).label("rejections"),
        func.avg(case((rating, ElementVote.vote_value), else_=None)).label("avg_rating"),
        func.sum(ElementVote.weight).label("total_weight"),
        func.sum(case((approve, ElementVote.weight), else_=0.0)).label("weighted_approvals"),
    )


def _percent(part, whole) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _summary_from_row(row) -> dict:
    approvals = int(row.approvals or 0)
    rejections = int(row.rejections or 0)
    weighted_approvals = float(row.weighted_approvals or 0.0)
    total_votes = int(row.total_votes or 0)
    total_weight = float(row.total_weight or 0.0)
    return {
        "total_votes": total_votes,
        "approvals": approvals,
        "rejections": rejections,
        "approval_rate": _percent(approvals, total_votes),
        "avg_rating": round(float(row.avg_rating), 1) if row.avg_rating is not None else None,
        "total_weight": round(total_weight, 2),
        "weighted_approvals": round(weighted_approvals, 2),
        "weighted_approval_rate": _percent(weighted_approvals, total_weight),
    }


def get_element_summary(session_id: str, element_type: str, element_id: str) -> dict:
    """Aggregate the ledger rows of one element option."""
    row = (
        db.session.query(*_summary_columns())
        .filter(
            ElementVote.session_id == session_id,
            ElementVote.element_type == element_type,
            ElementVote.element_id == element_id,
        )
        .one()
    )
    return {"element_type": element_type, "element_id": element_id, **_summary_from_row(row)}


def get_session_summary(session_id: str) -> list[dict]:
    """Per-element aggregates for the whole session, one SQL GROUP BY."""
    rows = (
        db.session.query(ElementVote.element_type, ElementVote.element_id, *_summary_columns())
        .filter(ElementVote.session_id == session_id)
        .group_by(ElementVote.element_type, ElementVote.element_id)
        .order_by(ElementVote.element_type, ElementVote.element_id)
        .all()
    )
    return [
        {"element_type": r.element_type, "element_id": r.element_id, **_summary_from_row(r)}
        for r in rows
    ]


# ── Repair ───────────────────────────────────────────────────────────────────


def recompute_option_counters(session_id: str) -> int:
    """Rebuild option voter rows and counters from the ledger.

    Every ledger row counts once toward its option, whatever its vote_value.
    Used after an interrupted write left the registry and the ledger apart.

    Returns:
        Number of options whose counters changed.
    """
    get_or_raise(Session, session_id, "Session")
    options = ElementOption.query.filter_by(session_id=session_id).all()
    by_key = {(o.element_type, o.option_id): o for o in options}

    expected = {o.id: {} for o in options}
    for vote in ElementVote.query.filter_by(session_id=session_id).all():
        option = by_key.get((vote.element_type, vote.element_id))
        if option is not None:
            expected[option.id][vote.user_id] = vote.weight

    changed = 0
    for option in options:
        voters = expected[option.id]
        current = {v.user_id: v.weight for v in option.voters}
        if current == voters and option.votes == len(voters):
            continue
        for voter in list(option.voters):
            if voter.user_id not in voters:
                option.voters.remove(voter)
            else:
                voter.weight = voters[voter.user_id]
        for user_id in sorted(set(voters) - set(current)):
            option.voters.append(ElementOptionVoter(user_id=user_id, weight=voters[user_id]))
        option.votes = len(voters)
        option.weighted_votes = round(sum(voters.values()), 4)
        changed += 1

    db.session.commit()
    if changed:
        logger.warning(
            "Option counters rebuilt from ledger session=%s options=%d",
            session_id, changed,
            extra={"session_id": session_id},
        )
    return changed
