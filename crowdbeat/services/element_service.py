"""
Element option registry and element-voting workflows.

Registry primitives (no commit):
    add_vote(option, user_id, weight)     voter row + atomic votes/weighted_votes increment
    remove_vote(option, user_id)          exact inverse, using the voter row's weight snapshot

Read models:
    get_grouped_options   options per element type with vote percentages
    get_winning_options   best option per element type, one ordered scan

Workflows (one commit each, then one event):
    vote_option / unvote_option   gate → registry → ledger → participant counters
    create_options / submit_user_option / set_option_status

Percentages within one element type are integers computed with the
largest-remainder method, so they sum to exactly 100 whenever the type has
votes and are all 0 otherwise.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, update

from crowdbeat.core.exceptions import BadRequestError, ConflictError, NotFoundError
from crowdbeat.models import db
from crowdbeat.models.element import ELEMENT_TYPES, OPTION_STATUSES, ElementOption, ElementOptionVoter
from crowdbeat.services import competition_service, participant_service, session_service, vote_ledger
from crowdbeat.services.event_publisher import emit
from crowdbeat.utils.helpers import commit_or_conflict, write_or_conflict

logger = logging.getLogger(__name__)

MAX_OPTIONS_PER_REQUEST = 50


# ── Registry primitives ──────────────────────────────────────────────────────


def add_vote(option: ElementOption, user_id: str, weight: float = 1.0) -> ElementOption:
    """Record *user_id* as a voter of *option*.

    Raises:
        ConflictError: the user already voted on this option.
    """
    if option.has_voted(user_id):
        raise ConflictError("Already voted on this option")
    weight = float(weight)
    option.voters.append(ElementOptionVoter(user_id=user_id, weight=weight))
    db.session.execute(
        update(ElementOption)
        .where(ElementOption.id == option.id)
        .values(
            votes=ElementOption.votes + 1,
            weighted_votes=ElementOption.weighted_votes + weight,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.expire(option, ["votes", "weighted_votes"])
    return option


def remove_vote(option: ElementOption, user_id: str) -> ElementOption:
    """Undo *user_id*'s vote on *option*.

    Raises:
        NotFoundError: the user never voted on this option.
    """
    voter = next((v for v in option.voters if v.user_id == user_id), None)
    if voter is None:
        raise NotFoundError("Vote", user_id, message="Have not voted on this option")
    weight = voter.weight
    option.voters.remove(voter)
    db.session.execute(
        update(ElementOption)
        .where(ElementOption.id == option.id)
        .values(
            votes=ElementOption.votes - 1,
            weighted_votes=ElementOption.weighted_votes - weight,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.expire(option, ["votes", "weighted_votes"])
    return option


# ── Read models ──────────────────────────────────────────────────────────────


def _percentages(counts: list[int]) -> list[int]:
    """Integer percentages of *counts* summing to 100 (all 0 when the total is 0)."""
    total = sum(counts)
    if not total:
        return [0] * len(counts)
    floors = [c * 100 // total for c in counts]
    remainders = [c * 100 % total for c in counts]
    leftover = 100 - sum(floors)
    for i in sorted(range(len(counts)), key=lambda i: (-remainders[i], i))[:leftover]:
        floors[i] += 1
    return floors


def _options_query(session_id, song_id=None, element_type=None, status=None):
    query = ElementOption.query.filter_by(session_id=session_id)
    if song_id is not None:
        query = query.filter_by(song_id=song_id)
    if element_type:
        query = query.filter_by(element_type=element_type)
    if status:
        query = query.filter_by(status=status)
    return query


def get_grouped_options(session_id: str, song_id=None, viewer_id=None) -> dict:
    """Return ``{element_type: {"options", "total_votes", "total_weighted_votes"}}``."""
    options = (
        _options_query(session_id, song_id)
        .order_by(ElementOption.element_type, ElementOption.sort_order, ElementOption.created_at)
        .all()
    )
    by_type: dict[str, list[ElementOption]] = {}
    for option in options:
        by_type.setdefault(option.element_type, []).append(option)

    grouped = {}
    for element_type, members in by_type.items():
        shares = _percentages([o.votes for o in members])
        items = []
        for option, share in zip(members, shares):
            item = option.to_dict(viewer_id)
            item["percentage"] = share
            items.append(item)
        grouped[element_type] = {
            "element_type": element_type,
            "options": items,
            "total_votes": sum(o.votes for o in members),
            "total_weighted_votes": round(sum(o.weighted_votes for o in members), 2),
        }
    return grouped


def get_winning_options(session_id: str, song_id=None) -> dict:
    """Best option per element type by (weighted_votes, votes), single scan."""
    ordered = (
        _options_query(session_id, song_id)
        .order_by(
            ElementOption.element_type,
            ElementOption.weighted_votes.desc(),
            ElementOption.votes.desc(),
            ElementOption.sort_order,
            ElementOption.id,
        )
        .all()
    )
    winners = {}
    for option in ordered:
        winners.setdefault(option.element_type, option)
    return winners


# ── Private helpers ──────────────────────────────────────────────────────────


def _get_option(session_id: str, option_id: str) -> ElementOption:
    option = ElementOption.query.filter_by(session_id=session_id, option_id=option_id).one_or_none()
    if option is None:
        raise NotFoundError("Element option", option_id)
    return option


def _clean_element_type(element_type) -> str:
    if element_type not in ELEMENT_TYPES:
        raise BadRequestError(
            f"Invalid element_type '{element_type}'",
            details={"element_type": "must be one of ELEMENT_TYPES"},
        )
    return element_type


def _build_option(session_id, data, created_by, order, user_submitted=False) -> ElementOption:
    element_type = _clean_element_type(data.get("element_type"))
    label = (data.get("label") or "").strip()
    if not label:
        raise BadRequestError("label is required", details={"label": "required"})
    if len(label) > 100:
        raise BadRequestError("label must be ≤ 100 characters")

    suffix = uuid.uuid4().hex[:8]
    if user_submitted:
        option_id = f"user-{element_type}-{suffix}"
    else:
        option_id = (data.get("option_id") or "").strip() or f"{element_type}-{suffix}"

    return ElementOption(
        session_id=session_id,
        song_id=data.get("song_id"),
        element_type=element_type,
        option_id=option_id,
        label=label,
        description=data.get("description"),
        audio_url=data.get("audio_url"),
        waveform_data=data.get("waveform_data"),
        image_url=data.get("image_url"),
        value=data.get("value"),
        meta=data.get("metadata"),
        created_by=created_by,
        is_user_submitted=user_submitted,
        sort_order=data.get("order", order),
        status="pending",
    )


# ── Workflows ────────────────────────────────────────────────────────────────


def create_options(session_id: str, actor_id: str, options: list, song_id=None) -> list[ElementOption]:
    """Seed element options for a session (host / moderator).

    Raises:
        BadRequestError: session ended, empty / oversized batch, invalid option.
        ConflictError:   an option_id already exists in the session.
    """
    session = session_service.get_session(session_id)
    if session.is_terminal:
        raise BadRequestError(f"Cannot add options to a {session.status} session")
    if not isinstance(options, list) or not options:
        raise BadRequestError("options must be a non-empty list")
    if len(options) > MAX_OPTIONS_PER_REQUEST:
        raise BadRequestError(f"At most {MAX_OPTIONS_PER_REQUEST} options per request")

    existing = {o.option_id for o in ElementOption.query.filter_by(session_id=session.id)}
    created = []
    for position, data in enumerate(options):
        if not isinstance(data, dict):
            raise BadRequestError("each option must be an object")
        if song_id is not None and "song_id" not in data:
            data = {**data, "song_id": song_id}
        option = _build_option(session.id, data, actor_id, position)
        if option.option_id in existing:
            raise ConflictError(f"Option '{option.option_id}' already exists in this session")
        existing.add(option.option_id)
        db.session.add(option)
        created.append(option)
    commit_or_conflict("Option id already exists in this session")

    logger.info(
        "Element options created session=%s count=%d by=%s",
        session.id, len(created), actor_id,
        extra={"session_id": session.id},
    )
    emit(session.id, "element:optionsCreated", {
        "count": len(created),
        "element_types": sorted({o.element_type for o in created}),
        "option_ids": [o.option_id for o in created],
    })
    return created


def list_options(session_id: str, element_type=None, song_id=None, status=None, viewer_id=None) -> list[dict]:
    session_service.get_session(session_id)
    options = (
        _options_query(session_id, song_id, element_type, status)
        .order_by(ElementOption.element_type, ElementOption.sort_order, ElementOption.created_at)
        .all()
    )
    return [o.to_dict(viewer_id) for o in options]


def vote_option(
    session_id: str,
    option_id: str,
    user_id: str,
    weight: float = 1.0,
    vote_value=1,
    comment=None,
    now=None,
) -> ElementOption:
    """Vote on an option: registry, ledger and counters change in one commit.

    Raises:
        BadRequestError: element voting closed, option rejected, bad vote_value.
        ForbiddenError:  caller banned.
        NotFoundError:   option absent.
        ConflictError:   already voted (including a concurrent double vote).
    """
    session = session_service.get_session(session_id)
    session_service.can_vote_on_elements(session, user_id, now).raise_if_denied()
    option = _get_option(session.id, option_id)
    if option.status == "rejected":
        raise BadRequestError("Option has been rejected")

    with write_or_conflict("Already voted on this option"):
        add_vote(option, user_id, weight)
        vote_ledger.cast_vote(
            session.id, user_id, option.element_type, option.option_id,
            value=option.value,
            vote_value=vote_value,
            weight=weight,
            song_id=option.song_id,
            comment=comment,
        )
        participant_service.record_vote(session.id, user_id, 1)

    logger.info(
        "Element vote session=%s option=%s user=%s weight=%s",
        session.id, option.option_id, user_id, weight,
        extra={"session_id": session.id, "user_id": user_id},
    )
    emit(session.id, "element:voted", {
        "option_id": option.option_id,
        "element_type": option.element_type,
        "user_id": user_id,
        "votes": option.votes,
        "weighted_votes": round(option.weighted_votes, 2),
    })
    return option


def unvote_option(session_id: str, option_id: str, user_id: str, now=None) -> ElementOption:
    """Withdraw a vote: registry entry and ledger row are removed together."""
    session = session_service.get_session(session_id)
    session_service.can_vote_on_elements(session, user_id, now).raise_if_denied()
    option = _get_option(session.id, option_id)

    with write_or_conflict("Vote was removed concurrently; retry"):
        remove_vote(option, user_id)
        vote_ledger.remove_vote(session.id, user_id, option.element_type, option.option_id)
        participant_service.record_vote(session.id, user_id, -1)

    logger.info(
        "Element vote removed session=%s option=%s user=%s",
        session.id, option.option_id, user_id,
    )
    emit(session.id, "element:voteRemoved", {
        "option_id": option.option_id,
        "element_type": option.element_type,
        "user_id": user_id,
        "votes": option.votes,
        "weighted_votes": round(option.weighted_votes, 2),
    })
    return option


def submit_user_option(session_id: str, user_id: str, data: dict, now=None) -> ElementOption:
    """Technical users propose their own option; it starts ``pending``."""
    session = session_service.get_session(session_id)
    session_service.can_participate(session, user_id, content=True, now=now).raise_if_denied()
    if session.status not in session_service.ELEMENT_VOTING_STATUSES:
        raise BadRequestError("Option submissions are closed")

    option = _build_option(session.id, data or {}, user_id, order=0, user_submitted=True)
    option.sort_order = (
        db.session.query(func.coalesce(func.max(ElementOption.sort_order), -1))
        .filter(ElementOption.session_id == session.id, ElementOption.element_type == option.element_type)
        .scalar()
        + 1
    )
    db.session.add(option)
    participant_service.record_submission(session.id, user_id, 1)
    commit_or_conflict("Option id already exists in this session")

    logger.info(
        "User option submitted session=%s option=%s user=%s",
        session.id, option.option_id, user_id,
        extra={"session_id": session.id, "user_id": user_id},
    )
    emit(session.id, "element:userOptionSubmitted", {
        "option": option.to_dict(),
        "submitted_by": user_id,
    })
    return option


def set_option_status(session_id: str, option_id: str, status: str, actor_id: str) -> ElementOption:
    """Change an option's status; selecting one demotes the previous selection."""
    if status not in OPTION_STATUSES:
        raise BadRequestError(f"Invalid status '{status}'. Must be one of: {', '.join(OPTION_STATUSES)}")
    session = session_service.get_session(session_id)
    option = _get_option(session.id, option_id)

    demoted = []
    if status == "selected":
        for other in _options_query(session.id, element_type=option.element_type, status="selected"):
            if other.id != option.id and other.song_id == option.song_id:
                other.status = "alternative"
                demoted.append(other.option_id)
    previous = option.status
    option.status = status
    db.session.commit()

    logger.info(
        "Option status session=%s option=%s %s→%s by=%s",
        session.id, option.option_id, previous, status, actor_id,
    )
    emit(session.id, "element:optionStatusChanged", {
        "option_id": option.option_id,
        "element_type": option.element_type,
        "status": status,
        "demoted": demoted,
    })
    return option


# ── Aggregated results ───────────────────────────────────────────────────────


def get_element_results(session_id: str, song_id=None, viewer_id=None) -> dict:
    """Options grouped per type, the winner per type and the ledger summary."""
    session_service.get_session(session_id)
    winners = get_winning_options(session_id, song_id)
    return {
        "options": get_grouped_options(session_id, song_id, viewer_id),
        "winners": {t: o.to_dict() for t, o in winners.items()},
        "vote_summary": vote_ledger.get_session_summary(session_id),
    }


def get_progress(session_id: str, song_id=None) -> dict:
    """Decided vs. pending element types.

    A type is decided once it has a ``selected`` option or its leading
    option has at least one vote.
    """
    session_service.get_session(session_id)
    options = _options_query(session_id, song_id).all()
    types = sorted({o.element_type for o in options})
    selected = {o.element_type for o in options if o.status == "selected"}
    winners = get_winning_options(session_id, song_id)

    decided = [t for t in types if t in selected or (t in winners and winners[t].votes > 0)]
    pending = [t for t in types if t not in decided]
    total = len(types)
    return {
        "total": total,
        "decided": len(decided),
        "pending": len(pending),
        "percentage": round(len(decided) / total * 100) if total else 0,
        "decided_types": decided,
        "pending_types": pending,
    }


def get_granular_breakdown(session_id: str, song_id=None, viewer_id=None) -> dict:
    session = session_service.get_session(session_id)
    return {
        "session": {"id": session.id, "status": session.status, "stage": session.stage},
        "results": get_element_results(session_id, song_id, viewer_id),
        "active_competitions": [
            c.to_dict(viewer_id, include_submissions=False)
            for c in competition_service.get_active_competitions(session_id)
        ],
        "progress": get_progress(session_id, song_id),
    }


def get_my_votes(session_id: str, user_id: str, element_type=None) -> list[dict]:
    session_service.get_session(session_id)
    return [v.to_dict() for v in vote_ledger.get_user_votes(session_id, user_id, element_type)]
