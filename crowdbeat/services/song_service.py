"""
Session song queue — add, remove, reorder and vote on queued tracks.

Votes are open only while the session is in song-voting.  Each voter holds
one SessionSongVote row per song (unique), and the song's counters move by
atomic increments, like the element option registry.
"""

from __future__ import annotations

import logging

from sqlalchemy import update

from crowdbeat.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from crowdbeat.models import db
from crowdbeat.models.session import SessionSong, SessionSongVote
from crowdbeat.services import participant_service, session_service
from crowdbeat.services.event_publisher import emit
from crowdbeat.utils.helpers import commit_or_conflict, write_or_conflict

logger = logging.getLogger(__name__)


def _get_song(session, song_id) -> SessionSong:
    for song in session.songs:
        if song.id == song_id:
            return song
    raise NotFoundError("Song", song_id)


def add_song(session_id: str, user_id: str, data: dict, is_staff: bool = False, now=None) -> SessionSong:
    """Queue a song; non-staff users are limited by ``max_songs_per_user``."""
    session = session_service.get_session(session_id)
    session_service.can_add_song(session, user_id, is_staff=is_staff, now=now).raise_if_denied()

    title = (data.get("title") or "").strip()
    if not title:
        raise BadRequestError("title is required", details={"title": "required"})
    if not is_staff:
        limit = session.setting("max_songs_per_user")
        mine = sum(1 for s in session.songs if s.added_by == user_id)
        if limit and mine >= limit:
            raise BadRequestError(f"Song limit of {limit} per user reached")

    duration = data.get("duration_seconds")
    if duration is not None:
        try:
            duration = int(duration)
        except (TypeError, ValueError) as exc:
            raise BadRequestError("duration_seconds must be a whole number") from exc

    song = SessionSong(
        title=title[:200],
        artist=(data.get("artist") or "").strip()[:200] or None,
        url=data.get("url"),
        duration_seconds=duration,
        added_by=user_id,
        position=max((s.position for s in session.songs), default=-1) + 1,
    )
    session.songs.append(song)
    commit_or_conflict("Song could not be added; retry")

    logger.info("Song added session=%s song=%s by=%s", session.id, song.id, user_id)
    emit(session.id, "session:songAdded", {"song": song.to_dict()})
    return song


def list_songs(session_id: str, viewer_id=None) -> list[dict]:
    session = session_service.get_session(session_id)
    return [s.to_dict(viewer_id) for s in session.songs]


def remove_song(session_id: str, song_id: int, actor_id: str, is_staff: bool = False) -> None:
    """Remove a queued song; only staff or the user who added it."""
    session = session_service.get_session(session_id)
    song = _get_song(session, song_id)
    if not is_staff and song.added_by != actor_id:
        raise ForbiddenError("Only the host, a moderator or the submitter can remove this song")

    voter_ids = [v.user_id for v in song.voters]
    with write_or_conflict("Song queue was changed concurrently; retry"):
        for voter_id in voter_ids:
            participant_service.record_vote(session.id, voter_id, -1)
        session.songs.remove(song)
        for position, remaining in enumerate(session.songs):
            remaining.position = position

    logger.info(
        "Song removed session=%s song=%s by=%s votes_reversed=%d",
        session.id, song_id, actor_id, len(voter_ids),
    )
    emit(session.id, "session:songRemoved", {"song_id": song_id, "removed_by": actor_id})


def reorder_songs(session_id: str, song_ids: list, actor_id: str) -> list[SessionSong]:
    """Set the queue order; *song_ids* must list every queued song exactly once."""
    session = session_service.get_session(session_id)
    if not isinstance(song_ids, list):
        raise BadRequestError("song_ids must be a list")
    current = {s.id for s in session.songs}
    try:
        requested = [int(s) for s in song_ids]
    except (TypeError, ValueError) as exc:
        raise BadRequestError("song_ids must contain song ids") from exc
    if len(requested) != len(set(requested)) or set(requested) != current:
        raise BadRequestError("song_ids must list every queued song exactly once")

    by_id = {s.id: s for s in session.songs}
    for position, song_id in enumerate(requested):
        by_id[song_id].position = position
    db.session.commit()
    db.session.expire(session, ["songs"])

    logger.info("Songs reordered session=%s by=%s", session.id, actor_id)
    emit(session.id, "session:songsReordered", {"song_ids": requested})
    return list(session.songs)


def vote_song(session_id: str, song_id: int, user_id: str, weight: float = 1.0, now=None) -> SessionSong:
    session = session_service.get_session(session_id)
    if session.status != "song-voting":
        raise BadRequestError("Song voting is not open for this session")
    session_service.can_vote(session, user_id, now).raise_if_denied()
    song = _get_song(session, song_id)
    if song.has_voted(user_id):
        raise ConflictError("You have already voted for this song")

    weight = float(weight)
    with write_or_conflict("You have already voted for this song"):
        song.voters.append(SessionSongVote(user_id=user_id, weight=weight))
        db.session.execute(
            update(SessionSong)
            .where(SessionSong.id == song.id)
            .values(votes=SessionSong.votes + 1, weighted_votes=SessionSong.weighted_votes + weight)
            .execution_options(synchronize_session=False)
        )
        db.session.expire(song, ["votes", "weighted_votes"])
        participant_service.record_vote(session.id, user_id, 1)

    logger.info("Song vote session=%s song=%s user=%s", session.id, song.id, user_id)
    emit(session.id, "session:songVoted", {
        "song_id": song.id,
        "user_id": user_id,
        "votes": song.votes,
        "weighted_votes": round(song.weighted_votes, 2),
    })
    return song


def unvote_song(session_id: str, song_id: int, user_id: str, now=None) -> SessionSong:
    session = session_service.get_session(session_id)
    if session.status != "song-voting":
        raise BadRequestError("Cannot remove vote outside voting stage")
    session_service.can_participate(session, user_id, now=now).raise_if_denied()
    song = _get_song(session, song_id)
    vote = next((v for v in song.voters if v.user_id == user_id), None)
    if vote is None:
        raise NotFoundError("Vote", user_id, message="You have not voted for this song")

    with write_or_conflict("Vote was removed concurrently; retry"):
        song.voters.remove(vote)
        db.session.execute(
            update(SessionSong)
            .where(SessionSong.id == song.id)
            .values(votes=SessionSong.votes - 1, weighted_votes=SessionSong.weighted_votes - vote.weight)
            .execution_options(synchronize_session=False)
        )
        db.session.expire(song, ["votes", "weighted_votes"])
        participant_service.record_vote(session.id, user_id, -1)

    logger.info("Song vote removed session=%s song=%s user=%s", session.id, song.id, user_id)
    emit(session.id, "session:songVoteRemoved", {
        "song_id": song.id,
        "user_id": user_id,
        "votes": song.votes,
        "weighted_votes": round(song.weighted_votes, 2),
    })
    return song


def get_song_results(session_id: str, viewer_id=None) -> dict:
    """Songs ranked by (weighted_votes, votes); the leader is the winner once completed."""
    session = session_service.get_session(session_id)
    ranked = sorted(session.songs, key=lambda s: (-(s.weighted_votes or 0.0), -(s.votes or 0), s.position))
    completed = session.status == "completed"
    results = []
    for rank, song in enumerate(ranked, start=1):
        item = song.to_dict(viewer_id)
        item["ranking"] = rank
        item["is_winner"] = completed and rank == 1
        results.append(item)
    return {
        "session_id": session.id,
        "status": session.status,
        "voting_complete": completed,
        "results": results,
        "total_votes": sum(s.votes for s in session.songs),
    }
