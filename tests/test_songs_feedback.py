"""
CrowdBeat Session Core
Tests — song queue, song voting, feedback and session stats.
"""

import pytest

from conftest import ALICE, BOB, HOST, make_session
from crowdbeat.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from crowdbeat.services import (
    element_service,
    moderation_service,
    participant_service,
    session_service,
    song_service,
)


def _advance_to(session_id, status):
    session = session_service.get_session(session_id)
    while session.status != status:
        session = session_service.advance_stage(session_id, HOST)
    return session


@pytest.fixture()
def queued(live_session):
    """Three songs queued by ALICE, BOB and HOST, in that order."""
    for user_id, title in ((ALICE, "Sunrise"), (BOB, "Drift"), (HOST, "Static")):
        song_service.add_song(live_session.id, user_id, {"title": title}, is_staff=user_id == HOST)
    return session_service.get_session(live_session.id)


def _song_ids(session_id):
    return [s["id"] for s in song_service.list_songs(session_id)]


class TestQueue:
    def test_positions_follow_insertion(self, queued):
        songs = song_service.list_songs(queued.id)
        assert [s["title"] for s in songs] == ["Sunrise", "Drift", "Static"]
        assert [s["position"] for s in songs] == [0, 1, 2]

    def test_title_required(self, live_session):
        with pytest.raises(BadRequestError, match="title"):
            song_service.add_song(live_session.id, ALICE, {"title": " "})

    def test_per_user_limit(self):
        session = make_session(settings={"max_songs_per_user": 1})
        participant_service.join_session(session.id, ALICE)
        song_service.add_song(session.id, ALICE, {"title": "One"})
        with pytest.raises(BadRequestError, match="limit"):
            song_service.add_song(session.id, ALICE, {"title": "Two"})
        # staff are not capped
        song_service.add_song(session.id, HOST, {"title": "A"}, is_staff=True)
        song_service.add_song(session.id, HOST, {"title": "B"}, is_staff=True)

    def test_requests_disabled_for_non_staff(self):
        session = make_session(settings={"allow_song_requests": False})
        with pytest.raises(ForbiddenError):
            song_service.add_song(session.id, ALICE, {"title": "Nope"})

    def test_remove_own_song_compacts_positions(self, queued, events):
        first = _song_ids(queued.id)[0]
        song_service.remove_song(queued.id, first, ALICE)
        songs = song_service.list_songs(queued.id)
        assert [s["title"] for s in songs] == ["Drift", "Static"]
        assert [s["position"] for s in songs] == [0, 1]
        assert events.last("session:songRemoved")["song_id"] == first

    def test_remove_someone_elses_song(self, queued):
        bob_song = _song_ids(queued.id)[1]
        with pytest.raises(ForbiddenError):
            song_service.remove_song(queued.id, bob_song, ALICE)
        song_service.remove_song(queued.id, bob_song, HOST, is_staff=True)

    def test_remove_unknown(self, queued):
        with pytest.raises(NotFoundError):
            song_service.remove_song(queued.id, 9999, HOST, is_staff=True)

    def test_reorder(self, queued):
        ids = _song_ids(queued.id)
        reordered = song_service.reorder_songs(queued.id, list(reversed(ids)), HOST)
        assert [s.id for s in reordered] == list(reversed(ids))
        assert [s["title"] for s in song_service.list_songs(queued.id)] == ["Static", "Drift", "Sunrise"]

    @pytest.mark.parametrize("mutate", [
        lambda ids: ids[:-1],
        lambda ids: ids + [ids[0]],
        lambda ids: ids[:-1] + [424242],
    ])
    def test_reorder_must_be_permutation(self, queued, mutate):
        with pytest.raises(BadRequestError):
            song_service.reorder_songs(queued.id, mutate(_song_ids(queued.id)), HOST)


class TestSongVoting:
    def test_voting_closed_before_song_voting(self, queued):
        with pytest.raises(BadRequestError, match="not open"):
            song_service.vote_song(queued.id, _song_ids(queued.id)[0], BOB)

    def test_vote_and_unvote(self, queued, events):
        _advance_to(queued.id, "song-voting")
        song_id = _song_ids(queued.id)[0]

        song = song_service.vote_song(queued.id, song_id, BOB, weight=1.5)
        assert song.votes == 1
        assert song.weighted_votes == pytest.approx(1.5)
        assert participant_service.get_participant(queued.id, BOB).votes_cast == 1
        with pytest.raises(ConflictError):
            song_service.vote_song(queued.id, song_id, BOB)

        song = song_service.unvote_song(queued.id, song_id, BOB)
        assert song.votes == 0
        assert song.weighted_votes == pytest.approx(0.0)
        assert participant_service.get_participant(queued.id, BOB).votes_cast == 0
        assert events.names()[-1] == "session:songVoteRemoved"

    def test_banned_voter_cannot_withdraw(self, queued):
        _advance_to(queued.id, "song-voting")
        song_id = _song_ids(queued.id)[0]
        song_service.vote_song(queued.id, song_id, BOB)
        moderation_service.ban_user(queued.id, BOB, HOST, reason="spam")

        with pytest.raises(ForbiddenError, match="banned"):
            song_service.unvote_song(queued.id, song_id, BOB)
        assert song_service.list_songs(queued.id)[0]["votes"] == 1

    def test_removing_voted_song_reverses_vote_counters(self, queued, events):
        _advance_to(queued.id, "song-voting")
        ids = _song_ids(queued.id)
        song_service.vote_song(queued.id, ids[0], BOB)
        song_service.vote_song(queued.id, ids[0], HOST)
        song_service.vote_song(queued.id, ids[1], HOST)
        assert session_service.get_session(queued.id).total_votes == 3

        song_service.remove_song(queued.id, ids[0], HOST, is_staff=True)

        assert session_service.get_session(queued.id).total_votes == 1
        assert participant_service.get_participant(queued.id, BOB).votes_cast == 0
        assert participant_service.get_participant(queued.id, HOST).votes_cast == 1
        assert events.last("session:songRemoved")["song_id"] == ids[0]

    def test_unvote_without_vote(self, queued):
        _advance_to(queued.id, "song-voting")
        with pytest.raises(NotFoundError):
            song_service.unvote_song(queued.id, _song_ids(queued.id)[0], BOB)

    def test_results_rank_and_winner(self, queued):
        _advance_to(queued.id, "song-voting")
        ids = _song_ids(queued.id)
        song_service.vote_song(queued.id, ids[2], ALICE)
        song_service.vote_song(queued.id, ids[2], BOB)
        song_service.vote_song(queued.id, ids[1], HOST, weight=1.2)

        results = song_service.get_song_results(queued.id, viewer_id=ALICE)
        assert [r["title"] for r in results["results"]] == ["Static", "Drift", "Sunrise"]
        assert results["results"][0]["has_voted"] is True
        assert results["total_votes"] == 3
        assert not results["voting_complete"]

        session_service.advance_stage(queued.id, HOST)
        results = song_service.get_song_results(queued.id)
        assert results["voting_complete"]
        assert results["results"][0]["is_winner"] is True
        assert results["results"][1]["is_winner"] is False


class TestFeedbackAndStats:
    def test_feedback_overwrites(self, live_session):
        session_service.submit_feedback(live_session.id, ALICE, 3, "ok")
        feedback = session_service.submit_feedback(live_session.id, ALICE, 5, "great")
        assert feedback.rating == 5
        assert feedback.comment == "great"
        stats = session_service.get_session_stats(live_session.id)
        assert stats["feedback"]["total"] == 1
        assert stats["feedback"]["average_rating"] == 5.0
        assert stats["feedback"]["ratings"]["5"] == 1

    @pytest.mark.parametrize("rating", [0, 6, "five", None])
    def test_rating_range(self, live_session, rating):
        with pytest.raises(BadRequestError, match="Rating"):
            session_service.submit_feedback(live_session.id, ALICE, rating)

    def test_feedback_refused_in_draft(self, draft_session):
        with pytest.raises(BadRequestError, match="not started"):
            session_service.submit_feedback(draft_session.id, ALICE, 4)

    def test_stats(self, live_session):
        element_service.create_options(live_session.id, HOST, [
            {"element_type": "bpm", "option_id": "bpm-90", "label": "90"},
        ])
        element_service.vote_option(live_session.id, "bpm-90", ALICE)
        element_service.vote_option(live_session.id, "bpm-90", BOB)
        session_service.submit_feedback(live_session.id, BOB, 4)
        session_service.end_session(live_session.id, HOST)

        stats = session_service.get_session_stats(live_session.id)
        assert stats["participants"] == {"total": 3, "active": 0, "peak": 3}
        assert stats["votes"]["total"] == 2
        assert stats["votes"]["element_votes"] == 2
        assert stats["votes"]["unique_voters"] == 2
        assert stats["status"] == "completed"
        assert stats["stage"] == 6
        assert stats["duration_minutes"] == 0
