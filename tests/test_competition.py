"""
CrowdBeat Session Core
Tests — competition engine and competition workflows.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import ALICE, BOB, HOST
from crowdbeat.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
)
from crowdbeat.integrations.identity_gateway import GatewayResult
from crowdbeat.services import competition_service, moderation_service, participant_service, session_service

CAROL = "carol"


class FakeGateway:
    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    def award_reputation(self, user_id, points, reason):
        self.calls.append((user_id, points, reason))
        if self.ok:
            return GatewayResult(True, 200, {"awarded": points}, None)
        return GatewayResult(False, 503, None, "identity service unavailable")


@pytest.fixture()
def competition(live_session, in_future):
    return competition_service.create_competition(live_session.id, HOST, {
        "element_type": "snare",
        "title": "Best snare",
        "submission_deadline": in_future(2),
        "max_submissions_per_user": 2,
    })


@pytest.fixture()
def voting(competition):
    """A competition in voting with entries from ALICE (0) and BOB (1)."""
    competition_service.submit_entry(competition.id, ALICE, {"audio_url": "https://cdn/a.wav"})
    competition_service.submit_entry(competition.id, BOB, {"audio_url": "https://cdn/b.wav"})
    competition_service.start_voting(competition.id, HOST)
    return competition_service.get_competition(competition.id)


def _later(hours):
    return datetime.now(timezone.utc) + timedelta(hours=hours)


# ═════════════════════════════════════════════════════════════════════════════
# Creation & lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_defaults(self, competition):
        assert competition.status == "open"
        assert competition.prize == {"reputation_points": 50}
        assert competition.max_submissions_per_user == 2
        assert competition.total_submissions == 0

    def test_draft_then_open(self, live_session, in_future):
        comp = competition_service.create_competition(live_session.id, HOST, {
            "element_type": "bass", "title": "Bassline", "submission_deadline": in_future(1),
            "status": "draft",
        })
        assert comp.status == "draft"
        assert competition_service.open_competition(comp.id, HOST).status == "open"
        with pytest.raises(InvalidTransitionError):
            competition_service.open_competition(comp.id, HOST)

    @pytest.mark.parametrize("patch,message", [
        ({"element_type": "bpm"}, "element_type"),
        ({"title": "  "}, "title"),
        ({"submission_deadline": None}, "submission_deadline"),
        ({"submission_deadline": "2001-01-01T00:00:00+00:00"}, "future"),
        ({"max_submissions_per_user": -1}, "at least 1"),
    ])
    def test_validation(self, live_session, in_future, patch, message):
        data = {"element_type": "snare", "title": "Snare", "submission_deadline": in_future(1)}
        data.update(patch)
        with pytest.raises(BadRequestError, match=message):
            competition_service.create_competition(live_session.id, HOST, data)

    def test_voting_deadline_after_submission(self, live_session, in_future):
        with pytest.raises(BadRequestError, match="after"):
            competition_service.create_competition(live_session.id, HOST, {
                "element_type": "snare", "title": "Snare",
                "submission_deadline": in_future(3), "voting_deadline": in_future(2),
            })

    def test_not_in_terminal_session(self, live_session, in_future):
        session_service.end_session(live_session.id, HOST)
        with pytest.raises(BadRequestError):
            competition_service.create_competition(live_session.id, HOST, {
                "element_type": "snare", "title": "Snare", "submission_deadline": in_future(1),
            })

    def test_cancel_is_terminal(self, competition, events):
        competition_service.cancel_competition(competition.id, HOST)
        assert competition_service.get_competition(competition.id).status == "cancelled"
        assert "competition:cancelled" in events.names()
        with pytest.raises(InvalidTransitionError):
            competition_service.cancel_competition(competition.id, HOST)

    def test_list_filters(self, live_session, competition, in_future):
        competition_service.create_competition(live_session.id, HOST, {
            "element_type": "bass", "title": "Bass", "submission_deadline": in_future(1), "status": "draft",
        })
        assert len(competition_service.list_competitions(live_session.id)) == 2
        assert [c.element_type for c in competition_service.list_competitions(live_session.id, status="open")] == ["snare"]
        assert len(competition_service.list_competitions(live_session.id, status="open,draft")) == 2
        assert [c.id for c in competition_service.get_active_competitions(live_session.id)] == [competition.id]


# ═════════════════════════════════════════════════════════════════════════════
# Submissions
# ═════════════════════════════════════════════════════════════════════════════


class TestSubmissions:
    def test_submit_updates_stats(self, competition, events):
        first = competition_service.submit_entry(competition.id, ALICE, {"audio_url": "https://cdn/1.wav"})
        second = competition_service.submit_entry(competition.id, ALICE, {"audio_url": "https://cdn/2.wav"})
        competition_service.submit_entry(competition.id, BOB, {"audio_url": "https://cdn/3.wav"})
        assert (first.index, second.index) == (0, 1)

        comp = competition_service.get_competition(competition.id)
        assert comp.total_submissions == 3
        assert comp.unique_participants == 2
        assert participant_service.get_participant(competition.session_id, ALICE).submissions_made == 2
        assert events.last("competition:submissionAdded")["unique_participants"] == 2

    def test_submission_cap(self, competition):
        competition_service.submit_entry(competition.id, ALICE, {"audio_url": "a"})
        competition_service.submit_entry(competition.id, ALICE, {"audio_url": "b"})
        check = competition_service.can_submit(competition_service.get_competition(competition.id), ALICE)
        assert not check.allowed
        assert check.reason == "Maximum submissions reached"
        with pytest.raises(BadRequestError, match="Maximum"):
            competition_service.submit_entry(competition.id, ALICE, {"audio_url": "c"})

    def test_deadline_passed(self, competition):
        check = competition_service.can_submit(competition, ALICE, now=_later(3))
        assert check.reason == "Submission deadline has passed"
        with pytest.raises(BadRequestError, match="deadline"):
            competition_service.submit_entry(competition.id, ALICE, {"audio_url": "a"}, now=_later(3))

    def test_audio_required(self, competition):
        with pytest.raises(BadRequestError, match="audio_url"):
            competition_service.submit_entry(competition.id, ALICE, {})

    def test_not_open(self, voting):
        check = competition_service.can_submit(voting, CAROL)
        assert check.reason == "Competition is not open for submissions"

    def test_cancelled_reason(self, competition):
        comp = competition_service.cancel_competition(competition.id, HOST)
        assert competition_service.can_submit(comp, ALICE).reason == "Competition has been cancelled"

    def test_banned_user_refused(self, competition):
        moderation_service.ban_user(competition.session_id, BOB, HOST)
        with pytest.raises(ForbiddenError):
            competition_service.submit_entry(competition.id, BOB, {"audio_url": "a"})


# ═════════════════════════════════════════════════════════════════════════════
# Voting
# ═════════════════════════════════════════════════════════════════════════════


class TestVoting:
    def test_start_voting_default_deadline(self, competition):
        before = datetime.now(timezone.utc)
        comp = competition_service.start_voting(competition.id, HOST)
        assert comp.status == "voting"
        deadline = comp.voting_deadline
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        assert deadline >= before + timedelta(hours=47)

    def test_start_voting_requires_open(self, voting):
        with pytest.raises(BadRequestError, match="must be open"):
            competition_service.start_voting(voting.id, HOST)

    def test_weighted_vote(self, voting, events):
        submission = competition_service.vote_entry(voting.id, 0, CAROL, weight=1.4)
        assert submission.votes == 1
        assert submission.weighted_votes == pytest.approx(1.4)
        assert competition_service.get_competition(voting.id).total_votes == 1
        assert events.last("competition:voted")["index"] == 0

    def test_self_vote_forbidden(self, voting):
        with pytest.raises(ForbiddenError, match="own submission"):
            competition_service.vote_entry(voting.id, 0, ALICE)

    def test_repeat_vote_conflicts(self, voting):
        competition_service.vote_entry(voting.id, 1, ALICE)
        with pytest.raises(ConflictError):
            competition_service.vote_entry(voting.id, 1, ALICE)
        assert competition_service.get_competition(voting.id).submission_at(1).votes == 1

    def test_unknown_index(self, voting):
        with pytest.raises(NotFoundError):
            competition_service.vote_entry(voting.id, 9, CAROL)
        with pytest.raises(BadRequestError):
            competition_service.vote_entry(voting.id, "first", CAROL)

    def test_voting_not_open(self, competition):
        competition_service.submit_entry(competition.id, ALICE, {"audio_url": "a"})
        with pytest.raises(BadRequestError, match="Voting is not open"):
            competition_service.vote_entry(competition.id, 0, BOB)

    def test_voting_deadline_passed(self, voting):
        with pytest.raises(BadRequestError, match="deadline"):
            competition_service.vote_entry(voting.id, 0, CAROL, now=_later(72))


# ═════════════════════════════════════════════════════════════════════════════
# Winner determination & close
# ═════════════════════════════════════════════════════════════════════════════


class TestClose:
    def test_weighted_votes_decide(self, voting):
        competition_service.vote_entry(voting.id, 0, CAROL, weight=1.0)
        competition_service.vote_entry(voting.id, 0, HOST, weight=1.0)
        competition_service.vote_entry(voting.id, 1, "dave", weight=3.0)
        gateway = FakeGateway()

        result = competition_service.close_competition(voting.id, HOST, gateway=gateway)
        assert result["winner"].user_id == BOB
        assert result["prize_awarded"] is True
        assert gateway.calls == [(BOB, 50, "Won competition 'Best snare'")]

        comp = competition_service.get_competition(voting.id)
        assert comp.status == "closed"
        assert comp.winner_id == BOB
        assert comp.winning_submission_index == 1
        assert comp.closed_at is not None
        assert comp.submission_at(1).status == "winner"
        assert comp.submission_at(0).status == "runnerUp"

    def test_tie_on_weight_falls_back_to_votes(self, voting):
        competition_service.vote_entry(voting.id, 0, CAROL, weight=2.0)
        competition_service.vote_entry(voting.id, 1, HOST, weight=1.0)
        competition_service.vote_entry(voting.id, 1, "dave", weight=1.0)
        result = competition_service.close_competition(voting.id, HOST, gateway=FakeGateway())
        assert result["winner"].index == 1

    def test_full_tie_goes_to_earlier_entry(self, voting):
        result = competition_service.close_competition(voting.id, HOST, gateway=FakeGateway())
        assert result["winner"].index == 0

    def test_second_close_conflicts(self, voting):
        competition_service.close_competition(voting.id, HOST, gateway=FakeGateway())
        with pytest.raises(ConflictError, match="already closed"):
            competition_service.close_competition(voting.id, HOST, gateway=FakeGateway())

    def test_close_requires_voting(self, competition):
        competition_service.submit_entry(competition.id, ALICE, {"audio_url": "a"})
        with pytest.raises(InvalidTransitionError):
            competition_service.close_competition(competition.id, HOST, gateway=FakeGateway())

    def test_close_without_submissions(self, competition):
        competition_service.start_voting(competition.id, HOST)
        with pytest.raises(BadRequestError, match="No submissions"):
            competition_service.close_competition(competition.id, HOST, gateway=FakeGateway())
        assert competition_service.get_competition(competition.id).status == "voting"

    def test_failed_award_keeps_competition_closed(self, voting, events):
        result = competition_service.close_competition(voting.id, HOST, gateway=FakeGateway(ok=False))
        assert result["prize_awarded"] is False
        assert result["award_error"] == "identity service unavailable"
        assert competition_service.get_competition(voting.id).status == "closed"
        assert events.last("competition:closed")["prize_awarded"] is False

    def test_no_prize_skips_gateway(self, live_session, in_future):
        comp = competition_service.create_competition(live_session.id, HOST, {
            "element_type": "kick", "title": "Kick", "submission_deadline": in_future(1),
            "prize": {"reputation_points": 0},
        })
        competition_service.submit_entry(comp.id, ALICE, {"audio_url": "a"})
        competition_service.start_voting(comp.id, HOST)
        gateway = FakeGateway()
        result = competition_service.close_competition(comp.id, HOST, gateway=gateway)
        assert gateway.calls == []
        assert result["prize_awarded"] is False

    def test_ranked_results(self, voting):
        competition_service.vote_entry(voting.id, 1, CAROL)
        results = competition_service.get_ranked_results(voting.id)["results"]
        assert [(r["index"], r["rank"], r["is_winner"]) for r in results] == [(1, 1, False), (0, 2, False)]

        competition_service.close_competition(voting.id, HOST, gateway=FakeGateway())
        results = competition_service.get_ranked_results(voting.id)["results"]
        assert results[0]["is_winner"] is True
