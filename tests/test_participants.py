"""
CrowdBeat Session Core
Tests — participant registry.
"""

import pytest

from conftest import ALICE, BOB, HOST, make_session
from crowdbeat.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from crowdbeat.models import db
from crowdbeat.services import participant_service, session_service


class TestJoin:
    def test_join_creates_participant(self, draft_session, events):
        result = participant_service.join_session(draft_session.id, ALICE)
        assert result.created and not result.rejoined
        assert result.participant.role == "participant"
        assert result.participant.is_active

        session = session_service.get_session(draft_session.id)
        assert session.total_participants == 2
        assert session.peak_concurrent_users == 2
        assert events.last("session:participantJoined")["participant_count"] == 2

    def test_join_twice_is_noop(self, live_session, events):
        result = participant_service.join_session(live_session.id, ALICE)
        assert not result.changed
        assert session_service.get_session(live_session.id).total_participants == 3
        assert "session:participantJoined" not in events.names()

    def test_rejoin_reactivates_same_row(self, live_session):
        first = participant_service.get_participant(live_session.id, BOB)
        participant_service.leave_session(live_session.id, BOB)
        result = participant_service.join_session(live_session.id, BOB)
        assert result.rejoined
        assert result.participant.id == first.id
        assert result.participant.left_at is None
        # Rejoining is not a new participant
        assert session_service.get_session(live_session.id).total_participants == 3

    def test_full_session(self):
        session = make_session(max_participants=2)
        participant_service.join_session(session.id, ALICE)
        with pytest.raises(BadRequestError, match="Session is full"):
            participant_service.join_session(session.id, BOB)

    def test_left_participant_frees_a_slot(self):
        session = make_session(max_participants=2)
        participant_service.join_session(session.id, ALICE)
        participant_service.leave_session(session.id, ALICE)
        assert participant_service.join_session(session.id, BOB).created

    def test_terminal_sessions_refuse_joins(self, live_session):
        session_service.cancel_session(live_session.id, HOST)
        with pytest.raises(BadRequestError, match="cancelled"):
            participant_service.join_session(live_session.id, "carol")

    def test_completed_session_refuses_joins(self, live_session):
        session_service.end_session(live_session.id, HOST)
        with pytest.raises(BadRequestError, match="ended"):
            participant_service.join_session(live_session.id, ALICE)

    def test_invalid_role(self, draft_session):
        with pytest.raises(BadRequestError):
            participant_service.join_session(draft_session.id, ALICE, role="dj")

    def test_unknown_session(self):
        with pytest.raises(NotFoundError):
            participant_service.join_session("missing", ALICE)

    def test_peak_never_lowers(self, live_session):
        participant_service.leave_session(live_session.id, ALICE)
        participant_service.leave_session(live_session.id, BOB)
        assert session_service.get_session(live_session.id).peak_concurrent_users == 3


class TestLeaveAndKick:
    def test_host_cannot_leave(self, live_session):
        with pytest.raises(BadRequestError, match="Host cannot leave"):
            participant_service.leave_session(live_session.id, HOST)

    def test_leave_when_not_participant(self, live_session):
        with pytest.raises(NotFoundError):
            participant_service.leave_session(live_session.id, "carol")

    def test_kick_records_metadata(self, live_session, events):
        participant = participant_service.kick_participant(live_session.id, BOB, HOST, reason="off-topic")
        assert not participant.is_active
        assert participant.kicked_by == HOST
        assert participant.kick_reason == "off-topic"
        assert participant.kicked_at is not None
        assert events.last("session:participantKicked")["user_id"] == BOB

    def test_cannot_kick_self_or_host(self, live_session):
        with pytest.raises(BadRequestError):
            participant_service.kick_participant(live_session.id, HOST, HOST)
        participant_service.promote_to_moderator(live_session.id, ALICE, HOST)
        with pytest.raises(ForbiddenError):
            participant_service.kick_participant(live_session.id, HOST, ALICE)

    def test_kick_inactive(self, live_session):
        participant_service.leave_session(live_session.id, BOB)
        with pytest.raises(NotFoundError):
            participant_service.kick_participant(live_session.id, BOB, HOST)


class TestRoles:
    def test_promote_and_demote(self, live_session):
        assert participant_service.promote_to_moderator(live_session.id, ALICE, HOST).role == "moderator"
        with pytest.raises(ConflictError):
            participant_service.promote_to_moderator(live_session.id, ALICE, HOST)
        assert participant_service.demote_to_participant(live_session.id, ALICE, HOST).role == "participant"
        with pytest.raises(BadRequestError):
            participant_service.demote_to_participant(live_session.id, ALICE, HOST)

    def test_host_role_never_changes(self, live_session):
        with pytest.raises(ForbiddenError):
            participant_service.promote_to_moderator(live_session.id, HOST, HOST)
        with pytest.raises(ForbiddenError):
            participant_service.demote_to_participant(live_session.id, HOST, HOST)

    def test_list_participants(self, live_session):
        participant_service.leave_session(live_session.id, BOB)
        active = participant_service.list_participants(live_session.id)
        assert [p.user_id for p in active] == [HOST, ALICE]
        everyone = participant_service.list_participants(live_session.id, active_only=False)
        assert len(everyone) == 3


class TestCounters:
    def test_record_vote_and_submission(self, live_session):
        participant_service.record_vote(live_session.id, ALICE, 1)
        participant_service.record_vote(live_session.id, ALICE, 1)
        participant_service.record_submission(live_session.id, ALICE, 1)
        db.session.commit()

        alice = participant_service.get_participant(live_session.id, ALICE)
        assert alice.votes_cast == 2
        assert alice.submissions_made == 1
        session = session_service.get_session(live_session.id)
        assert session.total_votes == 2
        assert session.total_submissions == 1
