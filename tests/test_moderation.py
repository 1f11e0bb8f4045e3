"""
CrowdBeat Session Core
Tests — moderation guard (bans and mutes).
"""

from datetime import timedelta

import pytest

from conftest import ALICE, BOB, HOST, NOW
from crowdbeat.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from crowdbeat.services import moderation_service, participant_service, session_service


class TestBans:
    def test_ban_cascades_into_participant_registry(self, live_session, events):
        ban = moderation_service.ban_user(live_session.id, BOB, HOST, reason="spam")
        assert ban.reason == "spam"
        assert ban.expires_at is None

        participant = participant_service.get_participant(live_session.id, BOB)
        assert participant.is_active is False
        assert participant.kicked_by == HOST
        assert participant.kick_reason == "spam"
        assert events.last("session:userBanned")["user_id"] == BOB

    def test_banned_user_cannot_rejoin(self, live_session):
        moderation_service.ban_user(live_session.id, BOB, HOST)
        with pytest.raises(ForbiddenError, match="banned"):
            participant_service.join_session(live_session.id, BOB)

    def test_temporary_ban_expires(self, live_session):
        moderation_service.ban_user(live_session.id, BOB, HOST, duration_ms=60_000, now=NOW)
        session = session_service.get_session(live_session.id)
        assert moderation_service.is_banned(session, BOB, now=NOW + timedelta(seconds=30))
        assert not moderation_service.is_banned(session, BOB, now=NOW + timedelta(minutes=2))

    def test_second_ban_replaces_first(self, live_session):
        moderation_service.ban_user(live_session.id, BOB, HOST, duration_ms=1000, now=NOW)
        moderation_service.ban_user(live_session.id, BOB, HOST, reason="again", now=NOW)
        bans = moderation_service.list_banned(live_session.id, now=NOW + timedelta(hours=1))
        assert len(bans) == 1
        assert bans[0]["reason"] == "again"
        assert bans[0]["expires_at"] is None

    def test_cannot_ban_self(self, live_session):
        with pytest.raises(BadRequestError, match="yourself"):
            moderation_service.ban_user(live_session.id, HOST, HOST)

    def test_cannot_ban_host(self, live_session):
        participant_service.promote_to_moderator(live_session.id, ALICE, HOST)
        with pytest.raises(ForbiddenError, match="host"):
            moderation_service.ban_user(live_session.id, HOST, ALICE)

    def test_only_admin_bans_platform_staff(self, live_session):
        with pytest.raises(ForbiddenError, match="admin"):
            moderation_service.ban_user(
                live_session.id, BOB, HOST, actor_role="creator", target_role="moderator",
            )
        ban = moderation_service.ban_user(
            live_session.id, BOB, "root", actor_role="admin", target_role="moderator",
        )
        assert ban.banned_by == "root"

    def test_invalid_duration(self, live_session):
        with pytest.raises(BadRequestError):
            moderation_service.ban_user(live_session.id, BOB, HOST, duration_ms=-5)

    def test_unban(self, live_session):
        moderation_service.ban_user(live_session.id, BOB, HOST)
        moderation_service.unban_user(live_session.id, BOB, HOST)
        assert moderation_service.list_banned(live_session.id) == []
        result = participant_service.join_session(live_session.id, BOB)
        assert result.rejoined

    def test_unban_unknown_user(self, live_session):
        with pytest.raises(NotFoundError):
            moderation_service.unban_user(live_session.id, "nobody", HOST)

    def test_expired_bans_listed_on_request(self, live_session):
        moderation_service.ban_user(live_session.id, BOB, HOST, duration_ms=1000, now=NOW)
        later = NOW + timedelta(minutes=5)
        assert moderation_service.list_banned(live_session.id, now=later) == []
        assert len(moderation_service.list_banned(live_session.id, include_expired=True, now=later)) == 1


class TestMutes:
    def test_mute_keeps_participation(self, live_session):
        moderation_service.mute_user(live_session.id, BOB, HOST, reason="caps")
        session = session_service.get_session(live_session.id)
        assert moderation_service.is_muted(session, BOB)
        assert participant_service.get_participant(live_session.id, BOB).is_active

    def test_unmute(self, live_session, events):
        moderation_service.mute_user(live_session.id, BOB, HOST)
        moderation_service.unmute_user(live_session.id, BOB, HOST)
        session = session_service.get_session(live_session.id)
        assert not moderation_service.is_muted(session, BOB)
        assert events.names()[-1] == "session:userUnmuted"

    def test_unmute_without_mute(self, live_session):
        with pytest.raises(NotFoundError, match="not muted"):
            moderation_service.unmute_user(live_session.id, BOB, HOST)

    def test_cannot_mute_host(self, live_session):
        with pytest.raises(ForbiddenError):
            moderation_service.mute_user(live_session.id, HOST, ALICE)

    def test_list_muted(self, live_session):
        moderation_service.mute_user(live_session.id, ALICE, HOST)
        moderation_service.mute_user(live_session.id, BOB, HOST, duration_ms=5_000)
        assert {m["user_id"] for m in moderation_service.list_muted(live_session.id)} == {ALICE, BOB}
