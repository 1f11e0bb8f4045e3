"""
CrowdBeat Session Core
Tests — permission resolution, gate predicates and reputation weighting.
"""

import pytest

from conftest import ALICE, BOB, HOST, make_session
from crowdbeat.core.exceptions import BadRequestError, ForbiddenError
from crowdbeat.services import moderation_service, participant_service, session_service
from crowdbeat.services.permission import (
    PermissionCheck,
    can_create_session,
    require,
    resolve_permissions,
)
from crowdbeat.services.reputation import reputation_level, vote_weight, weight_breakdown


# ═════════════════════════════════════════════════════════════════════════════
# resolve_permissions
# ═════════════════════════════════════════════════════════════════════════════


class TestResolvePermissions:
    def test_anonymous_gets_nothing(self, live_session):
        perms = resolve_permissions(live_session, None)
        assert perms.user_id is None
        assert not any(v for k, v in perms.to_dict().items() if k.startswith("can_"))

    def test_host_capabilities(self, live_session):
        perms = resolve_permissions(live_session, HOST)
        assert perms.is_host and perms.is_staff
        assert perms.session_role == "host"
        for capability in ("can_edit", "can_delete", "can_advance", "can_kick", "can_ban",
                           "can_promote", "can_manage_elements", "can_manage_competitions",
                           "can_view_stats"):
            assert getattr(perms, capability), capability

    def test_plain_participant(self, live_session):
        perms = resolve_permissions(live_session, ALICE)
        assert perms.is_participant and not perms.is_staff
        assert perms.can_vote and perms.can_add_song
        assert not perms.can_advance
        assert not perms.can_kick
        assert not perms.can_submit_options

    def test_session_moderator_is_staff_but_cannot_promote(self, live_session):
        participant_service.promote_to_moderator(live_session.id, ALICE, HOST)
        session = session_service.get_session(live_session.id)
        perms = resolve_permissions(session, ALICE)
        assert perms.is_moderator and perms.can_ban and perms.can_advance
        assert not perms.can_promote
        assert not perms.can_delete
        assert not perms.can_manage_competitions

    def test_platform_admin(self, live_session):
        perms = resolve_permissions(live_session, "root", platform_role="admin")
        assert perms.can_delete and perms.can_promote and perms.can_manage_competitions
        assert perms.can_submit_options

    def test_platform_moderator_manages_elements(self, live_session):
        perms = resolve_permissions(live_session, "mod", platform_role="moderator")
        assert perms.can_manage_elements
        assert not perms.can_manage_competitions

    def test_technical_user_submits(self, live_session):
        perms = resolve_permissions(live_session, BOB, user_type="technical")
        assert perms.can_submit_options and perms.can_submit_to_competitions

    def test_muted_technical_user_cannot_submit_options(self, live_session):
        moderation_service.mute_user(live_session.id, BOB, HOST)
        session = session_service.get_session(live_session.id)
        perms = resolve_permissions(session, BOB, user_type="technical")
        assert perms.is_muted
        assert not perms.can_submit_options
        assert perms.can_submit_to_competitions
        assert perms.can_vote

    def test_banned_user_loses_participation(self, live_session):
        moderation_service.ban_user(live_session.id, BOB, HOST)
        session = session_service.get_session(live_session.id)
        perms = resolve_permissions(session, BOB, user_type="technical")
        assert perms.is_banned and not perms.is_participant
        assert not perms.can_vote
        assert not perms.can_add_song
        assert not perms.can_submit_to_competitions

    def test_song_requests_disabled(self):
        session = make_session(settings={"allow_song_requests": False})
        assert not resolve_permissions(session, ALICE).can_add_song
        assert resolve_permissions(session, HOST).can_add_song

    def test_require_raises_forbidden(self, live_session):
        perms = resolve_permissions(live_session, ALICE)
        with pytest.raises(ForbiddenError, match="nope"):
            require(perms, "can_kick", "nope")
        require(perms, "can_vote", "never raised")


class TestCanCreateSession:
    @pytest.mark.parametrize("role,allowed", [
        ("user", False),
        (None, False),
        ("creator", True),
        ("moderator", True),
        ("admin", True),
    ])
    def test_roles(self, role, allowed):
        assert can_create_session(role) is allowed


# ═════════════════════════════════════════════════════════════════════════════
# Gate predicates
# ═════════════════════════════════════════════════════════════════════════════


class TestGates:
    def test_permission_check_kinds(self):
        with pytest.raises(BadRequestError):
            PermissionCheck.deny("closed").raise_if_denied()
        with pytest.raises(ForbiddenError):
            PermissionCheck.forbid("banned").raise_if_denied()
        PermissionCheck.ok().raise_if_denied()
        assert PermissionCheck.deny("closed").to_dict() == {"allowed": False, "reason": "closed"}

    def test_element_voting_open_while_active(self, live_session):
        assert session_service.can_vote_on_elements(live_session, ALICE).allowed

    def test_element_voting_closed_in_draft(self, draft_session):
        check = session_service.can_vote_on_elements(draft_session, ALICE)
        assert not check.allowed and check.kind == "bad_request"

    def test_element_voting_closed_when_paused(self, live_session):
        session = session_service.pause_session(live_session.id, HOST)
        check = session_service.can_vote_on_elements(session, ALICE)
        assert check.reason == "Session is paused"

    def test_song_vote_needs_voting_stage(self, live_session):
        assert not session_service.can_vote(live_session, ALICE).allowed

    def test_banned_gate_is_forbidden(self, live_session):
        moderation_service.ban_user(live_session.id, BOB, HOST)
        session = session_service.get_session(live_session.id)
        check = session_service.can_vote_on_elements(session, BOB)
        assert check.kind == "forbidden"

    def test_feedback_after_completion(self, live_session):
        session = session_service.end_session(live_session.id, HOST)
        assert session_service.can_submit_feedback(session, ALICE).allowed

    def test_feedback_needs_started_session(self, draft_session):
        assert not session_service.can_submit_feedback(draft_session, ALICE).allowed

    def test_lyrics_gate_minimum_reputation(self):
        session = make_session(settings={"min_reputation_to_submit": 100})
        session_service.start_session(session.id, HOST)
        session = session_service.advance_stage(session.id, HOST)
        assert session.status == "lyrics-open"
        assert not session_service.can_submit_lyrics(session, ALICE, reputation=50).allowed
        assert session_service.can_submit_lyrics(session, ALICE, reputation=150).allowed


# ═════════════════════════════════════════════════════════════════════════════
# Reputation weighting
# ═════════════════════════════════════════════════════════════════════════════


class TestReputation:
    @pytest.mark.parametrize("score,weight", [
        (None, 1.0),
        (0, 1.0),
        (-300, 1.0),
        (250, 1.25),
        (1500, 2.5),
        (4000, 5.0),
        (99999, 5.0),
    ])
    def test_vote_weight(self, score, weight):
        assert vote_weight(score) == pytest.approx(weight)

    def test_levels(self):
        assert reputation_level(0) == "bronze"
        assert reputation_level(500) == "silver"
        assert reputation_level(2500) == "gold"
        assert reputation_level(10000) == "diamond"

    def test_breakdown(self):
        data = weight_breakdown(1500)
        assert data["base_weight"] == 1.0
        assert data["reputation_bonus"] == pytest.approx(1.5)
        assert data["total_weight"] == pytest.approx(2.5)
        assert data["level"] == "silver"
