"""
CrowdBeat Session Core
Moderation blueprint: bans, mutes, kicks and session moderator roles.

Endpoints summary:
    BAN      /api/v1/sessions/<id>/ban/<user_id>        POST
             /api/v1/sessions/<id>/unban/<user_id>      POST
             /api/v1/sessions/<id>/banned               GET

    MUTE     /api/v1/sessions/<id>/mute/<user_id>       POST
             /api/v1/sessions/<id>/unmute/<user_id>     POST
             /api/v1/sessions/<id>/muted                GET

    MEMBERS  /api/v1/sessions/<id>/kick/<user_id>       POST
             /api/v1/sessions/<id>/promote/<user_id>    POST
             /api/v1/sessions/<id>/demote/<user_id>     POST

Ban and mute bodies accept ``reason``, ``duration_ms`` (omit for permanent)
and ``target_role`` (the target's platform role, when the caller knows it).
"""

import logging

from flask import Blueprint, g, jsonify

from crowdbeat.blueprints import caller_permissions, flag_arg, json_body, require_user
from crowdbeat.services import moderation_service, participant_service, session_service
from crowdbeat.services.permission import require

logger = logging.getLogger(__name__)

moderation_bp = Blueprint("moderation", __name__, url_prefix="/api/v1")


def _staff_session(session_id, capability, message):
    """Return ``(session, actor_id, None)`` or ``(None, None, error)``."""
    user_id, err = require_user()
    if err:
        return None, None, err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), capability, message)
    return session, user_id, None


# ── Bans ─────────────────────────────────────────────────────────────────────

@moderation_bp.route("/sessions/<session_id>/ban/<user_id>", methods=["POST"])
def ban_user(session_id, user_id):
    session, actor_id, err = _staff_session(session_id, "can_ban", "Only the host or a moderator can ban users")
    if err:
        return err
    data = json_body()
    ban = moderation_service.ban_user(
        session.id,
        user_id,
        actor_id,
        reason=data.get("reason"),
        duration_ms=data.get("duration_ms"),
        actor_role=g.user_role,
        target_role=data.get("target_role"),
    )
    return jsonify(ban.to_dict()), 201


@moderation_bp.route("/sessions/<session_id>/unban/<user_id>", methods=["POST"])
def unban_user(session_id, user_id):
    session, actor_id, err = _staff_session(session_id, "can_ban", "Only the host or a moderator can unban users")
    if err:
        return err
    moderation_service.unban_user(session.id, user_id, actor_id)
    return jsonify({"message": "User unbanned", "user_id": user_id})


@moderation_bp.route("/sessions/<session_id>/banned", methods=["GET"])
def list_banned(session_id):
    session, _, err = _staff_session(session_id, "can_ban", "Only the host or a moderator can view bans")
    if err:
        return err
    bans = moderation_service.list_banned(session.id, include_expired=flag_arg("include_expired"))
    return jsonify({"items": bans, "total": len(bans)})


# ── Mutes ────────────────────────────────────────────────────────────────────

@moderation_bp.route("/sessions/<session_id>/mute/<user_id>", methods=["POST"])
def mute_user(session_id, user_id):
    session, actor_id, err = _staff_session(session_id, "can_ban", "Only the host or a moderator can mute users")
    if err:
        return err
    data = json_body()
    mute = moderation_service.mute_user(
        session.id,
        user_id,
        actor_id,
        reason=data.get("reason"),
        duration_ms=data.get("duration_ms"),
        actor_role=g.user_role,
        target_role=data.get("target_role"),
    )
    return jsonify(mute.to_dict()), 201


@moderation_bp.route("/sessions/<session_id>/unmute/<user_id>", methods=["POST"])
def unmute_user(session_id, user_id):
    session, actor_id, err = _staff_session(session_id, "can_ban", "Only the host or a moderator can unmute users")
    if err:
        return err
    moderation_service.unmute_user(session.id, user_id, actor_id)
    return jsonify({"message": "User unmuted", "user_id": user_id})


@moderation_bp.route("/sessions/<session_id>/muted", methods=["GET"])
def list_muted(session_id):
    session, _, err = _staff_session(session_id, "can_ban", "Only the host or a moderator can view mutes")
    if err:
        return err
    mutes = moderation_service.list_muted(session.id, include_expired=flag_arg("include_expired"))
    return jsonify({"items": mutes, "total": len(mutes)})


# ── Participants ─────────────────────────────────────────────────────────────

@moderation_bp.route("/sessions/<session_id>/kick/<user_id>", methods=["POST"])
def kick_participant(session_id, user_id):
    session, actor_id, err = _staff_session(session_id, "can_kick", "Only the host or a moderator can kick users")
    if err:
        return err
    participant = participant_service.kick_participant(
        session.id, user_id, actor_id, reason=json_body().get("reason"),
    )
    return jsonify(participant.to_dict())


@moderation_bp.route("/sessions/<session_id>/promote/<user_id>", methods=["POST"])
def promote(session_id, user_id):
    session, actor_id, err = _staff_session(session_id, "can_promote", "Only the host can promote moderators")
    if err:
        return err
    participant = participant_service.promote_to_moderator(session.id, user_id, actor_id)
    return jsonify(participant.to_dict())


@moderation_bp.route("/sessions/<session_id>/demote/<user_id>", methods=["POST"])
def demote(session_id, user_id):
    session, actor_id, err = _staff_session(session_id, "can_promote", "Only the host can demote moderators")
    if err:
        return err
    participant = participant_service.demote_to_participant(session.id, user_id, actor_id)
    return jsonify(participant.to_dict())
