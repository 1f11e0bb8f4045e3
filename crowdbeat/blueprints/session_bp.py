"""
CrowdBeat Session Core
Session blueprint: session lifecycle, participation, feedback and the song queue.

Endpoints summary:
    SESSION  /api/v1/sessions                           GET, POST
             /api/v1/sessions/<id>                      GET, PUT
             /api/v1/sessions/code/<code>               GET
             /api/v1/sessions/<id>/advance              POST
             /api/v1/sessions/<id>/start                POST
             /api/v1/sessions/<id>/pause                POST
             /api/v1/sessions/<id>/resume               POST
             /api/v1/sessions/<id>/end                  POST
             /api/v1/sessions/<id>/cancel               POST

    MEMBERS  /api/v1/sessions/<id>/join                 POST
             /api/v1/sessions/<id>/leave                POST
             /api/v1/sessions/<id>/participants         GET
             /api/v1/sessions/<id>/permissions          GET

    FEEDBACK /api/v1/sessions/<id>/feedback             POST
             /api/v1/sessions/<id>/stats                GET

    SONGS    /api/v1/sessions/<id>/songs                GET, POST
             /api/v1/sessions/<id>/songs/<song_id>      DELETE
             /api/v1/sessions/<id>/songs/reorder        PUT
             /api/v1/sessions/<id>/songs/<song_id>/vote POST, DELETE
             /api/v1/sessions/<id>/songs/results        GET
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from crowdbeat.blueprints import (
    caller_permissions,
    caller_weight,
    flag_arg,
    json_body,
    paginate_query,
    require_user,
)
from crowdbeat.core.exceptions import ForbiddenError
from crowdbeat.services import lyrics_service, participant_service, session_service, song_service
from crowdbeat.services.permission import can_create_session, require
from crowdbeat.services.reputation import weight_breakdown

logger = logging.getLogger(__name__)

session_bp = Blueprint("sessions", __name__, url_prefix="/api/v1")

from crowdbeat import limiter  # noqa: E402
from crowdbeat.middleware.rate_limiter import feedback_limit, vote_limit  # noqa: E402


# ═══════════════════════════════════════════════════════════════════════════
#  SESSION CRUD
# ═══════════════════════════════════════════════════════════════════════════

@session_bp.route("/sessions", methods=["POST"])
def create_session():
    user_id, err = require_user()
    if err:
        return err
    if not can_create_session(g.user_role):
        raise ForbiddenError("Only creators, moderators and admins can create sessions")

    session = session_service.create_session(
        user_id,
        json_body(),
        default_max_participants=current_app.config.get("DEFAULT_MAX_PARTICIPANTS"),
    )
    return jsonify(session.to_dict()), 201


@session_bp.route("/sessions", methods=["GET"])
def list_sessions():
    query = session_service.list_sessions(
        status=request.args.get("status"),
        genre=request.args.get("genre"),
        visibility=request.args.get("visibility"),
        host_id=request.args.get("host_id"),
        search=request.args.get("search"),
    )
    sessions, total = paginate_query(query)
    return jsonify({"items": [s.to_dict() for s in sessions], "total": total})


@session_bp.route("/sessions/<session_id>", methods=["GET"])
def get_session(session_id):
    session = session_service.get_session(session_id)
    return jsonify(session.to_dict(include_children=flag_arg("include_children")))


@session_bp.route("/sessions/code/<code>", methods=["GET"])
def get_session_by_code(code):
    session = session_service.get_session_by_code(code)
    return jsonify(session.to_dict())


@session_bp.route("/sessions/<session_id>", methods=["PUT"])
def update_session(session_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_edit", "Only the host or a moderator can edit this session")

    session = session_service.update_session(session.id, user_id, json_body())
    return jsonify(session.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  STAGE TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════════

def _transition(session_id, capability, message, action):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), capability, message)
    session = action(session.id, user_id)
    return jsonify(session.to_dict())


@session_bp.route("/sessions/<session_id>/advance", methods=["POST"])
def advance_stage(session_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_advance", "Only the host or a moderator can advance the stage")

    previous = session.status
    session = session_service.advance_stage(session.id, user_id)
    body = session.to_dict()
    if previous == "lyrics-voting":
        body["lyrics_prize_awarded"] = lyrics_service.award_winner_prize(session.id)
    return jsonify(body)


@session_bp.route("/sessions/<session_id>/start", methods=["POST"])
def start_session(session_id):
    return _transition(
        session_id, "can_advance",
        "Only the host or a moderator can start the session",
        session_service.start_session,
    )


@session_bp.route("/sessions/<session_id>/pause", methods=["POST"])
def pause_session(session_id):
    return _transition(
        session_id, "can_advance",
        "Only the host or a moderator can pause the session",
        session_service.pause_session,
    )


@session_bp.route("/sessions/<session_id>/resume", methods=["POST"])
def resume_session(session_id):
    return _transition(
        session_id, "can_advance",
        "Only the host or a moderator can resume the session",
        session_service.resume_session,
    )


@session_bp.route("/sessions/<session_id>/end", methods=["POST"])
def end_session(session_id):
    return _transition(
        session_id, "can_advance",
        "Only the host or a moderator can end the session",
        session_service.end_session,
    )


@session_bp.route("/sessions/<session_id>/cancel", methods=["POST"])
def cancel_session(session_id):
    return _transition(
        session_id, "can_delete",
        "Only the host can cancel the session",
        session_service.cancel_session,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  PARTICIPATION
# ═══════════════════════════════════════════════════════════════════════════

@session_bp.route("/sessions/<session_id>/join", methods=["POST"])
def join_session(session_id):
    user_id, err = require_user()
    if err:
        return err
    result = participant_service.join_session(session_id, user_id)
    body = {
        "participant": result.participant.to_dict(),
        "created": result.created,
        "rejoined": result.rejoined,
    }
    return jsonify(body), 201 if result.created else 200


@session_bp.route("/sessions/<session_id>/leave", methods=["POST"])
def leave_session(session_id):
    user_id, err = require_user()
    if err:
        return err
    participant = participant_service.leave_session(session_id, user_id)
    return jsonify(participant.to_dict())


@session_bp.route("/sessions/<session_id>/participants", methods=["GET"])
def list_participants(session_id):
    participants = participant_service.list_participants(
        session_id, active_only=not flag_arg("include_inactive"),
    )
    return jsonify({"items": [p.to_dict() for p in participants], "total": len(participants)})


@session_bp.route("/sessions/<session_id>/permissions", methods=["GET"])
def get_permissions(session_id):
    session = session_service.get_session(session_id)
    body = caller_permissions(session).to_dict()
    body["vote_weight"] = weight_breakdown(g.user_reputation)
    return jsonify(body)


# ═══════════════════════════════════════════════════════════════════════════
#  FEEDBACK & STATS
# ═══════════════════════════════════════════════════════════════════════════

@session_bp.route("/sessions/<session_id>/feedback", methods=["POST"])
@feedback_limit(limiter)
def submit_feedback(session_id):
    user_id, err = require_user()
    if err:
        return err
    data = json_body()
    feedback = session_service.submit_feedback(
        session_id, user_id, data.get("rating"), comment=data.get("comment"),
    )
    return jsonify(feedback.to_dict()), 201


@session_bp.route("/sessions/<session_id>/stats", methods=["GET"])
def get_stats(session_id):
    _, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_view_stats", "Only the host or a moderator can view stats")
    return jsonify(session_service.get_session_stats(session.id))


# ═══════════════════════════════════════════════════════════════════════════
#  SONG QUEUE
# ═══════════════════════════════════════════════════════════════════════════

@session_bp.route("/sessions/<session_id>/songs", methods=["GET"])
def list_songs(session_id):
    songs = song_service.list_songs(session_id, viewer_id=g.user_id)
    return jsonify({"items": songs, "total": len(songs)})


@session_bp.route("/sessions/<session_id>/songs", methods=["POST"])
def add_song(session_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    perms = caller_permissions(session)
    require(perms, "can_add_song", "Song requests are disabled for this session")

    song = song_service.add_song(session.id, user_id, json_body(), is_staff=perms.is_staff)
    return jsonify(song.to_dict(user_id)), 201


@session_bp.route("/sessions/<session_id>/songs/<int:song_id>", methods=["DELETE"])
def remove_song(session_id, song_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    perms = caller_permissions(session)
    song_service.remove_song(session.id, song_id, user_id, is_staff=perms.can_remove_song)
    return jsonify({"message": "Song removed"}), 200


@session_bp.route("/sessions/<session_id>/songs/reorder", methods=["PUT"])
def reorder_songs(session_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_edit", "Only the host or a moderator can reorder songs")

    songs = song_service.reorder_songs(session.id, json_body().get("song_ids"), user_id)
    return jsonify({"items": [s.to_dict(user_id) for s in songs], "total": len(songs)})


@session_bp.route("/sessions/<session_id>/songs/<int:song_id>/vote", methods=["POST"])
@vote_limit(limiter)
def vote_song(session_id, song_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_vote", "You are banned from this session")

    song = song_service.vote_song(session.id, song_id, user_id, weight=caller_weight())
    return jsonify(song.to_dict(user_id))


@session_bp.route("/sessions/<session_id>/songs/<int:song_id>/vote", methods=["DELETE"])
@vote_limit(limiter)
def unvote_song(session_id, song_id):
    user_id, err = require_user()
    if err:
        return err
    song = song_service.unvote_song(session_id, song_id, user_id)
    return jsonify(song.to_dict(user_id))


@session_bp.route("/sessions/<session_id>/songs/results", methods=["GET"])
def song_results(session_id):
    return jsonify(song_service.get_song_results(session_id, viewer_id=g.user_id))
