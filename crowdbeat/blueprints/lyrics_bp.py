"""
CrowdBeat Session Core
Lyrics blueprint: submissions, review, voting, feedback and results.

Endpoints summary:
    LYRICS   /api/v1/sessions/<id>/lyrics                     GET, POST
             /api/v1/sessions/<id>/lyrics/results             GET
             /api/v1/sessions/<id>/lyrics/<lid>               GET, PUT, DELETE
             /api/v1/sessions/<id>/lyrics/<lid>/status        PUT    (host / moderator)
             /api/v1/sessions/<id>/lyrics/<lid>/vote          POST, DELETE
             /api/v1/sessions/<id>/lyrics/<lid>/feedback      POST
"""

from flask import Blueprint, g, jsonify, request

from crowdbeat.blueprints import (
    caller_permissions,
    caller_weight,
    json_body,
    require_user,
)
from crowdbeat.services import lyrics_service, session_service
from crowdbeat.services.permission import require

lyrics_bp = Blueprint("lyrics", __name__, url_prefix="/api/v1")

from crowdbeat import limiter  # noqa: E402
from crowdbeat.middleware.rate_limiter import feedback_limit, vote_limit  # noqa: E402


@lyrics_bp.route("/sessions/<session_id>/lyrics", methods=["POST"])
def submit_lyrics(session_id):
    user_id, err = require_user()
    if err:
        return err
    submission = lyrics_service.submit_lyrics(
        session_id, user_id, json_body(), reputation=g.user_reputation,
    )
    return jsonify(submission.to_dict(user_id)), 201


@lyrics_bp.route("/sessions/<session_id>/lyrics", methods=["GET"])
def list_lyrics(session_id):
    session = session_service.get_session(session_id)
    listing = lyrics_service.list_lyrics(
        session.id,
        viewer_id=g.user_id,
        status=request.args.get("status"),
        include_hidden=caller_permissions(session).is_staff,
    )
    return jsonify(listing)


@lyrics_bp.route("/sessions/<session_id>/lyrics/results", methods=["GET"])
def lyrics_results(session_id):
    return jsonify(lyrics_service.get_lyrics_results(session_id, viewer_id=g.user_id))


@lyrics_bp.route("/sessions/<session_id>/lyrics/<int:lyrics_id>", methods=["GET"])
def get_lyrics(session_id, lyrics_id):
    return jsonify(lyrics_service.get_lyrics(session_id, lyrics_id, viewer_id=g.user_id))


@lyrics_bp.route("/sessions/<session_id>/lyrics/<int:lyrics_id>", methods=["PUT"])
def update_lyrics(session_id, lyrics_id):
    user_id, err = require_user()
    if err:
        return err
    submission = lyrics_service.update_lyrics(session_id, lyrics_id, user_id, json_body())
    return jsonify(submission.to_dict(user_id))


@lyrics_bp.route("/sessions/<session_id>/lyrics/<int:lyrics_id>", methods=["DELETE"])
def delete_lyrics(session_id, lyrics_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    lyrics_service.delete_lyrics(
        session.id, lyrics_id, user_id, is_staff=caller_permissions(session).is_staff,
    )
    return jsonify({"message": "Lyrics deleted"}), 200


@lyrics_bp.route("/sessions/<session_id>/lyrics/<int:lyrics_id>/status", methods=["PUT"])
def set_lyrics_status(session_id, lyrics_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_edit", "Only the host or a moderator can review lyrics")

    data = json_body()
    submission = lyrics_service.set_lyrics_status(
        session.id, lyrics_id, data.get("status"), user_id, note=data.get("note"),
    )
    return jsonify(submission.to_dict(user_id))


@lyrics_bp.route("/sessions/<session_id>/lyrics/<int:lyrics_id>/vote", methods=["POST"])
@vote_limit(limiter)
def vote_lyrics(session_id, lyrics_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_vote", "You are banned from this session")

    submission = lyrics_service.vote_lyrics(session.id, lyrics_id, user_id, weight=caller_weight())
    return jsonify(submission.to_dict(user_id))


@lyrics_bp.route("/sessions/<session_id>/lyrics/<int:lyrics_id>/vote", methods=["DELETE"])
@vote_limit(limiter)
def unvote_lyrics(session_id, lyrics_id):
    user_id, err = require_user()
    if err:
        return err
    submission = lyrics_service.unvote_lyrics(session_id, lyrics_id, user_id)
    return jsonify(submission.to_dict(user_id))


@lyrics_bp.route("/sessions/<session_id>/lyrics/<int:lyrics_id>/feedback", methods=["POST"])
@feedback_limit(limiter)
def lyrics_feedback(session_id, lyrics_id):
    user_id, err = require_user()
    if err:
        return err
    data = json_body()
    submission = lyrics_service.add_feedback(
        session_id, lyrics_id, user_id, data.get("rating"), comment=data.get("comment"),
    )
    return jsonify(submission.to_dict(user_id, include_feedback=True)), 201
