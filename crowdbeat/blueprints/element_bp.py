"""
CrowdBeat Session Core
Element blueprint: element options, element votes and aggregated results.

Endpoints summary:
    OPTIONS  /api/v1/sessions/<id>/element-options                        GET, POST
             /api/v1/sessions/<id>/element-options/submit                 POST
             /api/v1/sessions/<id>/element-options/<option_id>/status     PUT
             /api/v1/sessions/<id>/element-options/<option_id>/vote       POST, DELETE

    RESULTS  /api/v1/sessions/<id>/element-results                        GET
             /api/v1/sessions/<id>/element-progress                       GET
             /api/v1/sessions/<id>/granular-breakdown                     GET
             /api/v1/sessions/<id>/my-element-votes                       GET

Listing and result endpoints accept an optional ``song_id`` query param to
scope options to one queued song.
"""

import logging

from flask import Blueprint, g, jsonify, request

from crowdbeat.blueprints import caller_permissions, caller_weight, json_body, require_user
from crowdbeat.services import element_service, session_service
from crowdbeat.services.permission import require

logger = logging.getLogger(__name__)

element_bp = Blueprint("elements", __name__, url_prefix="/api/v1")

from crowdbeat import limiter  # noqa: E402
from crowdbeat.middleware.rate_limiter import vote_limit  # noqa: E402


def _song_id_arg():
    return request.args.get("song_id", type=int)


# ═══════════════════════════════════════════════════════════════════════════
#  OPTIONS
# ═══════════════════════════════════════════════════════════════════════════

@element_bp.route("/sessions/<session_id>/element-options", methods=["GET"])
def list_options(session_id):
    if request.args.get("grouped", "").lower() in ("1", "true", "yes"):
        return jsonify(element_service.get_grouped_options(session_id, _song_id_arg(), viewer_id=g.user_id))

    items = element_service.list_options(
        session_id,
        element_type=request.args.get("element_type"),
        song_id=_song_id_arg(),
        status=request.args.get("status"),
        viewer_id=g.user_id,
    )
    return jsonify({"items": items, "total": len(items)})


@element_bp.route("/sessions/<session_id>/element-options", methods=["POST"])
def create_options(session_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_manage_elements", "Only the host can create element options")

    data = json_body()
    options = element_service.create_options(
        session.id, user_id, data.get("options"), song_id=data.get("song_id"),
    )
    return jsonify({"items": [o.to_dict(user_id) for o in options], "total": len(options)}), 201


@element_bp.route("/sessions/<session_id>/element-options/submit", methods=["POST"])
def submit_option(session_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(
        caller_permissions(session), "can_submit_options",
        "Only technical users can submit element options",
    )

    option = element_service.submit_user_option(session.id, user_id, json_body())
    return jsonify(option.to_dict(user_id)), 201


@element_bp.route("/sessions/<session_id>/element-options/<option_id>/status", methods=["PUT"])
def set_option_status(session_id, option_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_manage_elements", "Only the host can change option status")

    option = element_service.set_option_status(session.id, option_id, json_body().get("status"), user_id)
    return jsonify(option.to_dict(user_id))


# ═══════════════════════════════════════════════════════════════════════════
#  VOTES
# ═══════════════════════════════════════════════════════════════════════════

@element_bp.route("/sessions/<session_id>/element-options/<option_id>/vote", methods=["POST"])
@vote_limit(limiter)
def vote_option(session_id, option_id):
    user_id, err = require_user()
    if err:
        return err
    data = json_body()
    option = element_service.vote_option(
        session_id,
        option_id,
        user_id,
        weight=caller_weight(),
        vote_value=data.get("vote_value", 1),
        comment=data.get("comment"),
    )
    return jsonify(option.to_dict(user_id))


@element_bp.route("/sessions/<session_id>/element-options/<option_id>/vote", methods=["DELETE"])
@vote_limit(limiter)
def unvote_option(session_id, option_id):
    user_id, err = require_user()
    if err:
        return err
    option = element_service.unvote_option(session_id, option_id, user_id)
    return jsonify(option.to_dict(user_id))


# ═══════════════════════════════════════════════════════════════════════════
#  RESULTS
# ═══════════════════════════════════════════════════════════════════════════

@element_bp.route("/sessions/<session_id>/element-results", methods=["GET"])
def element_results(session_id):
    return jsonify(element_service.get_element_results(session_id, _song_id_arg(), viewer_id=g.user_id))


@element_bp.route("/sessions/<session_id>/element-progress", methods=["GET"])
def element_progress(session_id):
    return jsonify(element_service.get_progress(session_id, _song_id_arg()))


@element_bp.route("/sessions/<session_id>/granular-breakdown", methods=["GET"])
def granular_breakdown(session_id):
    return jsonify(element_service.get_granular_breakdown(session_id, _song_id_arg(), viewer_id=g.user_id))


@element_bp.route("/sessions/<session_id>/my-element-votes", methods=["GET"])
def my_votes(session_id):
    user_id, err = require_user()
    if err:
        return err
    votes = element_service.get_my_votes(session_id, user_id, request.args.get("element_type"))
    return jsonify({"items": votes, "total": len(votes)})
