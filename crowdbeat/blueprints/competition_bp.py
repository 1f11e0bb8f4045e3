"""
CrowdBeat Session Core
Competition blueprint: element competitions, entries, votes and results.

Endpoints summary:
    SESSION  /api/v1/sessions/<id>/element-competitions          GET, POST

    CONTEST  /api/v1/element-competitions/<cid>                  GET
             /api/v1/element-competitions/<cid>/open             POST   (draft → open)
             /api/v1/element-competitions/<cid>/submit           POST
             /api/v1/element-competitions/<cid>/vote             POST   {submission_index}
             /api/v1/element-competitions/<cid>/start-voting     POST   (open → voting)
             /api/v1/element-competitions/<cid>/close            POST   (voting → closed)
             /api/v1/element-competitions/<cid>/cancel           POST
             /api/v1/element-competitions/<cid>/results          GET
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from crowdbeat.blueprints import caller_permissions, caller_weight, json_body, require_user
from crowdbeat.services import competition_service, session_service
from crowdbeat.services.permission import require

logger = logging.getLogger(__name__)

competition_bp = Blueprint("competitions", __name__, url_prefix="/api/v1")

from crowdbeat import limiter  # noqa: E402
from crowdbeat.middleware.rate_limiter import vote_limit  # noqa: E402


def _managed_competition(competition_id, message):
    """Return ``(competition, actor_id, None)`` for the session host, else an error."""
    user_id, err = require_user()
    if err:
        return None, None, err
    competition = competition_service.get_competition(competition_id)
    session = session_service.get_session(competition.session_id)
    require(caller_permissions(session), "can_manage_competitions", message)
    return competition, user_id, None


# ═══════════════════════════════════════════════════════════════════════════
#  PER-SESSION
# ═══════════════════════════════════════════════════════════════════════════

@competition_bp.route("/sessions/<session_id>/element-competitions", methods=["GET"])
def list_competitions(session_id):
    competitions = competition_service.list_competitions(
        session_id,
        status=request.args.get("status"),
        element_type=request.args.get("element_type"),
    )
    items = [c.to_dict(g.user_id, include_submissions=False) for c in competitions]
    return jsonify({"items": items, "total": len(items)})


@competition_bp.route("/sessions/<session_id>/element-competitions", methods=["POST"])
def create_competition(session_id):
    user_id, err = require_user()
    if err:
        return err
    session = session_service.get_session(session_id)
    require(caller_permissions(session), "can_manage_competitions", "Only the host can create competitions")

    competition = competition_service.create_competition(session.id, user_id, json_body())
    return jsonify(competition.to_dict(user_id)), 201


# ═══════════════════════════════════════════════════════════════════════════
#  SINGLE COMPETITION
# ═══════════════════════════════════════════════════════════════════════════

@competition_bp.route("/element-competitions/<competition_id>", methods=["GET"])
def get_competition(competition_id):
    competition = competition_service.get_competition(competition_id)
    return jsonify(competition.to_dict(g.user_id))


@competition_bp.route("/element-competitions/<competition_id>/open", methods=["POST"])
def open_competition(competition_id):
    competition, user_id, err = _managed_competition(competition_id, "Only the host can open competitions")
    if err:
        return err
    competition = competition_service.open_competition(competition.id, user_id)
    return jsonify(competition.to_dict(user_id))


@competition_bp.route("/element-competitions/<competition_id>/submit", methods=["POST"])
def submit_entry(competition_id):
    user_id, err = require_user()
    if err:
        return err
    competition = competition_service.get_competition(competition_id)
    session = session_service.get_session(competition.session_id)
    require(
        caller_permissions(session), "can_submit_to_competitions",
        "Only technical users can submit competition entries",
    )

    submission = competition_service.submit_entry(competition.id, user_id, json_body())
    return jsonify(submission.to_dict(user_id)), 201


@competition_bp.route("/element-competitions/<competition_id>/vote", methods=["POST"])
@vote_limit(limiter)
def vote_entry(competition_id):
    user_id, err = require_user()
    if err:
        return err
    submission = competition_service.vote_entry(
        competition_id,
        json_body().get("submission_index"),
        user_id,
        weight=caller_weight(),
    )
    return jsonify(submission.to_dict(user_id))


@competition_bp.route("/element-competitions/<competition_id>/start-voting", methods=["POST"])
def start_voting(competition_id):
    competition, user_id, err = _managed_competition(competition_id, "Only the host can start voting")
    if err:
        return err
    competition = competition_service.start_voting(
        competition.id,
        user_id,
        voting_deadline=json_body().get("voting_deadline"),
        default_hours=current_app.config.get("DEFAULT_COMPETITION_VOTING_HOURS", 48),
    )
    return jsonify(competition.to_dict(user_id))


@competition_bp.route("/element-competitions/<competition_id>/close", methods=["POST"])
def close_competition(competition_id):
    competition, user_id, err = _managed_competition(competition_id, "Only the host can close competitions")
    if err:
        return err
    outcome = competition_service.close_competition(competition.id, user_id)
    return jsonify({
        "competition": outcome["competition"].to_dict(user_id),
        "winner": outcome["winner"].to_dict(user_id),
        "prize_awarded": outcome["prize_awarded"],
        "award_error": outcome["award_error"],
    })


@competition_bp.route("/element-competitions/<competition_id>/cancel", methods=["POST"])
def cancel_competition(competition_id):
    competition, user_id, err = _managed_competition(competition_id, "Only the host can cancel competitions")
    if err:
        return err
    competition = competition_service.cancel_competition(competition.id, user_id)
    return jsonify(competition.to_dict(user_id))


@competition_bp.route("/element-competitions/<competition_id>/results", methods=["GET"])
def competition_results(competition_id):
    return jsonify(competition_service.get_ranked_results(competition_id, viewer_id=g.user_id))
