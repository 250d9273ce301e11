"""
Vote Blueprint: staff polls answered by students.

Endpoints:
  GET  /api/v1/votes                   — List (?active=true)
  POST /api/v1/votes                   — Create (lecturer/admin)
  GET  /api/v1/votes/<id>              — Detail (+ my_response for students)
  POST /api/v1/votes/<id>/responses    — Answer (student, once)
  GET  /api/v1/votes/<id>/results      — Counts per option
  POST /api/v1/votes/<id>/close        — Close (lecturer/admin)
  POST /api/v1/votes/<id>/reopen       — Reopen (lecturer/admin)
"""

from flask import Blueprint, g, jsonify, request

from complaint_portal.middleware.permission_required import require_auth
from complaint_portal.services import vote_service

vote_bp = Blueprint("vote_bp", __name__, url_prefix="/api/v1")


@vote_bp.route("/votes", methods=["GET"])
@require_auth
def list_votes():
    active_only = request.args.get("active", "false").lower() == "true"
    items = vote_service.list_votes(g.tenant.id, active_only=active_only)
    return jsonify({"items": items, "total": len(items)}), 200


@vote_bp.route("/votes", methods=["POST"])
@require_auth
def create_vote():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "JSON object body is required"}), 400
    return jsonify(vote_service.create_vote(g.tenant.id, g.current_user, data)), 201


@vote_bp.route("/votes/<vote_id>", methods=["GET"])
@require_auth
def get_vote(vote_id):
    return jsonify(vote_service.get_vote(g.tenant.id, vote_id, g.current_user)), 200


@vote_bp.route("/votes/<vote_id>/responses", methods=["POST"])
@require_auth
def submit_response(vote_id):
    data = request.get_json(silent=True) or {}
    option = data.get("option")
    if not isinstance(option, str) or not option:
        return jsonify({"error": "option is required"}), 400
    return jsonify(vote_service.submit_response(g.tenant.id, vote_id, g.current_user, option)), 201


@vote_bp.route("/votes/<vote_id>/results", methods=["GET"])
@require_auth
def vote_results(vote_id):
    return jsonify(vote_service.get_vote_results(g.tenant.id, vote_id)), 200


@vote_bp.route("/votes/<vote_id>/close", methods=["POST"])
@require_auth
def close_vote(vote_id):
    return jsonify(vote_service.set_vote_active(g.tenant.id, g.current_user, vote_id, False)), 200


@vote_bp.route("/votes/<vote_id>/reopen", methods=["POST"])
@require_auth
def reopen_vote(vote_id):
    return jsonify(vote_service.set_vote_active(g.tenant.id, g.current_user, vote_id, True)), 200
