"""
Announcement Blueprint.

Endpoints:
  GET    /api/v1/announcements          — List, newest first
  POST   /api/v1/announcements          — Create (lecturer/admin)
  GET    /api/v1/announcements/<id>     — Detail
  PUT    /api/v1/announcements/<id>     — Update (author or admin)
  DELETE /api/v1/announcements/<id>     — Delete (author or admin)
"""

from flask import Blueprint, g, jsonify, request

from complaint_portal.blueprints import pagination_args
from complaint_portal.middleware.permission_required import require_auth
from complaint_portal.services import announcement_service

announcement_bp = Blueprint("announcement_bp", __name__, url_prefix="/api/v1")


@announcement_bp.route("/announcements", methods=["GET"])
@require_auth
def list_announcements():
    limit, offset = pagination_args()
    items, total = announcement_service.list_announcements(g.tenant.id, limit=limit, offset=offset)
    return jsonify({"items": items, "total": total}), 200


@announcement_bp.route("/announcements", methods=["POST"])
@require_auth
def create_announcement():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "JSON object body is required"}), 400
    item = announcement_service.create_announcement(g.tenant.id, g.current_user, data)
    return jsonify(item), 201


@announcement_bp.route("/announcements/<announcement_id>", methods=["GET"])
@require_auth
def get_announcement(announcement_id):
    return jsonify(announcement_service.get_announcement(g.tenant.id, announcement_id)), 200


@announcement_bp.route("/announcements/<announcement_id>", methods=["PUT", "PATCH"])
@require_auth
def update_announcement(announcement_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({"error": "No fields to update"}), 400
    item = announcement_service.update_announcement(g.tenant.id, g.current_user, announcement_id, data)
    return jsonify(item), 200


@announcement_bp.route("/announcements/<announcement_id>", methods=["DELETE"])
@require_auth
def delete_announcement(announcement_id):
    announcement_service.delete_announcement(g.tenant.id, g.current_user, announcement_id)
    return jsonify({"deleted": True}), 200
