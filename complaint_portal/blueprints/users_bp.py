"""
Users Blueprint: tenant user administration.

Endpoints:
  GET   /api/v1/users              — List users (admin, ?role=)
  PATCH /api/v1/users/<id>/role    — Change a user's role (admin)
"""

from flask import Blueprint, g, jsonify, request

from complaint_portal.middleware.permission_required import require_role
from complaint_portal.services import user_service

users_bp = Blueprint("users_bp", __name__, url_prefix="/api/v1")


@users_bp.route("/users", methods=["GET"])
@require_role("admin")
def list_users():
    items = user_service.list_users(g.tenant.id, role=request.args.get("role"))
    return jsonify({"items": items, "total": len(items)}), 200


@users_bp.route("/users/<int:user_id>/role", methods=["PATCH"])
@require_role("admin")
def change_role(user_id):
    data = request.get_json(silent=True) or {}
    role = data.get("role")
    if not isinstance(role, str) or not role:
        return jsonify({"error": "role is required"}), 400
    return jsonify(user_service.change_role(g.tenant.id, g.current_user, user_id, role)), 200
