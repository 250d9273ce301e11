"""
Complaint Template Blueprint.

Endpoints:
  GET    /api/v1/templates               List (students see active only)
  POST   /api/v1/templates               Create (lecturer/admin)
  GET    /api/v1/templates/<id>          Detail
  PATCH  /api/v1/templates/<id>          Update (author or admin)
  DELETE /api/v1/templates/<id>          Delete (author or admin)
  POST   /api/v1/templates/<id>/toggle   Activate / deactivate (author or admin)

Query params for the list: ``active=true`` and ``created_by=<user id>|me``.
"""

from flask import Blueprint, g, jsonify, request

from complaint_portal.middleware.permission_required import require_auth
from complaint_portal.services import template_service

template_bp = Blueprint("template_bp", __name__, url_prefix="/api/v1")


def _created_by_arg():
    raw = request.args.get("created_by")
    if not raw:
        return None
    if raw == "me":
        return g.current_user.id
    try:
        return int(raw)
    except ValueError:
        return -1


@template_bp.route("/templates", methods=["GET"])
@require_auth
def list_templates():
    items = template_service.list_templates(
        g.tenant.id,
        g.current_user,
        active_only=request.args.get("active") in ("1", "true"),
        created_by=_created_by_arg(),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@template_bp.route("/templates", methods=["POST"])
@require_auth
def create_template():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "JSON object body is required"}), 400
    return jsonify(template_service.create_template(g.tenant.id, g.current_user, data)), 201


@template_bp.route("/templates/<template_id>", methods=["GET"])
@require_auth
def get_template(template_id):
    return jsonify(template_service.get_template(g.tenant.id, g.current_user, template_id)), 200


@template_bp.route("/templates/<template_id>", methods=["PUT", "PATCH"])
@require_auth
def update_template(template_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({"error": "No fields to update"}), 400
    item = template_service.update_template(g.tenant.id, g.current_user, template_id, data)
    return jsonify(item), 200


@template_bp.route("/templates/<template_id>/toggle", methods=["POST"])
@require_auth
def toggle_template(template_id):
    data = request.get_json(silent=True) or {}
    item = template_service.toggle_template(
        g.tenant.id, g.current_user, template_id, data.get("is_active") if isinstance(data, dict) else None,
    )
    return jsonify(item), 200


@template_bp.route("/templates/<template_id>", methods=["DELETE"])
@require_auth
def delete_template(template_id):
    template_service.delete_template(g.tenant.id, g.current_user, template_id)
    return jsonify({"deleted": True}), 200
