"""
Complaints Blueprint.

Endpoints:
  GET    /api/v1/complaints                      — List visible complaints
  POST   /api/v1/complaints                      — File a complaint (student)
  GET    /api/v1/complaints/stats                — Dashboard counts
  GET    /api/v1/complaints/<id>                 — Complaint detail
  GET    /api/v1/complaints/<id>/history         — Timeline
  POST   /api/v1/complaints/<id>/transition      — Status change
  POST   /api/v1/complaints/<id>/comments        — Add a comment
  POST   /api/v1/complaints/<id>/feedback        — Staff feedback
  POST   /api/v1/complaints/<id>/assign          — Assign to staff
  POST   /api/v1/complaints/<id>/rating          — Student rating
  POST   /api/v1/complaints/bulk/assign          — Bulk assign
  POST   /api/v1/complaints/bulk/status          — Bulk status change
  POST   /api/v1/complaints/bulk/tags            — Bulk tag
"""

import logging

from flask import Blueprint, g, jsonify, request

from complaint_portal.blueprints import pagination_args
from complaint_portal.middleware.permission_required import require_auth
from complaint_portal.services import complaint_service
from complaint_portal.services.complaint_lifecycle import apply_transition

logger = logging.getLogger(__name__)

complaints_bp = Blueprint("complaints_bp", __name__, url_prefix="/api/v1")


def _optional_version(data):
    """Return (version, error). ``version`` is optional but must be an int."""
    version = data.get("version")
    if version is None:
        return None, None
    if not isinstance(version, int) or isinstance(version, bool):
        return None, (jsonify({"error": "version must be an integer"}), 400)
    return version, None


# ═══════════════════════════════════════════════════════════════════════════
#  Collection
# ═══════════════════════════════════════════════════════════════════════════

@complaints_bp.route("/complaints", methods=["GET"])
@require_auth
def list_complaints():
    limit, offset = pagination_args()
    filters = {
        "status": request.args.get("status"),
        "category": request.args.get("category"),
        "priority": request.args.get("priority"),
        "search": request.args.get("search"),
        "limit": limit,
        "offset": offset,
    }
    assigned_to = request.args.get("assigned_to")
    if assigned_to == "me":
        filters["assigned_to"] = "me"
    elif assigned_to:
        if not assigned_to.isdigit():
            return jsonify({"error": "assigned_to must be 'me' or a user id"}), 400
        filters["assigned_to"] = int(assigned_to)
    if request.args.get("escalated") in ("1", "true"):
        filters["escalated"] = True

    items, total = complaint_service.list_complaints(g.tenant.id, g.current_user, filters)
    return jsonify({"items": items, "total": total, "limit": limit, "offset": offset}), 200


@complaints_bp.route("/complaints", methods=["POST"])
@require_auth
def create_complaint():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "JSON object body is required"}), 400
    return jsonify(complaint_service.create_complaint(g.tenant.id, g.current_user, data)), 201


@complaints_bp.route("/complaints/stats", methods=["GET"])
@require_auth
def complaint_stats():
    return jsonify(complaint_service.get_complaint_stats(g.tenant.id, g.current_user)), 200


# ═══════════════════════════════════════════════════════════════════════════
#  Single complaint
# ═══════════════════════════════════════════════════════════════════════════

@complaints_bp.route("/complaints/<complaint_id>", methods=["GET"])
@require_auth
def get_complaint(complaint_id):
    return jsonify(complaint_service.get_complaint(g.tenant.id, complaint_id, g.current_user)), 200


@complaints_bp.route("/complaints/<complaint_id>/history", methods=["GET"])
@require_auth
def complaint_history(complaint_id):
    items = complaint_service.get_timeline(g.tenant.id, complaint_id, g.current_user)
    return jsonify({"items": items, "total": len(items)}), 200


@complaints_bp.route("/complaints/<complaint_id>/transition", methods=["POST"])
@require_auth
def transition_complaint(complaint_id):
    """
    Body: { "status": "opened", "version": 3, "note": "..." }

    ``version`` is the complaint version the caller last read; a stale
    version answers 409.
    """
    data = request.get_json(silent=True) or {}
    target = data.get("status")
    if not isinstance(target, str) or not target:
        return jsonify({"error": "status is required"}), 400
    version, error = _optional_version(data)
    if error:
        return error

    result = apply_transition(
        g.tenant.id,
        complaint_id,
        target,
        g.current_user,
        expected_version=version,
        note=data.get("note"),
    )
    return jsonify(result), 200


@complaints_bp.route("/complaints/<complaint_id>/comments", methods=["POST"])
@require_auth
def add_comment(complaint_id):
    data = request.get_json(silent=True) or {}
    text = data.get("comment")
    if not isinstance(text, str):
        return jsonify({"error": "comment is required"}), 400
    comment = complaint_service.add_comment(
        g.tenant.id,
        complaint_id,
        g.current_user,
        text,
        is_internal=bool(data.get("is_internal", False)),
    )
    return jsonify(comment), 201


@complaints_bp.route("/complaints/<complaint_id>/feedback", methods=["POST"])
@require_auth
def add_feedback(complaint_id):
    data = request.get_json(silent=True) or {}
    content = data.get("content")
    if not isinstance(content, str):
        return jsonify({"error": "content is required"}), 400
    feedback = complaint_service.add_feedback(g.tenant.id, complaint_id, g.current_user, content)
    return jsonify(feedback), 201


@complaints_bp.route("/complaints/<complaint_id>/assign", methods=["POST"])
@require_auth
def assign_complaint(complaint_id):
    data = request.get_json(silent=True) or {}
    assignee_id = data.get("assigned_to")
    if not isinstance(assignee_id, int) or isinstance(assignee_id, bool):
        return jsonify({"error": "assigned_to must be a user id"}), 400
    version, error = _optional_version(data)
    if error:
        return error
    result = complaint_service.assign_complaint(
        g.tenant.id, complaint_id, g.current_user, assignee_id, expected_version=version,
    )
    return jsonify(result), 200


@complaints_bp.route("/complaints/<complaint_id>/rating", methods=["POST"])
@require_auth
def rate_complaint(complaint_id):
    data = request.get_json(silent=True) or {}
    if "rating" not in data:
        return jsonify({"error": "rating is required"}), 400
    rating = complaint_service.submit_rating(
        g.tenant.id, complaint_id, g.current_user, data["rating"], data.get("feedback_text"),
    )
    return jsonify(rating), 201


# ═══════════════════════════════════════════════════════════════════════════
#  Bulk actions
# ═══════════════════════════════════════════════════════════════════════════

@complaints_bp.route("/complaints/bulk/assign", methods=["POST"])
@require_auth
def bulk_assign():
    data = request.get_json(silent=True) or {}
    assignee_id = data.get("assigned_to")
    if not isinstance(assignee_id, int) or isinstance(assignee_id, bool):
        return jsonify({"error": "assigned_to must be a user id"}), 400
    result = complaint_service.bulk_assign(
        g.tenant.id, g.current_user, data.get("complaint_ids"), assignee_id,
    )
    return jsonify(result), 200


@complaints_bp.route("/complaints/bulk/status", methods=["POST"])
@require_auth
def bulk_status():
    data = request.get_json(silent=True) or {}
    target = data.get("status")
    if not isinstance(target, str) or not target:
        return jsonify({"error": "status is required"}), 400
    result = complaint_service.bulk_change_status(
        g.tenant.id, g.current_user, data.get("complaint_ids"), target, note=data.get("note"),
    )
    return jsonify(result), 200


@complaints_bp.route("/complaints/bulk/tags", methods=["POST"])
@require_auth
def bulk_tags():
    data = request.get_json(silent=True) or {}
    result = complaint_service.bulk_add_tags(
        g.tenant.id, g.current_user, data.get("complaint_ids"), data.get("tags"),
    )
    return jsonify(result), 200
