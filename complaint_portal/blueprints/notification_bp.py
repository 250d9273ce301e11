"""
Notification Blueprint: a user's in-app inbox.

Endpoints:
  GET  /api/v1/notifications                 — List own notifications (?unread_only=true)
  GET  /api/v1/notifications/unread-count    — Badge counter
  POST /api/v1/notifications/<id>/read       — Mark one as read
  POST /api/v1/notifications/read-all        — Mark all as read
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from complaint_portal.blueprints import pagination_args
from complaint_portal.middleware.permission_required import require_auth
from complaint_portal.services.notification import NotificationService

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
@require_auth
def list_notifications():
    limit, offset = pagination_args()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    items, total = NotificationService.list_for_user(
        g.tenant.id, g.current_user.id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(g.tenant.id, g.current_user.id),
    }), 200


@notification_bp.route("/notifications/unread-count", methods=["GET"])
@require_auth
def unread_count():
    count = NotificationService.unread_count(g.tenant.id, g.current_user.id)
    return jsonify({"unread_count": count}), 200


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
@require_auth
def mark_read(notification_id):
    notif = NotificationService.mark_read(g.tenant.id, g.current_user.id, notification_id)
    return jsonify(notif.to_dict()), 200


@notification_bp.route("/notifications/read-all", methods=["POST"])
@require_auth
def mark_all_read():
    count = NotificationService.mark_all_read(g.tenant.id, g.current_user.id)
    return jsonify({"marked_read": count}), 200
