"""
Escalation Blueprint: rule administration and on-demand passes.

Endpoints:
  GET    /api/v1/escalation-rules                 — List rules (staff)
  POST   /api/v1/escalation-rules                 — Create rule (admin)
  GET    /api/v1/escalation-rules/<id>            — Rule detail (staff)
  PATCH  /api/v1/escalation-rules/<id>            — Update rule (admin)
  DELETE /api/v1/escalation-rules/<id>            — Delete rule (admin)
  POST   /api/v1/escalation-rules/<id>/toggle     — Activate / deactivate (admin)
  POST   /api/v1/escalation/run                   — Run one pass for this tenant (admin)
"""

import logging
import time

from flask import Blueprint, current_app, g, jsonify, request

from complaint_portal.middleware.permission_required import require_auth, require_role
from complaint_portal.models.auth import STAFF_ROLES
from complaint_portal.services import escalation_rules
from complaint_portal.services.escalation_engine import run_auto_escalation

logger = logging.getLogger(__name__)

escalation_bp = Blueprint("escalation_bp", __name__, url_prefix="/api/v1")


@escalation_bp.route("/escalation-rules", methods=["GET"])
@require_role(*STAFF_ROLES)
def list_rules():
    items = escalation_rules.list_rules(
        g.tenant.id,
        category=request.args.get("category"),
        priority=request.args.get("priority"),
        active_only=request.args.get("active") in ("1", "true"),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@escalation_bp.route("/escalation-rules", methods=["POST"])
@require_auth
def create_rule():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "JSON object body is required"}), 400
    return jsonify(escalation_rules.create_rule(g.tenant.id, g.current_user, data)), 201


@escalation_bp.route("/escalation-rules/<rule_id>", methods=["GET"])
@require_role(*STAFF_ROLES)
def get_rule(rule_id):
    return jsonify(escalation_rules.get_rule(g.tenant.id, rule_id)), 200


@escalation_bp.route("/escalation-rules/<rule_id>", methods=["PATCH"])
@require_auth
def update_rule(rule_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({"error": "No fields to update"}), 400
    return jsonify(escalation_rules.update_rule(g.tenant.id, g.current_user, rule_id, data)), 200


@escalation_bp.route("/escalation-rules/<rule_id>", methods=["DELETE"])
@require_auth
def delete_rule(rule_id):
    escalation_rules.delete_rule(g.tenant.id, g.current_user, rule_id)
    return jsonify({"deleted": True}), 200


@escalation_bp.route("/escalation-rules/<rule_id>/toggle", methods=["POST"])
@require_auth
def toggle_rule(rule_id):
    return jsonify(escalation_rules.toggle_rule(g.tenant.id, g.current_user, rule_id)), 200


@escalation_bp.route("/escalation/run", methods=["POST"])
@require_role("admin")
def run_escalation():
    """Run the escalation pass now, for the caller's institution only."""
    t0 = time.perf_counter()
    summary = run_auto_escalation(
        tenant_id=g.tenant.id,
        system_actor=current_app.config.get("ESCALATION_SYSTEM_ACTOR"),
    )
    duration_ms = round((time.perf_counter() - t0) * 1000, 1)
    logger.info(
        "On-demand escalation by user %s: %d escalated",
        g.current_user.id, summary["escalated_count"],
        extra={"tenant_id": g.tenant.id, "duration_ms": duration_ms},
    )
    tenant_result = summary["tenants"].get(g.tenant.id, {
        "escalated_count": 0, "escalated_ids": [], "failed_count": 0,
        "failures": [], "skipped_rule_ids": [],
    })
    if "error" in tenant_result:
        return jsonify({"error": "Service temporarily unavailable", "code": "ERR_UNAVAILABLE"}), 503
    return jsonify({**tenant_result, "duration_ms": duration_ms}), 200
