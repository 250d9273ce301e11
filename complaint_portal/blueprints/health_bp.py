"""
Health check blueprint.

Endpoints:
    GET /api/v1/health  — liveness with database round-trip
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from complaint_portal.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def health():
    """Liveness check; 503 when the database is unreachable."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    checks["app"] = {
        "name": "Student Complaint Portal",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    body = {"status": "ok" if overall else "degraded", "checks": checks}
    return jsonify(body), 200 if overall else 503
