"""
Tenant Context Middleware: Enforces tenant isolation on API requests.

When a JWT-authenticated user makes a request:
  1. g.jwt_tenant_id is already set by jwt_auth middleware
  2. This middleware verifies the tenant exists and is active
  3. Sets g.tenant for easy access to the Tenant model instance
  4. All downstream DB queries filter by g.tenant.id

Chain order:
  jwt_auth.py  →  tenant_context.py  →  route handler
"""

import logging

from flask import g, jsonify, request

from complaint_portal.models import db
from complaint_portal.models.auth import Tenant

logger = logging.getLogger(__name__)

TENANT_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/health",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None

        if not request.path.startswith("/api/v1/"):
            return None

        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        tenant_id = getattr(g, "jwt_tenant_id", None)
        if tenant_id is None:
            return None

        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning("JWT tenant_id %s not found in DB", tenant_id)
            return jsonify({"error": "Tenant not found", "code": "AUTH_004"}), 403

        if not tenant.is_active:
            logger.warning("JWT tenant_id %s is deactivated", tenant_id)
            return jsonify({"error": "Tenant account is deactivated", "code": "AUTH_004"}), 403

        g.tenant = tenant
        return None

    logger.info("Tenant context middleware installed")
