"""
JWT Auth Middleware: Parses JWT from Authorization header, sets g.jwt_*.

Sets g.jwt_user_id, g.jwt_tenant_id and g.jwt_role for a valid
``Authorization: Bearer <token>`` header.  Invalid or expired tokens leave
the context empty; routes that need a user answer 401 through
``require_auth``.
"""

import logging

import jwt as pyjwt
from flask import g, request

from complaint_portal.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_role = None
        g.jwt_error = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]

        try:
            payload = decode_access_token(token)
            g.jwt_user_id = int(payload["sub"])
            g.jwt_tenant_id = payload.get("tenant_id")
            g.jwt_role = payload.get("role")
        except pyjwt.ExpiredSignatureError:
            g.jwt_error = "Token expired"
        except (pyjwt.InvalidTokenError, KeyError, ValueError):
            g.jwt_error = "Invalid token"
            logger.debug("Rejected bearer token on %s", path)
