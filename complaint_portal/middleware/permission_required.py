"""
Authentication decorators for route protection.

Usage:
    @bp.route("/complaints", methods=["POST"])
    @require_auth
    def create_complaint():
        user = g.current_user
        ...

    @bp.route("/escalation-rules", methods=["POST"])
    @require_role("admin")
    def create_rule():
        ...

``require_auth`` turns the JWT claims set by jwt_auth into a loaded
``User`` on ``g.current_user``.  Fine-grained checks (ownership, visibility)
stay in the service layer, which raises PermissionDenied.
"""

import functools
import logging

from flask import g

from complaint_portal.models import db
from complaint_portal.models.auth import User
from complaint_portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _load_current_user():
    user_id = getattr(g, "jwt_user_id", None)
    tenant = getattr(g, "tenant", None)
    if user_id is None or tenant is None:
        return None
    user = db.session.get(User, user_id)
    if user is None or user.tenant_id != tenant.id or not user.is_active:
        return None
    return user


def require_auth(f):
    """Decorator: 401 unless a valid bearer token for an active user is present."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        user = _load_current_user()
        if user is None:
            message = getattr(g, "jwt_error", None) or "Authentication required"
            return api_error(E.UNAUTHORIZED, message)
        g.current_user = user
        return f(*args, **kwargs)

    return decorated


def require_role(*roles: str):
    """Decorator: authenticated user whose role is one of ``roles``."""

    def decorator(f):
        @functools.wraps(f)
        @require_auth
        def decorated(*args, **kwargs):
            user = g.current_user
            if user.role not in roles:
                logger.warning(
                    "User %s denied: role '%s' not in %s on %s",
                    user.id, user.role, roles, f.__name__,
                )
                return api_error(
                    E.FORBIDDEN, "Permission denied", details={"required_roles": list(roles)}
                )
            return f(*args, **kwargs)

        return decorated

    return decorator
