"""
Auth Blueprint: JWT authentication endpoints.

Endpoints:
  POST /api/v1/auth/register    — Student self-registration → access token
  POST /api/v1/auth/login       — Email + password → access token
  GET  /api/v1/auth/me          — Current user profile
"""

from flask import Blueprint, g, jsonify, request

from complaint_portal.middleware.permission_required import require_auth
from complaint_portal.services.jwt_service import issue_token_response
from complaint_portal.services.user_service import (
    UserServiceError,
    authenticate_user,
    create_user,
    get_tenant_by_slug,
)

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api/v1/auth")


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/register
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/register", methods=["POST"])
def register():
    """
    Create a student account in an institution.

    Body: { "tenant_slug": "...", "email": "...", "password": "...",
            "full_name": "...", "department": "..." }
    """
    data = request.get_json(silent=True) or {}
    tenant_slug = data.get("tenant_slug", "")
    if not tenant_slug:
        return jsonify({"error": "Tenant slug is required"}), 400

    tenant = get_tenant_by_slug(tenant_slug)
    if not tenant:
        return jsonify({"error": "Tenant not found or inactive"}), 404

    # Self-registration always creates students; staff roles are granted by admins.
    user = create_user(
        tenant.id,
        data.get("email", ""),
        data.get("password", ""),
        full_name=data.get("full_name", ""),
        role="student",
        department=data.get("department"),
    )
    return jsonify(issue_token_response(user)), 201


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/login
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/login", methods=["POST"])
def login():
    """
    Authenticate with email + password.

    Body: { "email": "...", "password": "...", "tenant_slug": "..." }
    """
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password", "")
    tenant_slug = data.get("tenant_slug", "")

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400
    if not tenant_slug:
        return jsonify({"error": "Tenant slug is required"}), 400

    tenant = get_tenant_by_slug(tenant_slug)
    if not tenant:
        return jsonify({"error": "Tenant not found or inactive"}), 404

    try:
        user = authenticate_user(tenant.id, email, password)
    except UserServiceError as e:
        return jsonify({"error": e.message}), e.status_code

    return jsonify(issue_token_response(user)), 200


# ═══════════════════════════════════════════════════════════════
# GET /api/v1/auth/me
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/me", methods=["GET"])
@require_auth
def me():
    user = g.current_user
    return jsonify({**user.to_dict(), "tenant": g.tenant.to_dict()}), 200
