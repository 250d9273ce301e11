"""
User Service: registration, authentication and role administration.
"""

import logging
from datetime import datetime, timezone

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func, select

from complaint_portal.core.exceptions import ConflictError, PermissionDenied, ValidationError
from complaint_portal.models import db
from complaint_portal.models.auth import USER_ROLES, Tenant, User
from complaint_portal.services.helpers.scoped_queries import get_scoped
from complaint_portal.services.helpers.unique_writes import conflict_on_duplicate
from complaint_portal.utils.crypto import hash_password, verify_password

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


class UserServiceError(Exception):
    """Authentication failure carrying the HTTP status to answer with."""

    def __init__(self, message, status_code=400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def get_tenant_by_slug(slug: str) -> Tenant | None:
    """Active tenant for ``slug``, or None."""
    return db.session.execute(
        select(Tenant).where(Tenant.slug == slug, Tenant.is_active.is_(True))
    ).scalar_one_or_none()


def get_user_by_email(tenant_id: int, email: str) -> User | None:
    return db.session.execute(
        select(User).where(User.tenant_id == tenant_id, func.lower(User.email) == email.lower())
    ).scalar_one_or_none()


def create_user(tenant_id: int, email: str, password: str, *, full_name: str = "",
                role: str = "student", department: str | None = None) -> User:
    """Create an account.

    Raises:
        ValidationError: bad email, short password or unknown role.
        ConflictError: email already registered in this tenant.
    """
    errors = {}
    try:
        email = validate_email((email or "").strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError as e:
        errors["email"] = f"Invalid email: {e}"
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        errors["password"] = f"password must be at least {MIN_PASSWORD_LENGTH} characters"
    if role not in USER_ROLES:
        errors["role"] = f"role must be one of: {list(USER_ROLES)}"
    if errors:
        raise ValidationError("Invalid user", details=errors)
    if get_user_by_email(tenant_id, email) is not None:
        raise ConflictError("User", "email", email)

    user = User(
        tenant_id=tenant_id,
        email=email,
        password_hash=hash_password(password),
        full_name=(full_name or "").strip() or email,
        role=role,
        department=department,
        status="active",
    )
    with conflict_on_duplicate("User", "email", email):
        db.session.add(user)
        db.session.commit()
    logger.info("User %s registered as %s", user.id, role, extra={"tenant_id": tenant_id})
    return user


def authenticate_user(tenant_id: int, email: str, password: str) -> User:
    """Authenticate with email + password. Returns the User on success."""
    user = get_user_by_email(tenant_id, email)
    if not user:
        raise UserServiceError("Invalid email or password", 401)

    if user.status != "active":
        raise UserServiceError(f"Account is {user.status}", 403)

    if not verify_password(password, user.password_hash):
        raise UserServiceError("Invalid email or password", 401)

    user.last_login_at = datetime.now(timezone.utc)
    db.session.commit()
    return user


def list_users(tenant_id: int, *, role: str | None = None) -> list[dict]:
    stmt = select(User).where(User.tenant_id == tenant_id).order_by(User.full_name, User.id)
    if role:
        stmt = stmt.where(User.role == role)
    return [u.to_dict() for u in db.session.execute(stmt).scalars()]


def change_role(tenant_id: int, actor, user_id: int, role: str) -> dict:
    """Admins change another user's role. Admins cannot demote themselves."""
    if actor.role != "admin":
        raise PermissionDenied(actor.id, "user.change_role")
    if role not in USER_ROLES:
        raise ValidationError(f"Unknown role: {role}", details={"role": role})
    user = get_scoped(User, user_id, tenant_id=tenant_id)
    if user.id == actor.id and role != "admin":
        raise ValidationError("Admins cannot remove their own admin role", details={"role": role})
    user.role = role
    db.session.commit()
    return user.to_dict()
