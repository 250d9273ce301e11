"""
Identity models.

Models:
    - Tenant: one institution; every other row hangs off a tenant
    - User: student, lecturer or admin account inside a tenant
"""

from datetime import datetime, timezone

from complaint_portal.models import db
from complaint_portal.utils.helpers import isoformat

USER_ROLES = ("student", "lecturer", "admin")
STAFF_ROLES = ("lecturer", "admin")
USER_STATUSES = ("active", "inactive", "suspended")


# ═══════════════════════════════════════════════════════════════
# 1. TENANTS
# ═══════════════════════════════════════════════════════════════
class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    domain = db.Column(db.String(200))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    users = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "domain": self.domain,
            "is_active": self.is_active,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Tenant {self.slug}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    email = db.Column(db.String(200), nullable=False)
    password_hash = db.Column(db.String(256))
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(20), nullable=False, default="student")
    department = db.Column(db.String(200))
    status = db.Column(db.String(20), default="active")
    last_login_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Same email may exist in different tenants
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.CheckConstraint(
            "role IN ('student', 'lecturer', 'admin')", name="ck_users_role",
        ),
        db.Index("ix_users_tenant_id", "tenant_id"),
        db.Index("ix_users_tenant_role", "tenant_id", "role"),
    )

    tenant = db.relationship("Tenant", back_populates="users")

    @property
    def is_staff(self) -> bool:
        """Lecturers and admins triage complaints; students only file them."""
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "department": self.department,
            "status": self.status,
            "last_login_at": isoformat(self.last_login_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
