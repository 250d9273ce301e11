"""
Shared pytest fixtures for the Student Complaint Portal test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant / other_tenant: Pre-created institutions
    - make_user, student, lecturer, admin: User factories
    - make_complaint, make_rule: ORM factories that bypass the services,
      so tests can start a complaint at any status or age
    - auth_headers: Bearer header for a given user

Data that an API request must see is committed: each test-client request
runs in its own app context and therefore its own SQLAlchemy session.
"""

from datetime import timedelta

import pytest

from complaint_portal import create_app
from complaint_portal.models import db as _db
from complaint_portal.models.auth import Tenant, User
from complaint_portal.models.complaint import Complaint
from complaint_portal.models.escalation import EscalationRule
from complaint_portal.services.jwt_service import generate_access_token
from complaint_portal.utils.crypto import hash_password
from complaint_portal.utils.helpers import utcnow

DEFAULT_PASSWORD = "correct-horse-42"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Tenants & users ──────────────────────────────────────────────────────


def _make_tenant(name: str, slug: str, *, is_active: bool = True) -> Tenant:
    t = Tenant(name=name, slug=slug, is_active=is_active)
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def tenant():
    return _make_tenant("Northfield University", "northfield")


@pytest.fixture()
def other_tenant():
    return _make_tenant("Southgate College", "southgate")


@pytest.fixture()
def make_user(tenant):
    """Factory: ``make_user(role="lecturer", email=..., tenant=...)``."""
    counter = {"n": 0}

    def _make(role="student", *, email=None, tenant_obj=None, status="active",
              full_name=None, password=DEFAULT_PASSWORD):
        counter["n"] += 1
        owner = tenant_obj or tenant
        user = User(
            tenant_id=owner.id,
            email=email or f"{role}{counter['n']}@{owner.slug}.edu",
            password_hash=hash_password(password),
            full_name=full_name or f"{role.title()} {counter['n']}",
            role=role,
            status=status,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def student(make_user):
    return make_user("student")


@pytest.fixture()
def lecturer(make_user):
    return make_user("lecturer")


@pytest.fixture()
def admin(make_user):
    return make_user("admin")


@pytest.fixture()
def auth_headers():
    """``auth_headers(user)`` -> Authorization header dict."""

    def _headers(user):
        token = generate_access_token(user.id, user.tenant_id, user.role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ── Complaints & rules ───────────────────────────────────────────────────


@pytest.fixture()
def make_complaint(tenant, student):
    """Factory: insert a complaint directly at any status and age.

    ``age_hours`` back-dates ``created_at`` relative to now (or ``now``).
    """

    def _make(*, status="new", category="academic", priority="high", age_hours=0,
              now=None, owner=None, tenant_obj=None, title="Lab results never published",
              is_anonymous=False, assigned_to=None, escalation_level=0, escalated_at=None):
        owner = owner or student
        created = (now or utcnow()) - timedelta(hours=age_hours)
        complaint = Complaint(
            tenant_id=(tenant_obj or tenant).id,
            student_id=owner.id,
            title=title,
            description="Marks for the week 3 lab are still missing.",
            category=category,
            priority=priority,
            status=status,
            is_anonymous=is_anonymous,
            assigned_to=assigned_to,
            escalation_level=escalation_level,
            escalated_at=escalated_at,
            created_at=created,
        )
        _db.session.add(complaint)
        _db.session.commit()
        return complaint

    return _make


@pytest.fixture()
def make_rule(tenant):
    """Factory: insert an escalation rule without service validation."""

    def _make(escalate_to, *, category="academic", priority="high", hours_threshold=2,
              is_active=True, tenant_obj=None):
        rule = EscalationRule(
            tenant_id=(tenant_obj or tenant).id,
            category=category,
            priority=priority,
            hours_threshold=hours_threshold,
            escalate_to=escalate_to.id if hasattr(escalate_to, "id") else escalate_to,
            is_active=is_active,
        )
        _db.session.add(rule)
        _db.session.commit()
        return rule

    return _make
