"""Announcement Service: staff-authored notices broadcast to students."""

import logging

from sqlalchemy import func, select

from complaint_portal.core.exceptions import PermissionDenied, ValidationError
from complaint_portal.models import db
from complaint_portal.models.announcement import Announcement
from complaint_portal.models.auth import STAFF_ROLES
from complaint_portal.services.helpers.scoped_queries import get_scoped
from complaint_portal.services.notification import NotificationService, notify_safely

logger = logging.getLogger(__name__)


def _require_staff(actor, action):
    if actor.role not in STAFF_ROLES:
        raise PermissionDenied(actor.id, action)


def _validated(data: dict, *, partial: bool = False) -> dict:
    fields, errors = {}, {}
    for name, limit in (("title", 200), ("content", None)):
        if name not in data and partial:
            continue
        value = (data.get(name) or "").strip()
        if not value:
            errors[name] = f"{name} is required"
        elif limit and len(value) > limit:
            errors[name] = f"{name} must be at most {limit} characters"
        else:
            fields[name] = value
    if errors:
        raise ValidationError("Invalid announcement", details=errors)
    return fields


def create_announcement(tenant_id: int, actor, data: dict) -> dict:
    _require_staff(actor, "announcement.create")
    fields = _validated(data)
    announcement = Announcement(tenant_id=tenant_id, created_by=actor.id, **fields)
    db.session.add(announcement)
    db.session.commit()

    notify_safely(
        NotificationService.notify_role,
        tenant_id=tenant_id,
        roles=("student",),
        type="new_announcement",
        title=f"New announcement: {announcement.title}",
        message=announcement.content[:200],
        related_id=announcement.id,
    )
    return announcement.to_dict()


def list_announcements(tenant_id: int, *, limit: int = 50, offset: int = 0):
    stmt = select(Announcement).where(Announcement.tenant_id == tenant_id)
    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = db.session.execute(
        stmt.order_by(Announcement.created_at.desc(), Announcement.id).offset(offset).limit(limit)
    ).scalars().all()
    return [a.to_dict() for a in rows], total


def get_announcement(tenant_id: int, announcement_id: str) -> dict:
    return get_scoped(Announcement, announcement_id, tenant_id=tenant_id).to_dict()


def update_announcement(tenant_id: int, actor, announcement_id: str, data: dict) -> dict:
    """Authors edit their own announcements; admins edit any."""
    _require_staff(actor, "announcement.update")
    announcement = get_scoped(Announcement, announcement_id, tenant_id=tenant_id)
    if actor.role != "admin" and announcement.created_by != actor.id:
        raise PermissionDenied(actor.id, "announcement.update")
    for name, value in _validated(data, partial=True).items():
        setattr(announcement, name, value)
    db.session.commit()
    return announcement.to_dict()


def delete_announcement(tenant_id: int, actor, announcement_id: str) -> None:
    _require_staff(actor, "announcement.delete")
    announcement = get_scoped(Announcement, announcement_id, tenant_id=tenant_id)
    if actor.role != "admin" and announcement.created_by != actor.id:
        raise PermissionDenied(actor.id, "announcement.delete")
    db.session.delete(announcement)
    db.session.commit()
