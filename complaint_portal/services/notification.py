"""
Notification Service.

Central service for creating and querying in-app notifications. Callers
treat delivery as best-effort: they invoke these helpers *after* their own
transaction has committed, so a failure here never undoes a complaint change.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update

from complaint_portal.core.exceptions import NotFoundError
from complaint_portal.models import db
from complaint_portal.models.auth import User
from complaint_portal.models.notification import NOTIFICATION_TYPES, Notification

logger = logging.getLogger(__name__)


def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def enqueue(*, tenant_id, user_id, type, title, message="", related_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")
        notif = Notification(
            tenant_id=tenant_id,
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            related_id=related_id,
        )
        db.session.add(notif)
        _commit()
        return notif

    @staticmethod
    def notify_many(*, tenant_id, user_ids, type, title, message="", related_id=None):
        """Send the same notification to several users in one commit."""
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")
        notifications = []
        for uid in dict.fromkeys(user_ids):
            notif = Notification(
                tenant_id=tenant_id,
                user_id=uid,
                type=type,
                title=title,
                message=message,
                related_id=related_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        if notifications:
            _commit()
        return notifications

    @staticmethod
    def notify_role(*, tenant_id, roles, exclude_user_id=None, **kwargs):
        """Notify every active user of the tenant holding one of ``roles``."""
        stmt = select(User.id).where(
            User.tenant_id == tenant_id,
            User.role.in_(list(roles)),
            User.status == "active",
        )
        user_ids = [uid for uid in db.session.execute(stmt).scalars() if uid != exclude_user_id]
        return NotificationService.notify_many(tenant_id=tenant_id, user_ids=user_ids, **kwargs)

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(tenant_id, user_id, *, unread_only=False, limit=50, offset=0):
        """Retrieve a user's notifications, newest first. Returns (items, total)."""
        stmt = select(Notification).where(
            Notification.tenant_id == tenant_id,
            Notification.user_id == user_id,
        )
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        total = db.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = db.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def unread_count(tenant_id, user_id):
        stmt = select(func.count(Notification.id)).where(
            Notification.tenant_id == tenant_id,
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
        return db.session.execute(stmt).scalar_one()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(tenant_id, user_id, notification_id):
        """Mark one of the user's own notifications as read.

        Raises:
            NotFoundError: unknown id, or a notification addressed to someone else.
        """
        notif = db.session.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.tenant_id == tenant_id,
                Notification.user_id == user_id,
            )
        ).scalar_one_or_none()
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if not notif.is_read:
            notif.mark_read()
            _commit()
        return notif

    @staticmethod
    def mark_all_read(tenant_id, user_id):
        """Mark all of a user's notifications as read. Returns the count updated."""
        now = datetime.now(timezone.utc)
        result = db.session.execute(
            update(Notification)
            .where(
                Notification.tenant_id == tenant_id,
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True, read_at=now)
            .execution_options(synchronize_session=False)
        )
        _commit()
        return result.rowcount


def notify_safely(fn, *args, **kwargs):
    """Run a notification helper; log and swallow its failure.

    Notification delivery is best-effort everywhere in the portal. The
    caller's own change has already been committed.
    """
    try:
        return fn(*args, **kwargs)
    except Exception:
        logger.warning("Notification delivery failed via %s", getattr(fn, "__name__", fn), exc_info=True)
        return None
