"""
Notification domain model.

Models:
    - Notification: in-app notification for one user, with read tracking
"""

from datetime import datetime, timezone

from complaint_portal.models import db
from complaint_portal.models.base import TenantModel
from complaint_portal.utils.helpers import isoformat

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {
    "complaint_opened",
    "feedback_received",
    "new_complaint",
    "new_announcement",
    "new_vote",
    "comment_added",
    "complaint_assigned",
    "complaint_escalated",
    "status_changed",
}


class Notification(TenantModel):
    """One record per recipient per event."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    type = db.Column(db.String(30), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    related_id = db.Column(db.String(36), nullable=True, comment="Complaint, vote or announcement id")

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.Index("ix_notifications_user_unread", "user_id", "is_read"),
    )

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "related_id": self.related_id,
            "is_read": self.is_read,
            "read_at": isoformat(self.read_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
