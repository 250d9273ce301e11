"""
Complaint domain models.

Models:
    - Complaint: one filed grievance, tracked through a status lifecycle
    - ComplaintComment: discussion thread (internal notes hidden from students)
    - ComplaintTag: free-form labels applied by staff
    - ComplaintRating: one 1-5 satisfaction score per resolved complaint
    - ComplaintFeedback: formal staff response shown to the student

Lifecycle (directed edges):
    new -> opened -> in_progress -> resolved -> closed
    new | opened | in_progress -> withdrawn

``closed`` and ``withdrawn`` are terminal. Escalation level and status are
independent axes: the escalation engine never changes ``status``.
"""

from datetime import datetime, timezone

from complaint_portal.models import db
from complaint_portal.models.base import TenantModel, new_uuid
from complaint_portal.utils.helpers import isoformat

# ── Constants ────────────────────────────────────────────────────────────────

COMPLAINT_CATEGORIES = (
    "academic",
    "facilities",
    "harassment",
    "course_content",
    "administrative",
    "other",
)
COMPLAINT_PRIORITIES = ("low", "medium", "high", "critical")
COMPLAINT_STATUSES = ("new", "opened", "in_progress", "resolved", "closed", "withdrawn")

COMPLAINT_TRANSITIONS = {
    "new": ["opened", "withdrawn"],
    "opened": ["in_progress", "withdrawn"],
    "in_progress": ["resolved", "withdrawn"],
    "resolved": ["closed"],
    "closed": [],
    "withdrawn": [],
}

TERMINAL_STATUSES = frozenset(s for s, targets in COMPLAINT_TRANSITIONS.items() if not targets)
RATEABLE_STATUSES = ("resolved", "closed")


def _now():
    return datetime.now(timezone.utc)


class Complaint(TenantModel):
    """A student grievance.

    ``version`` is bumped by every conditional update issued through the
    complaint store; writers pass the version they read and fail with
    ConcurrentModification when it no longer matches.
    """

    __tablename__ = "complaints"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    student_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(30), nullable=False)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="new")
    is_anonymous = db.Column(db.Boolean, nullable=False, default=False)

    assigned_to = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    opened_at = db.Column(db.DateTime(timezone=True), nullable=True)
    opened_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    escalation_level = db.Column(db.Integer, nullable=False, default=0)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    __table_args__ = (
        db.CheckConstraint("escalation_level >= 0", name="ck_complaints_escalation_level"),
        db.Index("ix_complaints_tenant_status", "tenant_id", "status"),
        db.Index("ix_complaints_tenant_category_priority", "tenant_id", "category", "priority"),
    )

    student = db.relationship("User", foreign_keys=[student_id])
    assignee = db.relationship("User", foreign_keys=[assigned_to])
    comments = db.relationship(
        "ComplaintComment", back_populates="complaint", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ComplaintComment.created_at",
    )
    tags = db.relationship(
        "ComplaintTag", back_populates="complaint", lazy="selectin",
        cascade="all, delete-orphan",
    )
    rating = db.relationship(
        "ComplaintRating", back_populates="complaint", uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, *, hide_student: bool = False):
        """Serialize. ``hide_student`` masks the filer of an anonymous complaint."""
        student_id = None if (hide_student and self.is_anonymous) else self.student_id
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "student_id": student_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "is_anonymous": self.is_anonymous,
            "assigned_to": self.assigned_to,
            "opened_at": isoformat(self.opened_at),
            "opened_by": self.opened_by,
            "resolved_at": isoformat(self.resolved_at),
            "closed_at": isoformat(self.closed_at),
            "escalation_level": self.escalation_level,
            "escalated_at": isoformat(self.escalated_at),
            "version": self.version,
            "tags": sorted(t.tag for t in self.tags),
            "rating": self.rating.rating if self.rating else None,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<Complaint {self.id} [{self.status}] {self.title[:30]}>"


class ComplaintComment(db.Model):
    __tablename__ = "complaint_comments"

    id = db.Column(db.Integer, primary_key=True)
    complaint_id = db.Column(
        db.String(36), db.ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    comment = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    complaint = db.relationship("Complaint", back_populates="comments")

    def to_dict(self):
        return {
            "id": self.id,
            "complaint_id": self.complaint_id,
            "user_id": self.user_id,
            "comment": self.comment,
            "is_internal": self.is_internal,
            "created_at": isoformat(self.created_at),
        }


class ComplaintTag(db.Model):
    __tablename__ = "complaint_tags"

    id = db.Column(db.Integer, primary_key=True)
    complaint_id = db.Column(
        db.String(36), db.ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    tag = db.Column(db.String(50), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    __table_args__ = (
        db.UniqueConstraint("complaint_id", "tag", name="uq_complaint_tag"),
    )

    complaint = db.relationship("Complaint", back_populates="tags")


class ComplaintRating(db.Model):
    __tablename__ = "complaint_ratings"

    id = db.Column(db.Integer, primary_key=True)
    complaint_id = db.Column(
        db.String(36), db.ForeignKey("complaints.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    student_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    rating = db.Column(db.Integer, nullable=False)
    feedback_text = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    __table_args__ = (
        db.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_complaint_ratings_range"),
    )

    complaint = db.relationship("Complaint", back_populates="rating")

    def to_dict(self):
        return {
            "id": self.id,
            "complaint_id": self.complaint_id,
            "student_id": self.student_id,
            "rating": self.rating,
            "feedback_text": self.feedback_text,
            "created_at": isoformat(self.created_at),
        }


class ComplaintFeedback(db.Model):
    """Formal staff response to a complaint, visible to the student."""

    __tablename__ = "complaint_feedback"

    id = db.Column(db.Integer, primary_key=True)
    complaint_id = db.Column(
        db.String(36), db.ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    lecturer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "complaint_id": self.complaint_id,
            "lecturer_id": self.lecturer_id,
            "content": self.content,
            "created_at": isoformat(self.created_at),
        }
