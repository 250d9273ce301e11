"""
Vote domain models.

Models:
    - Vote: a poll staff put to students, optionally tied to a complaint
    - VoteResponse: one student's choice; one response per student per vote
"""

from datetime import datetime, timezone

from complaint_portal.models import db
from complaint_portal.models.base import TenantModel, new_uuid
from complaint_portal.utils.helpers import as_utc, isoformat


class Vote(TenantModel):
    __tablename__ = "votes"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    options = db.Column(db.JSON, nullable=False, default=list)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    closes_at = db.Column(db.DateTime(timezone=True), nullable=True)
    related_complaint_id = db.Column(
        db.String(36), db.ForeignKey("complaints.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    responses = db.relationship(
        "VoteResponse", back_populates="vote", lazy="dynamic", cascade="all, delete-orphan",
    )

    def is_open(self, now: datetime) -> bool:
        """Accepting responses: active and not past ``closes_at``."""
        if not self.is_active:
            return False
        closes_at = as_utc(self.closes_at)
        return closes_at is None or now < closes_at

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "options": list(self.options or []),
            "created_by": self.created_by,
            "is_active": self.is_active,
            "closes_at": isoformat(self.closes_at),
            "related_complaint_id": self.related_complaint_id,
            "created_at": isoformat(self.created_at),
        }


class VoteResponse(db.Model):
    __tablename__ = "vote_responses"

    id = db.Column(db.Integer, primary_key=True)
    vote_id = db.Column(
        db.String(36), db.ForeignKey("votes.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    student_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    selected_option = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("vote_id", "student_id", name="uq_vote_response_student"),
    )

    vote = db.relationship("Vote", back_populates="responses")

    def to_dict(self):
        return {
            "id": self.id,
            "vote_id": self.vote_id,
            "student_id": self.student_id,
            "selected_option": self.selected_option,
            "created_at": isoformat(self.created_at),
        }
