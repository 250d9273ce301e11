"""Complaint templates: staff-curated starting points for common complaints."""

from datetime import datetime, timezone

from complaint_portal.models import db
from complaint_portal.models.base import TenantModel, new_uuid
from complaint_portal.utils.helpers import isoformat


class ComplaintTemplate(TenantModel):
    """A reusable complaint outline.

    ``fields`` maps a field key to ``{"label", "placeholder", "required"}``
    and describes the extra details a student is asked for when filing.
    Inactive templates are hidden from students but kept for editing.
    """

    __tablename__ = "complaint_templates"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(30), nullable=False)
    suggested_priority = db.Column(db.String(10), nullable=False, default="medium")
    fields = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_complaint_templates_tenant_active", "tenant_id", "is_active"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "suggested_priority": self.suggested_priority,
            "fields": self.fields or {},
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
