"""
Escalation rule domain model.

Models:
    - EscalationRule: (category, priority) -> (hours_threshold, escalate_to)

A rule fires once a matching, still-open complaint is older than
``hours_threshold`` hours. The engine reassigns the complaint to
``escalate_to`` and bumps its escalation level. Only one *active* rule
should exist per (category, priority). The service layer checks this and a
partial unique index backs it; the engine still resolves duplicates with
the smallest threshold.
"""

from datetime import datetime, timezone

from complaint_portal.models import db
from complaint_portal.models.base import TenantModel, new_uuid
from complaint_portal.utils.helpers import isoformat

MAX_THRESHOLD_HOURS = 8760  # one year


class EscalationRule(TenantModel):
    __tablename__ = "escalation_rules"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    category = db.Column(db.String(30), nullable=False)
    priority = db.Column(db.String(20), nullable=False)
    hours_threshold = db.Column(
        db.Integer, nullable=False,
        comment="Age in hours after which a matching open complaint is escalated",
    )
    escalate_to = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        comment="Lecturer or admin who receives the escalated complaint",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            f"hours_threshold > 0 AND hours_threshold <= {MAX_THRESHOLD_HOURS}",
            name="ck_escalation_rules_threshold",
        ),
        db.Index("ix_escalation_rules_match", "tenant_id", "category", "priority", "is_active"),
        db.Index(
            "uq_escalation_rules_active_match", "tenant_id", "category", "priority",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
    )

    target = db.relationship("User", foreign_keys=[escalate_to])

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "category": self.category,
            "priority": self.priority,
            "hours_threshold": self.hours_threshold,
            "escalate_to": self.escalate_to,
            "escalate_to_name": self.target.full_name if self.target else None,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return (
            f"<EscalationRule {self.id} {self.category}/{self.priority} "
            f"{self.hours_threshold}h -> {self.escalate_to}>"
        )
