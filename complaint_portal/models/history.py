"""
Complaint history domain model.

Models:
    - ComplaintHistory: immutable, append-only timeline of complaint events

The ``details`` payload is a tagged union keyed by ``action``: every action
has exactly one details dataclass below, and ``write_history`` refuses a
payload whose type does not match its action.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import ClassVar

from complaint_portal.models import db
from complaint_portal.models.base import TenantModel
from complaint_portal.utils.helpers import isoformat


# ── Details variants ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CreatedDetails:
    action: ClassVar[str] = "created"
    category: str
    priority: str
    is_anonymous: bool = False


@dataclass(frozen=True)
class StatusChangedDetails:
    action: ClassVar[str] = "status_changed"
    note: str | None = None
    bulk: bool = False


@dataclass(frozen=True)
class EscalatedDetails:
    action: ClassVar[str] = "escalated"
    escalation_level: int
    rule_id: str
    hours_threshold: int
    auto_escalated: bool = True


@dataclass(frozen=True)
class AssignedDetails:
    action: ClassVar[str] = "assigned"
    assigned_to: int
    previous_assignee: int | None = None
    bulk: bool = False


@dataclass(frozen=True)
class CommentAddedDetails:
    action: ClassVar[str] = "comment_added"
    comment_id: int
    is_internal: bool = False


@dataclass(frozen=True)
class FeedbackAddedDetails:
    action: ClassVar[str] = "feedback_added"
    feedback_id: int


@dataclass(frozen=True)
class RatedDetails:
    action: ClassVar[str] = "rated"
    rating: int


@dataclass(frozen=True)
class TagsAddedDetails:
    action: ClassVar[str] = "tags_added"
    tags: tuple[str, ...] = field(default_factory=tuple)
    bulk: bool = False


HistoryDetails = (
    CreatedDetails
    | StatusChangedDetails
    | EscalatedDetails
    | AssignedDetails
    | CommentAddedDetails
    | FeedbackAddedDetails
    | RatedDetails
    | TagsAddedDetails
)

DETAILS_BY_ACTION: dict[str, type] = {
    cls.action: cls
    for cls in (
        CreatedDetails,
        StatusChangedDetails,
        EscalatedDetails,
        AssignedDetails,
        CommentAddedDetails,
        FeedbackAddedDetails,
        RatedDetails,
        TagsAddedDetails,
    )
}

HISTORY_ACTIONS = frozenset(DETAILS_BY_ACTION)


def details_to_dict(details: HistoryDetails) -> dict:
    payload = asdict(details)
    if isinstance(details, TagsAddedDetails):
        payload["tags"] = list(details.tags)
    return payload


def details_from_dict(action: str, payload: dict | None) -> HistoryDetails:
    """Rebuild the typed details for ``action`` from a stored JSON payload.

    Raises:
        ValueError: unknown action or a payload that does not fit its variant.
    """
    cls = DETAILS_BY_ACTION.get(action)
    if cls is None:
        raise ValueError(f"Unknown history action: {action}")
    data = dict(payload or {})
    if cls is TagsAddedDetails and "tags" in data:
        data["tags"] = tuple(data["tags"])
    try:
        return cls(**data)
    except TypeError as exc:
        raise ValueError(f"Malformed details for '{action}': {exc}") from exc


# ── Model ────────────────────────────────────────────────────────────────────

class ComplaintHistory(TenantModel):
    """
    Immutable timeline entry. One row per complaint event.

    ``performed_by`` holds the acting user id as text, or the configured
    system identity for automated escalations.
    """

    __tablename__ = "complaint_history"
    __table_args__ = (
        db.Index("ix_complaint_history_complaint_ts", "complaint_id", "created_at"),
        db.Index("ix_complaint_history_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    complaint_id = db.Column(
        db.String(36), db.ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False,
    )
    action = db.Column(db.String(30), nullable=False)
    old_value = db.Column(db.String(200), nullable=True)
    new_value = db.Column(db.String(200), nullable=True)
    performed_by = db.Column(db.String(100), nullable=False, default="system")
    details = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def typed_details(self) -> HistoryDetails:
        return details_from_dict(self.action, self.details)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "complaint_id": self.complaint_id,
            "action": self.action,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "performed_by": self.performed_by,
            "details": self.details or {},
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<ComplaintHistory {self.id}: {self.action} on {self.complaint_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_history(
    *,
    tenant_id: int,
    complaint_id: str,
    details: HistoryDetails,
    performed_by: str | int,
    old_value: str | None = None,
    new_value: str | None = None,
    created_at: datetime | None = None,
) -> ComplaintHistory:
    """
    Append a single history row.  Uses ``flush`` so callers keep
    transaction control.

    The action is taken from the details variant, so a row can never carry
    a payload of the wrong shape.
    """
    action = getattr(details, "action", None)
    if DETAILS_BY_ACTION.get(action) is not type(details):
        raise ValueError(f"Unsupported history details: {details!r}")

    entry = ComplaintHistory(
        tenant_id=tenant_id,
        complaint_id=complaint_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        performed_by=str(performed_by),
        details=details_to_dict(details),
    )
    if created_at is not None:
        entry.created_at = created_at
    db.session.add(entry)
    db.session.flush()
    return entry
