"""
Complaint Service.

Everything a user does to a complaint other than change its status:
filing, listing, reading the timeline, commenting, staff feedback,
assignment, bulk actions, ratings and dashboard statistics.

Visibility mirrors the portal's row-level rules:
  - students see only the complaints they filed, and never internal comments
  - lecturers and admins see every complaint of their institution
  - the filer of an anonymous complaint is hidden from lecturers

Status changes (single and bulk) always go through
``complaint_lifecycle.apply_transition``.
"""

import logging

from sqlalchemy import func, or_, select

from complaint_portal.core.exceptions import (
    ConcurrentModification,
    ConflictError,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    StoreUnavailable,
    ValidationError,
)
from complaint_portal.models import db
from complaint_portal.models.auth import STAFF_ROLES, User
from complaint_portal.models.complaint import (
    COMPLAINT_CATEGORIES,
    COMPLAINT_PRIORITIES,
    COMPLAINT_STATUSES,
    RATEABLE_STATUSES,
    Complaint,
    ComplaintComment,
    ComplaintFeedback,
    ComplaintRating,
    ComplaintTag,
)
from complaint_portal.models.history import (
    AssignedDetails,
    CommentAddedDetails,
    ComplaintHistory,
    CreatedDetails,
    FeedbackAddedDetails,
    RatedDetails,
    TagsAddedDetails,
    write_history,
)
from complaint_portal.services.complaint_lifecycle import apply_transition, get_available_transitions
from complaint_portal.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from complaint_portal.services.helpers.unique_writes import conflict_on_duplicate
from complaint_portal.services.notification import NotificationService, notify_safely
from complaint_portal.services.stores import HistoryEntry, SqlComplaintStore, SqlHistoryLog
from complaint_portal.utils.helpers import like_pattern

logger = logging.getLogger(__name__)

TITLE_MAX = 200
TAG_MAX = 50
MAX_BULK = 100

# Per-item errors a bulk action records and moves past.
_BULK_ITEM_ERRORS = (
    NotFoundError,
    PermissionDenied,
    InvalidTransition,
    ConcurrentModification,
    ValidationError,
    ConflictError,
    StoreUnavailable,
)


# ═══════════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _require_staff(actor, action: str) -> None:
    if getattr(actor, "role", None) not in STAFF_ROLES:
        raise PermissionDenied(getattr(actor, "id", None), action)


def _get_visible(tenant_id: int, complaint_id: str, viewer) -> Complaint:
    """Load a complaint the viewer may see; anything else is a 404."""
    complaint = get_scoped(Complaint, complaint_id, tenant_id=tenant_id)
    if viewer.role == "student" and complaint.student_id != viewer.id:
        raise NotFoundError(resource="Complaint", resource_id=complaint_id)
    return complaint


def _hides_filer(complaint: Complaint, viewer) -> bool:
    """Lecturers never learn who filed an anonymous complaint."""
    return complaint.is_anonymous and viewer.role == "lecturer"


def serialize_complaint(complaint: Complaint, viewer) -> dict:
    d = complaint.to_dict(hide_student=_hides_filer(complaint, viewer))
    d["available_transitions"] = get_available_transitions(complaint.status)
    return d


def _normalize_tags(raw) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(t, str) for t in raw):
        raise ValidationError("tags must be a list of strings", details={"tags": "invalid"})
    tags = []
    for t in raw:
        tag = t.strip().lower()
        if not tag:
            continue
        if len(tag) > TAG_MAX:
            raise ValidationError(f"Tag too long (max {TAG_MAX})", details={"tags": tag})
        if tag not in tags:
            tags.append(tag)
    return tags


def _check_bulk_ids(complaint_ids) -> list[str]:
    if not isinstance(complaint_ids, list) or not complaint_ids:
        raise ValidationError("complaint_ids must be a non-empty list",
                              details={"complaint_ids": "required"})
    if len(complaint_ids) > MAX_BULK:
        raise ValidationError(f"At most {MAX_BULK} complaints per bulk action",
                              details={"complaint_ids": "too many"})
    return list(dict.fromkeys(str(cid) for cid in complaint_ids))


def _bulk_result() -> dict:
    return {"success": 0, "failed": 0, "errors": []}


def _record_bulk_error(result: dict, complaint_id: str, exc: Exception) -> None:
    result["failed"] += 1
    result["errors"].append({"complaint_id": complaint_id, "error": str(exc)})
    logger.info("Bulk action skipped complaint %s: %s", complaint_id, exc)


# ═══════════════════════════════════════════════════════════════════════════
#  Create / read
# ═══════════════════════════════════════════════════════════════════════════

def create_complaint(tenant_id: int, student, data: dict) -> dict:
    """File a new complaint. Status starts at ``new``.

    Raises:
        PermissionDenied: the actor is not a student.
        ValidationError: missing or invalid fields.
    """
    if student.role != "student":
        raise PermissionDenied(student.id, "complaint.create")

    errors = {}
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    category = data.get("category")
    priority = data.get("priority") or "medium"
    is_anonymous = data.get("is_anonymous", False)

    if not title:
        errors["title"] = "title is required"
    elif len(title) > TITLE_MAX:
        errors["title"] = f"title must be at most {TITLE_MAX} characters"
    if not description:
        errors["description"] = "description is required"
    if category not in COMPLAINT_CATEGORIES:
        errors["category"] = f"category must be one of: {list(COMPLAINT_CATEGORIES)}"
    if priority not in COMPLAINT_PRIORITIES:
        errors["priority"] = f"priority must be one of: {list(COMPLAINT_PRIORITIES)}"
    if not isinstance(is_anonymous, bool):
        errors["is_anonymous"] = "is_anonymous must be a boolean"
    if errors:
        raise ValidationError("Invalid complaint", details=errors)
    tags = _normalize_tags(data.get("tags"))

    complaint = Complaint(
        tenant_id=tenant_id,
        student_id=student.id,
        title=title,
        description=description,
        category=category,
        priority=priority,
        is_anonymous=is_anonymous,
        status="new",
    )
    db.session.add(complaint)
    db.session.flush()
    for tag in tags:
        db.session.add(ComplaintTag(complaint_id=complaint.id, tag=tag))

    write_history(
        tenant_id=tenant_id,
        complaint_id=complaint.id,
        details=CreatedDetails(category=category, priority=priority, is_anonymous=is_anonymous),
        performed_by=student.id,
        new_value="new",
    )
    db.session.commit()
    logger.info("Complaint %s filed (%s/%s)", complaint.id, category, priority,
                extra={"tenant_id": tenant_id})

    notify_safely(
        NotificationService.notify_role,
        tenant_id=tenant_id,
        roles=STAFF_ROLES,
        type="new_complaint",
        title="New complaint submitted",
        message=f'"{title}" ({category}, {priority} priority)',
        related_id=complaint.id,
    )
    return serialize_complaint(complaint, student)


def list_complaints(tenant_id: int, viewer, filters: dict | None = None) -> tuple[list[dict], int]:
    """List complaints visible to ``viewer``, newest first.

    Filters: status, category, priority, assigned_to ("me" or user id),
    search (title/description substring), escalated (bool), limit, offset.
    """
    filters = filters or {}
    stmt = select(Complaint).where(Complaint.tenant_id == tenant_id)
    if viewer.role == "student":
        stmt = stmt.where(Complaint.student_id == viewer.id)

    status = filters.get("status")
    if status:
        if status not in COMPLAINT_STATUSES:
            raise ValidationError(f"Unknown status: {status}", details={"status": status})
        stmt = stmt.where(Complaint.status == status)
    if filters.get("category"):
        stmt = stmt.where(Complaint.category == filters["category"])
    if filters.get("priority"):
        stmt = stmt.where(Complaint.priority == filters["priority"])
    assigned_to = filters.get("assigned_to")
    if assigned_to == "me":
        stmt = stmt.where(Complaint.assigned_to == viewer.id)
    elif assigned_to is not None:
        stmt = stmt.where(Complaint.assigned_to == assigned_to)
    if filters.get("escalated") is True:
        stmt = stmt.where(Complaint.escalation_level > 0)
    search = (filters.get("search") or "").strip()
    if search:
        pattern = like_pattern(search)
        stmt = stmt.where(or_(
            Complaint.title.ilike(pattern, escape="\\"),
            Complaint.description.ilike(pattern, escape="\\"),
        ))

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    limit = min(int(filters.get("limit") or 50), 200)
    offset = int(filters.get("offset") or 0)
    rows = db.session.execute(
        stmt.order_by(Complaint.created_at.desc(), Complaint.id).offset(offset).limit(limit)
    ).scalars().all()
    return [serialize_complaint(c, viewer) for c in rows], total


def get_complaint(tenant_id: int, complaint_id: str, viewer) -> dict:
    complaint = _get_visible(tenant_id, complaint_id, viewer)
    d = serialize_complaint(complaint, viewer)
    d["comments"] = list_comments(tenant_id, complaint_id, viewer)
    d["feedback"] = [
        f.to_dict()
        for f in db.session.execute(
            select(ComplaintFeedback)
            .where(ComplaintFeedback.complaint_id == complaint.id)
            .order_by(ComplaintFeedback.created_at)
        ).scalars()
    ]
    return d


def get_timeline(tenant_id: int, complaint_id: str, viewer) -> list[dict]:
    """History rows in the order they happened."""
    complaint = _get_visible(tenant_id, complaint_id, viewer)
    stmt = (
        select(ComplaintHistory)
        .where(
            ComplaintHistory.tenant_id == tenant_id,
            ComplaintHistory.complaint_id == complaint.id,
        )
        .order_by(ComplaintHistory.created_at, ComplaintHistory.id)
    )
    entries = db.session.execute(stmt).scalars().all()
    if viewer.role == "student":
        entries = [
            e for e in entries
            if not (e.action == "comment_added" and (e.details or {}).get("is_internal"))
        ]
    rows = [e.to_dict() for e in entries]
    if _hides_filer(complaint, viewer):
        filer = str(complaint.student_id)
        for row in rows:
            if row["performed_by"] == filer:
                row["performed_by"] = None
    return rows


# ═══════════════════════════════════════════════════════════════════════════
#  Comments & feedback
# ═══════════════════════════════════════════════════════════════════════════

def list_comments(tenant_id: int, complaint_id: str, viewer) -> list[dict]:
    complaint = _get_visible(tenant_id, complaint_id, viewer)
    stmt = (
        select(ComplaintComment)
        .where(ComplaintComment.complaint_id == complaint.id)
        .order_by(ComplaintComment.created_at, ComplaintComment.id)
    )
    if viewer.role == "student":
        stmt = stmt.where(ComplaintComment.is_internal.is_(False))
    comments = [c.to_dict() for c in db.session.execute(stmt).scalars()]
    if _hides_filer(complaint, viewer):
        for c in comments:
            if c["user_id"] == complaint.student_id:
                c["user_id"] = None
    return comments


def add_comment(tenant_id: int, complaint_id: str, author, text: str, *, is_internal: bool = False) -> dict:
    """Comment on a complaint and notify the other party.

    Students may only comment on their own complaints and never internally.
    """
    complaint = _get_visible(tenant_id, complaint_id, author)
    text = (text or "").strip()
    if not text:
        raise ValidationError("comment is required", details={"comment": "required"})
    if is_internal and author.role not in STAFF_ROLES:
        raise PermissionDenied(author.id, "comment.internal")

    comment = ComplaintComment(
        complaint_id=complaint.id,
        user_id=author.id,
        comment=text,
        is_internal=is_internal,
    )
    db.session.add(comment)
    db.session.flush()
    write_history(
        tenant_id=tenant_id,
        complaint_id=complaint.id,
        details=CommentAddedDetails(comment_id=comment.id, is_internal=is_internal),
        performed_by=author.id,
    )
    db.session.commit()

    if not is_internal:
        if author.id == complaint.student_id:
            recipient = complaint.assigned_to
        else:
            recipient = complaint.student_id
        if recipient is not None:
            notify_safely(
                NotificationService.enqueue,
                tenant_id=tenant_id,
                user_id=recipient,
                type="comment_added",
                title="New comment on complaint",
                message=f'A new comment was added to "{complaint.title}".',
                related_id=complaint.id,
            )
    return comment.to_dict()


def add_feedback(tenant_id: int, complaint_id: str, staff, content: str) -> dict:
    """Record a formal staff response and notify the student."""
    _require_staff(staff, "complaint.feedback")
    complaint = get_scoped(Complaint, complaint_id, tenant_id=tenant_id)
    content = (content or "").strip()
    if not content:
        raise ValidationError("content is required", details={"content": "required"})

    feedback = ComplaintFeedback(complaint_id=complaint.id, lecturer_id=staff.id, content=content)
    db.session.add(feedback)
    db.session.flush()
    write_history(
        tenant_id=tenant_id,
        complaint_id=complaint.id,
        details=FeedbackAddedDetails(feedback_id=feedback.id),
        performed_by=staff.id,
    )
    db.session.commit()

    notify_safely(
        NotificationService.enqueue,
        tenant_id=tenant_id,
        user_id=complaint.student_id,
        type="feedback_received",
        title="Feedback on your complaint",
        message=f'Staff responded to "{complaint.title}".',
        related_id=complaint.id,
    )
    return feedback.to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  Assignment
# ═══════════════════════════════════════════════════════════════════════════

def assign_complaint(tenant_id: int, complaint_id: str, actor, assignee_id: int, *,
                     expected_version: int | None = None, bulk: bool = False) -> dict:
    """Assign a complaint to a lecturer or admin.

    The update is a version-checked write like every other complaint
    mutation, paired with one ``assigned`` history row.
    """
    _require_staff(actor, "complaint.assign")
    assignee = get_scoped_or_none(User, assignee_id, tenant_id=tenant_id)
    if assignee is None or assignee.role not in STAFF_ROLES or not assignee.is_active:
        raise ValidationError(
            "Complaints can only be assigned to active lecturers or admins",
            details={"assigned_to": "invalid"},
        )

    store = SqlComplaintStore(tenant_id)
    history = SqlHistoryLog(tenant_id)
    current = store.get_complaint(complaint_id)
    if expected_version is not None and expected_version != current.version:
        raise ConcurrentModification(complaint_id, expected_version)
    if current.assigned_to == assignee.id:
        return serialize_complaint(store.load(complaint_id), actor)

    with store.transaction():
        store.update_complaint(complaint_id, {"assigned_to": assignee.id}, current.version)
        history.append(HistoryEntry(
            complaint_id=complaint_id,
            details=AssignedDetails(
                assigned_to=assignee.id,
                previous_assignee=current.assigned_to,
                bulk=bulk,
            ),
            performed_by=str(actor.id),
            old_value=str(current.assigned_to) if current.assigned_to is not None else None,
            new_value=str(assignee.id),
        ))

    if assignee.id != actor.id:
        notify_safely(
            NotificationService.enqueue,
            tenant_id=tenant_id,
            user_id=assignee.id,
            type="complaint_assigned",
            title="Complaint assigned to you",
            message=f'You have been assigned "{current.title}".',
            related_id=complaint_id,
        )
    return serialize_complaint(store.load(complaint_id), actor)


# ═══════════════════════════════════════════════════════════════════════════
#  Bulk actions
# ═══════════════════════════════════════════════════════════════════════════

def bulk_assign(tenant_id: int, actor, complaint_ids, assignee_id: int) -> dict:
    _require_staff(actor, "complaint.bulk_assign")
    result = _bulk_result()
    for cid in _check_bulk_ids(complaint_ids):
        try:
            assign_complaint(tenant_id, cid, actor, assignee_id, bulk=True)
        except _BULK_ITEM_ERRORS as exc:
            _record_bulk_error(result, cid, exc)
        else:
            result["success"] += 1
    return result


def bulk_change_status(tenant_id: int, actor, complaint_ids, target_status: str,
                       note: str | None = None) -> dict:
    """Apply one transition to many complaints. Already-at-target is a no-op success."""
    _require_staff(actor, "complaint.bulk_status")
    if target_status not in COMPLAINT_STATUSES:
        raise ValidationError(f"Unknown status: {target_status}", details={"status": target_status})
    result = _bulk_result()
    for cid in _check_bulk_ids(complaint_ids):
        try:
            current = get_scoped(Complaint, cid, tenant_id=tenant_id)
            if current.status != target_status:
                apply_transition(tenant_id, cid, target_status, actor, note=note, bulk=True)
        except _BULK_ITEM_ERRORS as exc:
            _record_bulk_error(result, cid, exc)
        else:
            result["success"] += 1
    return result


def bulk_add_tags(tenant_id: int, actor, complaint_ids, tags) -> dict:
    _require_staff(actor, "complaint.bulk_tags")
    normalized = _normalize_tags(tags)
    if not normalized:
        raise ValidationError("At least one tag is required", details={"tags": "required"})
    result = _bulk_result()
    for cid in _check_bulk_ids(complaint_ids):
        try:
            add_tags(tenant_id, cid, actor, normalized, bulk=True)
        except _BULK_ITEM_ERRORS as exc:
            db.session.rollback()
            _record_bulk_error(result, cid, exc)
        else:
            result["success"] += 1
    return result


def add_tags(tenant_id: int, complaint_id: str, actor, tags, *, bulk: bool = False) -> list[str]:
    """Attach tags to a complaint; tags already present are ignored."""
    _require_staff(actor, "complaint.tag")
    complaint = get_scoped(Complaint, complaint_id, tenant_id=tenant_id)
    existing = {t.tag for t in complaint.tags}
    added = [t for t in _normalize_tags(list(tags)) if t not in existing]
    if added:
        with conflict_on_duplicate("ComplaintTag", "tag", ", ".join(added)):
            for tag in added:
                db.session.add(ComplaintTag(complaint_id=complaint.id, tag=tag))
            write_history(
                tenant_id=tenant_id,
                complaint_id=complaint.id,
                details=TagsAddedDetails(tags=tuple(added), bulk=bulk),
                performed_by=actor.id,
                new_value=", ".join(added),
            )
            db.session.commit()
    return added


# ═══════════════════════════════════════════════════════════════════════════
#  Rating
# ═══════════════════════════════════════════════════════════════════════════

def _existing_rating(complaint: Complaint):
    return complaint.rating


def submit_rating(tenant_id: int, complaint_id: str, student, rating, feedback_text: str | None = None) -> dict:
    """Rate a resolved complaint, once, as the student who filed it."""
    complaint = _get_visible(tenant_id, complaint_id, student)
    if student.id != complaint.student_id:
        raise PermissionDenied(student.id, "complaint.rate")
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationError("rating must be an integer from 1 to 5", details={"rating": "invalid"})
    if complaint.status not in RATEABLE_STATUSES:
        raise ValidationError(
            "Only resolved or closed complaints can be rated",
            details={"status": complaint.status},
        )
    if _existing_rating(complaint) is not None:
        raise ConflictError("ComplaintRating", "complaint_id", complaint.id)

    entry = ComplaintRating(
        complaint_id=complaint.id,
        student_id=student.id,
        rating=rating,
        feedback_text=(feedback_text or "").strip() or None,
    )
    with conflict_on_duplicate("ComplaintRating", "complaint_id", complaint.id):
        db.session.add(entry)
        db.session.flush()
        write_history(
            tenant_id=tenant_id,
            complaint_id=complaint.id,
            details=RatedDetails(rating=rating),
            performed_by=student.id,
            new_value=str(rating),
        )
        db.session.commit()
    return entry.to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  Statistics
# ═══════════════════════════════════════════════════════════════════════════

def get_complaint_stats(tenant_id: int, viewer) -> dict:
    """Counts by status, category and priority plus escalation and rating figures."""
    scope = [Complaint.tenant_id == tenant_id]
    if viewer.role == "student":
        scope.append(Complaint.student_id == viewer.id)

    def _grouped(column, keys):
        rows = db.session.execute(
            select(column, func.count(Complaint.id)).where(*scope).group_by(column)
        ).all()
        counts = dict.fromkeys(keys, 0)
        counts.update({k: n for k, n in rows})
        return counts

    by_status = _grouped(Complaint.status, COMPLAINT_STATUSES)
    escalated = db.session.execute(
        select(func.count(Complaint.id)).where(*scope, Complaint.escalation_level > 0)
    ).scalar_one()
    avg_rating = db.session.execute(
        select(func.avg(ComplaintRating.rating))
        .join(Complaint, Complaint.id == ComplaintRating.complaint_id)
        .where(*scope)
    ).scalar_one()

    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_category": _grouped(Complaint.category, COMPLAINT_CATEGORIES),
        "by_priority": _grouped(Complaint.priority, COMPLAINT_PRIORITIES),
        "escalated": escalated,
        "average_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
    }
