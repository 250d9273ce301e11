"""
Vote Service.

Staff open polls; each student answers at most once while the poll is
active and before ``closes_at``.
"""

import logging

from sqlalchemy import func, select

from complaint_portal.core.exceptions import (
    ConflictError,
    PermissionDenied,
    ValidationError,
)
from complaint_portal.models import db
from complaint_portal.models.auth import STAFF_ROLES
from complaint_portal.models.complaint import Complaint
from complaint_portal.models.vote import Vote, VoteResponse
from complaint_portal.services.helpers.scoped_queries import get_scoped
from complaint_portal.services.helpers.unique_writes import conflict_on_duplicate
from complaint_portal.services.notification import NotificationService, notify_safely
from complaint_portal.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)


def _require_staff(actor, action):
    if actor.role not in STAFF_ROLES:
        raise PermissionDenied(actor.id, action)


def create_vote(tenant_id: int, actor, data: dict) -> dict:
    """Open a poll.

    Body fields: title, description, options (>= 2 distinct strings),
    closes_at (ISO-8601, future), related_complaint_id.
    """
    _require_staff(actor, "vote.create")
    errors = {}

    title = (data.get("title") or "").strip()
    if not title:
        errors["title"] = "title is required"

    raw_options = data.get("options")
    options = []
    if isinstance(raw_options, list) and all(isinstance(o, str) for o in raw_options):
        options = list(dict.fromkeys(o.strip() for o in raw_options if o.strip()))
    if len(options) < 2:
        errors["options"] = "at least two distinct options are required"

    closes_at = None
    if data.get("closes_at"):
        closes_at = parse_datetime(data["closes_at"])
        if closes_at is None:
            errors["closes_at"] = "closes_at must be an ISO-8601 timestamp"
        elif closes_at <= utcnow():
            errors["closes_at"] = "closes_at must be in the future"

    related = data.get("related_complaint_id")
    if errors:
        raise ValidationError("Invalid vote", details=errors)
    if related:
        related = get_scoped(Complaint, related, tenant_id=tenant_id).id

    vote = Vote(
        tenant_id=tenant_id,
        title=title,
        description=(data.get("description") or "").strip(),
        options=options,
        closes_at=closes_at,
        related_complaint_id=related,
        created_by=actor.id,
    )
    db.session.add(vote)
    db.session.commit()

    notify_safely(
        NotificationService.notify_role,
        tenant_id=tenant_id,
        roles=("student",),
        type="new_vote",
        title=f"New vote: {title}",
        message="Your opinion has been requested.",
        related_id=vote.id,
    )
    return vote.to_dict()


def list_votes(tenant_id: int, *, active_only: bool = False) -> list[dict]:
    stmt = select(Vote).where(Vote.tenant_id == tenant_id)
    if active_only:
        stmt = stmt.where(Vote.is_active.is_(True))
    rows = db.session.execute(stmt.order_by(Vote.created_at.desc(), Vote.id)).scalars().all()
    now = utcnow()
    result = []
    for v in rows:
        d = v.to_dict()
        d["is_open"] = v.is_open(now)
        result.append(d)
    return result


def _existing_response(vote: Vote, student_id: int):
    return vote.responses.filter_by(student_id=student_id).first()


def get_vote(tenant_id: int, vote_id: str, viewer=None) -> dict:
    vote = get_scoped(Vote, vote_id, tenant_id=tenant_id)
    d = vote.to_dict()
    d["is_open"] = vote.is_open(utcnow())
    if viewer is not None and viewer.role == "student":
        mine = _existing_response(vote, viewer.id)
        d["my_response"] = mine.selected_option if mine else None
    return d


def submit_response(tenant_id: int, vote_id: str, student, option: str) -> dict:
    """Record a student's choice.

    Raises:
        PermissionDenied: not a student.
        ValidationError: vote closed or unknown option.
        ConflictError: the student already answered.
    """
    if student.role != "student":
        raise PermissionDenied(student.id, "vote.respond")
    vote = get_scoped(Vote, vote_id, tenant_id=tenant_id)
    if not vote.is_open(utcnow()):
        raise ValidationError("This vote is closed", details={"vote_id": vote.id})
    if option not in (vote.options or []):
        raise ValidationError("Unknown option", details={"option": option})
    if _existing_response(vote, student.id) is not None:
        raise ConflictError("VoteResponse", "student_id", str(student.id))

    response = VoteResponse(vote_id=vote.id, student_id=student.id, selected_option=option)
    with conflict_on_duplicate("VoteResponse", "student_id", student.id):
        db.session.add(response)
        db.session.commit()
    return response.to_dict()


def get_vote_results(tenant_id: int, vote_id: str) -> dict:
    vote = get_scoped(Vote, vote_id, tenant_id=tenant_id)
    rows = db.session.execute(
        select(VoteResponse.selected_option, func.count(VoteResponse.id))
        .where(VoteResponse.vote_id == vote.id)
        .group_by(VoteResponse.selected_option)
    ).all()
    counts = dict.fromkeys(vote.options or [], 0)
    counts.update({opt: n for opt, n in rows if opt in counts})
    return {
        "vote_id": vote.id,
        "total_responses": sum(counts.values()),
        "results": [{"option": opt, "count": n} for opt, n in counts.items()],
    }


def set_vote_active(tenant_id: int, actor, vote_id: str, active: bool) -> dict:
    """Close or reopen a vote."""
    _require_staff(actor, "vote.close" if not active else "vote.reopen")
    vote = get_scoped(Vote, vote_id, tenant_id=tenant_id)
    vote.is_active = active
    db.session.commit()
    return vote.to_dict()
