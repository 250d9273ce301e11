"""
Complaint Lifecycle Service.

Manages complaint status transitions with:
  - Transition validation against COMPLAINT_TRANSITIONS
  - Role check (staff move complaints forward; the filing student or an
    admin may withdraw)
  - Optimistic concurrency on the complaint ``version``
  - Exactly one ``status_changed`` history row, committed together with
    the status update
  - Best-effort notification of the filing student after commit

Escalation fields are never touched here; they only ever grow, through the
escalation engine.

Usage:
    from complaint_portal.services.complaint_lifecycle import apply_transition

    result = apply_transition(
        tenant_id=1,
        complaint_id="3f0c...",
        target_status="opened",
        actor=lecturer,
    )
"""

import logging

from complaint_portal.core.exceptions import (
    ConcurrentModification,
    InvalidTransition,
    PermissionDenied,
)
from complaint_portal.models.complaint import COMPLAINT_TRANSITIONS
from complaint_portal.models.history import StatusChangedDetails
from complaint_portal.services.stores import (
    ComplaintRecord,
    HistoryEntry,
    NotificationRequest,
    SqlComplaintStore,
    SqlHistoryLog,
    SqlNotificationSink,
)
from complaint_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_STATUS_LABELS = {
    "new": "New",
    "opened": "Opened",
    "in_progress": "In progress",
    "resolved": "Resolved",
    "closed": "Closed",
    "withdrawn": "Withdrawn",
}


def validate_complaint_transition(current: str, target: str) -> dict:
    """Check whether ``current -> target`` is an allowed edge."""
    allowed = COMPLAINT_TRANSITIONS.get(current)
    if allowed is None:
        return {"valid": False, "from": current, "to": target,
                "reason": f"Unknown status: {current}"}
    if target not in allowed:
        return {"valid": False, "from": current, "to": target,
                "reason": f"Cannot move from '{current}' to '{target}'"}
    return {"valid": True, "from": current, "to": target, "reason": None}


def get_available_transitions(status: str) -> list[str]:
    """Target statuses reachable from ``status`` in one step."""
    return list(COMPLAINT_TRANSITIONS.get(status, []))


def _check_permission(actor, complaint: ComplaintRecord, target_status: str) -> None:
    role = getattr(actor, "role", None)
    if target_status == "withdrawn":
        if role == "admin" or (role == "student" and actor.id == complaint.student_id):
            return
        raise PermissionDenied(actor.id, "complaint.withdraw")
    if role not in ("lecturer", "admin"):
        raise PermissionDenied(getattr(actor, "id", None), f"complaint.{target_status}")


def _side_effect_patch(target_status: str, actor, now) -> dict:
    patch = {"status": target_status}
    if target_status == "opened":
        patch["opened_at"] = now
        patch["opened_by"] = actor.id
    elif target_status == "resolved":
        patch["resolved_at"] = now
    elif target_status == "closed":
        patch["closed_at"] = now
    return patch


def _notify_student(notifier, complaint: ComplaintRecord, previous: str, target: str, actor) -> None:
    if actor.id == complaint.student_id:
        return
    if target == "opened":
        request = NotificationRequest(
            user_id=complaint.student_id,
            type="complaint_opened",
            title="Your complaint is being reviewed",
            message=f'"{complaint.title}" has been opened by staff.',
            related_id=complaint.id,
        )
    else:
        request = NotificationRequest(
            user_id=complaint.student_id,
            type="status_changed",
            title=f"Complaint status: {_STATUS_LABELS.get(target, target)}",
            message=(
                f'"{complaint.title}" moved from {_STATUS_LABELS.get(previous, previous)} '
                f"to {_STATUS_LABELS.get(target, target)}."
            ),
            related_id=complaint.id,
        )
    try:
        notifier.enqueue(request)
    except Exception:
        logger.warning(
            "Status notification failed for complaint %s", complaint.id, exc_info=True,
        )


def apply_transition(
    tenant_id: int,
    complaint_id: str,
    target_status: str,
    actor,
    *,
    expected_version: int | None = None,
    note: str | None = None,
    bulk: bool = False,
    skip_permission: bool = False,
    store=None,
    history=None,
    notifier=None,
) -> dict:
    """
    Execute a complaint status transition.

    Args:
        tenant_id: Institution scope.
        complaint_id: UUID of the complaint.
        target_status: Requested status.
        actor: The acting User (needs ``id`` and ``role``).
        expected_version: Version the caller last saw; a mismatch fails
            with ConcurrentModification before anything is written.
        note: Optional free text stored in the history details.
        bulk: Marks the history row as part of a bulk action.
        skip_permission: Skip the role check (internal callers only).
        store / history / notifier: Collaborators; default to the SQL
            implementations for ``tenant_id``.

    Returns:
        {"complaint_id", "previous_status", "new_status", "version",
         "available_transitions"}

    Raises:
        NotFoundError, PermissionDenied, InvalidTransition,
        ConcurrentModification, StoreUnavailable
    """
    store = store or SqlComplaintStore(tenant_id)
    history = history or SqlHistoryLog(tenant_id)
    notifier = notifier or SqlNotificationSink(tenant_id)

    complaint = store.get_complaint(complaint_id)

    if expected_version is not None and expected_version != complaint.version:
        raise ConcurrentModification(complaint_id, expected_version)

    # 1. Permission check
    if not skip_permission:
        _check_permission(actor, complaint, target_status)

    # 2. Validate transition
    validation = validate_complaint_transition(complaint.status, target_status)
    if not validation["valid"]:
        raise InvalidTransition(complaint_id, complaint.status, target_status)

    # 3. Status update + history, one transaction
    now = utcnow()
    previous_status = complaint.status
    patch = _side_effect_patch(target_status, actor, now)
    with store.transaction():
        updated = store.update_complaint(complaint_id, patch, complaint.version)
        history.append(HistoryEntry(
            complaint_id=complaint_id,
            details=StatusChangedDetails(note=note, bulk=bulk),
            performed_by=str(actor.id),
            old_value=previous_status,
            new_value=target_status,
            created_at=now,
        ))

    logger.info(
        "Complaint %s: %s -> %s by user %s",
        complaint_id, previous_status, target_status, actor.id,
        extra={"tenant_id": tenant_id},
    )

    # 4. Side effects outside the transaction
    _notify_student(notifier, updated, previous_status, target_status, actor)

    return {
        "complaint_id": complaint_id,
        "previous_status": previous_status,
        "new_status": updated.status,
        "version": updated.version,
        "available_transitions": get_available_transitions(updated.status),
    }
