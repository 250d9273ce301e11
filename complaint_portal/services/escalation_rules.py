"""
Escalation Rule Service.

Authoring-time validation and CRUD for EscalationRule. Everything that
reaches the table has passed ``validate_rule``; the engine still skips
malformed rows it meets at runtime.

Validation (hard errors, raise InvalidRule):
    - category / priority: required, from the known enumerations
    - hours_threshold: whole number, 1 <= h <= 8760 (one year)
    - escalate_to: an active lecturer or admin of the same tenant

Advisory warnings (``rule_warnings``) are returned alongside the rule and
never block a save.
"""

import logging

from sqlalchemy import select

from complaint_portal.core.exceptions import ConflictError, InvalidRule, PermissionDenied
from complaint_portal.models import db
from complaint_portal.models.auth import STAFF_ROLES, User
from complaint_portal.models.complaint import COMPLAINT_CATEGORIES, COMPLAINT_PRIORITIES
from complaint_portal.models.escalation import MAX_THRESHOLD_HOURS, EscalationRule
from complaint_portal.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from complaint_portal.services.helpers.unique_writes import conflict_on_duplicate

logger = logging.getLogger(__name__)

# Upper bound per priority before a "too slow" warning is attached.
_PRIORITY_WARN_HOURS = {"critical": 24, "high": 72, "medium": 168}
_SHORT_THRESHOLD_HOURS = 2
_LONG_THRESHOLD_HOURS = 720

UPDATABLE_FIELDS = ("category", "priority", "hours_threshold", "escalate_to", "is_active")


def _is_whole_number(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_rule(data: dict, *, tenant_id: int) -> dict:
    """Validate a complete rule payload.

    Returns:
        The normalised rule fields.

    Raises:
        InvalidRule: with a field -> message map of every failure.
    """
    errors: dict[str, str] = {}

    category = data.get("category")
    if not category:
        errors["category"] = "category is required"
    elif category not in COMPLAINT_CATEGORIES:
        errors["category"] = f"category must be one of: {list(COMPLAINT_CATEGORIES)}"

    priority = data.get("priority")
    if not priority:
        errors["priority"] = "priority is required"
    elif priority not in COMPLAINT_PRIORITIES:
        errors["priority"] = f"priority must be one of: {list(COMPLAINT_PRIORITIES)}"

    hours = data.get("hours_threshold")
    if hours is None:
        errors["hours_threshold"] = "hours_threshold is required"
    elif not _is_whole_number(hours):
        errors["hours_threshold"] = "hours_threshold must be a whole number of hours"
    elif hours <= 0:
        errors["hours_threshold"] = "hours_threshold must be greater than 0"
    elif hours > MAX_THRESHOLD_HOURS:
        errors["hours_threshold"] = f"hours_threshold cannot exceed {MAX_THRESHOLD_HOURS} hours (1 year)"

    escalate_to = data.get("escalate_to")
    if escalate_to is None:
        errors["escalate_to"] = "escalate_to is required"
    else:
        target = (
            get_scoped_or_none(User, escalate_to, tenant_id=tenant_id)
            if _is_whole_number(escalate_to) else None
        )
        if target is None:
            errors["escalate_to"] = "escalate_to must reference an existing user"
        elif target.role not in STAFF_ROLES:
            errors["escalate_to"] = "complaints can only be escalated to lecturers or admins"
        elif not target.is_active:
            errors["escalate_to"] = "escalate_to user is not active"

    is_active = data.get("is_active", True)
    if not isinstance(is_active, bool):
        errors["is_active"] = "is_active must be a boolean"

    if errors:
        raise InvalidRule(errors)

    return {
        "category": category,
        "priority": priority,
        "hours_threshold": hours,
        "escalate_to": escalate_to,
        "is_active": is_active,
    }


def rule_warnings(data: dict) -> list[str]:
    """Advisory messages for a rule that is valid but probably unintended."""
    warnings = []
    hours = data.get("hours_threshold")
    priority = data.get("priority")

    if data.get("is_active") is False:
        warnings.append("This rule is inactive and will not be applied until activated")

    if _is_whole_number(hours):
        limit = _PRIORITY_WARN_HOURS.get(priority)
        if limit is not None and hours > limit:
            warnings.append(
                f"{priority.capitalize()} priority complaints typically require faster "
                f"escalation (recommended: <= {limit} hours)"
            )
        if hours < _SHORT_THRESHOLD_HOURS:
            warnings.append("Very short thresholds (< 2 hours) may cause premature escalations")
        if hours > _LONG_THRESHOLD_HOURS and priority != "low":
            warnings.append("Very long thresholds (> 30 days) are rarely useful above low priority")

    return warnings


def format_threshold(hours: int) -> str:
    """Human-readable threshold: "5 hours", "2 days", "1 day 6 hours"."""
    def _unit(n, word):
        return f"{n} {word}{'' if n == 1 else 's'}"

    if hours < 24:
        return _unit(hours, "hour")
    days, remaining = divmod(hours, 24)
    if remaining == 0:
        return _unit(days, "day")
    return f"{_unit(days, 'day')} {_unit(remaining, 'hour')}"


# ═══════════════════════════════════════════════════════════════════════════
#  CRUD (admin only)
# ═══════════════════════════════════════════════════════════════════════════

def _require_admin(actor, action: str) -> None:
    if getattr(actor, "role", None) != "admin":
        raise PermissionDenied(getattr(actor, "id", None), action)


def _ensure_unique_active(tenant_id: int, category: str, priority: str, *, exclude_id: str | None = None):
    stmt = select(EscalationRule.id).where(
        EscalationRule.tenant_id == tenant_id,
        EscalationRule.category == category,
        EscalationRule.priority == priority,
        EscalationRule.is_active.is_(True),
    )
    if exclude_id is not None:
        stmt = stmt.where(EscalationRule.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError("EscalationRule", "category/priority", f"{category}/{priority}")


def _active_rule_guard(fields: dict):
    return conflict_on_duplicate(
        "EscalationRule", "category/priority", f"{fields['category']}/{fields['priority']}",
    )


def _serialize(rule: EscalationRule) -> dict:
    d = rule.to_dict()
    d["threshold_label"] = format_threshold(rule.hours_threshold)
    d["warnings"] = rule_warnings(d)
    return d


def create_rule(tenant_id: int, actor, data: dict) -> dict:
    """Create an escalation rule.

    Raises:
        PermissionDenied: actor is not an admin.
        InvalidRule: payload failed validation.
        ConflictError: an active rule already covers the category/priority.
    """
    _require_admin(actor, "escalation_rule.create")
    fields = validate_rule(data, tenant_id=tenant_id)
    if fields["is_active"]:
        _ensure_unique_active(tenant_id, fields["category"], fields["priority"])

    rule = EscalationRule(tenant_id=tenant_id, created_by=actor.id, **fields)
    with _active_rule_guard(fields):
        db.session.add(rule)
        db.session.commit()
    logger.info(
        "Escalation rule %s created: %s/%s after %dh -> user %s",
        rule.id, rule.category, rule.priority, rule.hours_threshold, rule.escalate_to,
        extra={"tenant_id": tenant_id},
    )
    return _serialize(rule)


def list_rules(
    tenant_id: int,
    *,
    category: str | None = None,
    priority: str | None = None,
    active_only: bool = False,
) -> list[dict]:
    """List rules ordered by category, priority and threshold."""
    stmt = (
        select(EscalationRule)
        .where(EscalationRule.tenant_id == tenant_id)
        .order_by(EscalationRule.category, EscalationRule.priority, EscalationRule.hours_threshold)
    )
    if category:
        stmt = stmt.where(EscalationRule.category == category)
    if priority:
        stmt = stmt.where(EscalationRule.priority == priority)
    if active_only:
        stmt = stmt.where(EscalationRule.is_active.is_(True))
    return [_serialize(r) for r in db.session.execute(stmt).scalars().all()]


def get_rule(tenant_id: int, rule_id: str) -> dict:
    return _serialize(get_scoped(EscalationRule, rule_id, tenant_id=tenant_id))


def update_rule(tenant_id: int, actor, rule_id: str, data: dict) -> dict:
    """Partial update. The merged rule is re-validated as a whole."""
    _require_admin(actor, "escalation_rule.update")
    rule = get_scoped(EscalationRule, rule_id, tenant_id=tenant_id)

    merged = {f: getattr(rule, f) for f in UPDATABLE_FIELDS}
    merged.update({k: v for k, v in data.items() if k in UPDATABLE_FIELDS})
    fields = validate_rule(merged, tenant_id=tenant_id)
    if fields["is_active"]:
        _ensure_unique_active(tenant_id, fields["category"], fields["priority"], exclude_id=rule.id)

    with _active_rule_guard(fields):
        for name, value in fields.items():
            setattr(rule, name, value)
        db.session.commit()
    return _serialize(rule)


def toggle_rule(tenant_id: int, actor, rule_id: str) -> dict:
    """Flip ``is_active``. Activating is subject to the uniqueness check."""
    _require_admin(actor, "escalation_rule.update")
    rule = get_scoped(EscalationRule, rule_id, tenant_id=tenant_id)
    if not rule.is_active:
        _ensure_unique_active(tenant_id, rule.category, rule.priority, exclude_id=rule.id)
    with _active_rule_guard({"category": rule.category, "priority": rule.priority}):
        rule.is_active = not rule.is_active
        db.session.commit()
    return _serialize(rule)


def delete_rule(tenant_id: int, actor, rule_id: str) -> None:
    _require_admin(actor, "escalation_rule.delete")
    rule = get_scoped(EscalationRule, rule_id, tenant_id=tenant_id)
    db.session.delete(rule)
    db.session.commit()
    logger.info("Escalation rule %s deleted", rule_id, extra={"tenant_id": tenant_id})
