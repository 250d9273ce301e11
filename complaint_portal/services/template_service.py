"""
Template Service: complaint templates that students pick when filing.

Lecturers and admins write templates; authors edit their own and admins
edit any. Students only ever see active templates.
"""

import logging

from sqlalchemy import select

from complaint_portal.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from complaint_portal.models import db
from complaint_portal.models.auth import STAFF_ROLES
from complaint_portal.models.complaint import COMPLAINT_CATEGORIES, COMPLAINT_PRIORITIES
from complaint_portal.models.template import ComplaintTemplate
from complaint_portal.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "category", "suggested_priority", "fields", "is_active")


def _require_staff(actor, action):
    if actor.role not in STAFF_ROLES:
        raise PermissionDenied(actor.id, action)


def _require_owner_or_admin(actor, template: ComplaintTemplate, action):
    _require_staff(actor, action)
    if actor.role != "admin" and template.created_by != actor.id:
        raise PermissionDenied(actor.id, action)


def _validate_fields(value, errors: dict) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors["fields"] = "fields must be an object"
        return {}
    cleaned = {}
    for key, definition in value.items():
        if not isinstance(definition, dict):
            errors[f"fields.{key}"] = "field definition must be an object"
            continue
        label, placeholder = definition.get("label"), definition.get("placeholder")
        if label is not None and not isinstance(label, str):
            errors[f"fields.{key}.label"] = "label must be a string"
        elif placeholder is not None and not isinstance(placeholder, str):
            errors[f"fields.{key}.placeholder"] = "placeholder must be a string"
        elif not isinstance(definition.get("required", False), bool):
            errors[f"fields.{key}.required"] = "required must be true or false"
        else:
            cleaned[str(key)] = {
                "label": (label or "").strip() or str(key),
                "placeholder": (placeholder or "").strip(),
                "required": definition.get("required", False),
            }
    return cleaned


def validate_template(data: dict) -> dict:
    """Check a full template payload and return the columns to store.

    Raises:
        ValidationError: with one ``details`` entry per offending key.
    """
    errors, fields = {}, {}
    for name, limit in (("title", 200), ("description", None)):
        value = data.get(name)
        value = value.strip() if isinstance(value, str) else ""
        if not value:
            errors[name] = f"{name} is required"
        elif limit and len(value) > limit:
            errors[name] = f"{name} must be at most {limit} characters"
        else:
            fields[name] = value

    if data.get("category") not in COMPLAINT_CATEGORIES:
        errors["category"] = f"category must be one of {', '.join(COMPLAINT_CATEGORIES)}"
    else:
        fields["category"] = data["category"]

    priority = data.get("suggested_priority") or "medium"
    if priority not in COMPLAINT_PRIORITIES:
        errors["suggested_priority"] = f"suggested_priority must be one of {', '.join(COMPLAINT_PRIORITIES)}"
    else:
        fields["suggested_priority"] = priority

    is_active = data.get("is_active", True)
    if not isinstance(is_active, bool):
        errors["is_active"] = "is_active must be true or false"
    else:
        fields["is_active"] = is_active

    fields["fields"] = _validate_fields(data.get("fields"), errors)

    if errors:
        raise ValidationError("Invalid complaint template", details=errors)
    return fields


def list_templates(tenant_id: int, viewer, *, active_only: bool = False, created_by: int | None = None) -> list[dict]:
    """Newest first. Students are limited to active templates."""
    stmt = select(ComplaintTemplate).where(ComplaintTemplate.tenant_id == tenant_id)
    if active_only or viewer.role not in STAFF_ROLES:
        stmt = stmt.where(ComplaintTemplate.is_active.is_(True))
    if created_by is not None:
        stmt = stmt.where(ComplaintTemplate.created_by == created_by)
    stmt = stmt.order_by(ComplaintTemplate.created_at.desc(), ComplaintTemplate.id)
    return [t.to_dict() for t in db.session.execute(stmt).scalars().all()]


def get_template(tenant_id: int, viewer, template_id: str) -> dict:
    template = get_scoped(ComplaintTemplate, template_id, tenant_id=tenant_id)
    if not template.is_active and viewer.role not in STAFF_ROLES:
        raise NotFoundError(resource="ComplaintTemplate", resource_id=template_id)
    return template.to_dict()


def create_template(tenant_id: int, actor, data: dict) -> dict:
    _require_staff(actor, "template.create")
    template = ComplaintTemplate(tenant_id=tenant_id, created_by=actor.id, **validate_template(data))
    db.session.add(template)
    db.session.commit()
    logger.info("Complaint template %s created by user %s", template.id, actor.id, extra={"tenant_id": tenant_id})
    return template.to_dict()


def update_template(tenant_id: int, actor, template_id: str, data: dict) -> dict:
    """Partial update; the merged template is validated as a whole."""
    template = get_scoped(ComplaintTemplate, template_id, tenant_id=tenant_id)
    _require_owner_or_admin(actor, template, "template.update")

    merged = {f: getattr(template, f) for f in UPDATABLE_FIELDS}
    merged.update({k: v for k, v in data.items() if k in UPDATABLE_FIELDS})
    for name, value in validate_template(merged).items():
        setattr(template, name, value)
    db.session.commit()
    return template.to_dict()


def toggle_template(tenant_id: int, actor, template_id: str, is_active: bool | None = None) -> dict:
    """Set ``is_active`` when given, otherwise flip it."""
    template = get_scoped(ComplaintTemplate, template_id, tenant_id=tenant_id)
    _require_owner_or_admin(actor, template, "template.update")
    if is_active is not None and not isinstance(is_active, bool):
        raise ValidationError("is_active must be true or false", details={"is_active": "invalid"})
    template.is_active = (not template.is_active) if is_active is None else is_active
    db.session.commit()
    return template.to_dict()


def delete_template(tenant_id: int, actor, template_id: str) -> None:
    template = get_scoped(ComplaintTemplate, template_id, tenant_id=tenant_id)
    _require_owner_or_admin(actor, template, "template.delete")
    db.session.delete(template)
    db.session.commit()
    logger.info("Complaint template %s deleted", template_id, extra={"tenant_id": tenant_id})
