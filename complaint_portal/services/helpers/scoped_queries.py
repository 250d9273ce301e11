"""
Tenant-scoped query helpers.

Every get-by-id in the portal goes through these helpers instead of
``db.session.get(Model, pk)``. A direct ``.get()`` would let one
institution read another institution's complaints.

Usage:
    complaint = get_scoped(Complaint, complaint_id, tenant_id=tenant_id)
    comment = get_scoped(ComplaintComment, comment_id, complaint_id=complaint.id)
    assignee = get_scoped_or_none(User, user_id, tenant_id=tenant_id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    A scope kwarg naming a column the model lacks raises ValueError at call
    time, so the bug surfaces in tests rather than as an unscoped lookup.
"""

import logging

from sqlalchemy import select

from complaint_portal.core.exceptions import NotFoundError
from complaint_portal.models import db

logger = logging.getLogger(__name__)


def get_scoped(
    model,
    pk,
    *,
    tenant_id: int | None = None,
    complaint_id: str | None = None,
):
    """Fetch a single entity by PK with a mandatory scope filter.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError and answer HTTP 404.

    Raises:
        ValueError: no scope given, or a scope column missing on the model.
        NotFoundError: the entity does not exist inside the scope.
    """
    scopes = {
        field: value
        for field, value in (("tenant_id", tenant_id), ("complaint_id", complaint_id))
        if value is not None
    }
    if not scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires a scope filter (tenant_id or complaint_id). "
            "Unscoped lookups are forbidden."
        )

    missing = sorted(field for field in scopes if not hasattr(model, field))
    if missing:
        raise ValueError(
            f"{model.__name__} has no column(s) {missing}; refusing an unscoped lookup."
        )

    stmt = select(model).where(model.id == pk)
    for field, value in scopes.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s", model.__name__, pk, scopes)
        raise NotFoundError(resource=model.__name__, resource_id=pk)

    return result


def get_scoped_or_none(model, pk, *, tenant_id: int | None = None, complaint_id: str | None = None):
    """Same as get_scoped but returns None instead of raising NotFoundError.

    Still raises ValueError for a missing scope: silent unscoped lookups are
    never acceptable regardless of return style.
    """
    try:
        return get_scoped(model, pk, tenant_id=tenant_id, complaint_id=complaint_id)
    except NotFoundError:
        return None
